"""Business workflows built on the API client and entity stores."""
from .events import EventBus, EventPriority, EventType, WorkflowEvent
from .orchestrator import WorkflowOrchestrator, identify_critical_issues
from .run import InvalidTransitionError, RunStatus, WorkflowResult, WorkflowRun
from .scheduler import DeferredScheduler

__all__ = [
    "DeferredScheduler",
    "EventBus",
    "EventPriority",
    "EventType",
    "InvalidTransitionError",
    "RunStatus",
    "WorkflowEvent",
    "WorkflowOrchestrator",
    "WorkflowResult",
    "WorkflowRun",
    "identify_critical_issues",
]
