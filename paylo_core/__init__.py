"""
Paylo dashboard core.

Resilient API client, real-time entity store and workflow orchestration for
the Paylo multi-chain payment dashboard.
"""
from .bootstrap import DashboardCore, create_dashboard_core
from .config import Settings, get_settings
from .core import EntityRegistry
from .integrations import ResilientClient, SessionStore
from .realtime import UpdateIngestionChannel
from .workflows import WorkflowOrchestrator

__version__ = "0.1.0"

__all__ = [
    "DashboardCore",
    "EntityRegistry",
    "ResilientClient",
    "SessionStore",
    "Settings",
    "UpdateIngestionChannel",
    "WorkflowOrchestrator",
    "create_dashboard_core",
    "get_settings",
]
