"""
Workflow runs for multi-step dashboard processes.

A run executes its steps in order. A failing step aborts the rest; completed
irreversible steps are not rolled back, only steps that registered a
compensation (cancellable follow-ups such as timers) are compensated.
Optional steps may fail without failing the run; their errors are kept as
warnings.
"""
import inspect
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


class RunStatus(Enum):
    """Workflow run states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StepStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    COMPENSATED = "compensated"


_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.RUNNING},
    RunStatus.RUNNING: {RunStatus.SUCCEEDED, RunStatus.FAILED},
    RunStatus.SUCCEEDED: set(),
    RunStatus.FAILED: set(),
}


class InvalidTransitionError(Exception):
    """Raised on a run state change the state machine does not allow."""

    pass


@dataclass
class WorkflowResult:
    """Outcome of a workflow; workflows return this instead of raising."""

    success: bool
    value: Any = None
    error: Optional[BaseException] = None
    run_id: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def error_message(self) -> Optional[str]:
        if self.error is None:
            return None
        return getattr(self.error, "message", None) or str(self.error)


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class WorkflowStep:
    """
    A single step of a workflow run.

    Each step has:
    - Action (sync or async callable receiving the shared context)
    - Optional compensation, run if a later step fails
    """

    def __init__(
        self,
        name: str,
        action: Callable[[Dict[str, Any]], Any],
        compensation: Optional[Callable[[Dict[str, Any], Any], Any]] = None,
        optional: bool = False,
    ):
        self.name = name
        self.action = action
        self.compensation = compensation
        self.optional = optional
        self.status = StepStatus.PENDING
        self.result: Any = None
        self.error: Optional[BaseException] = None

    async def execute(self, context: Dict[str, Any]) -> Any:
        logger.info("workflow_step_executing", step=self.name)
        try:
            self.result = await _call(self.action, context)
        except Exception as e:
            self.status = StepStatus.FAILED
            self.error = e
            logger.warning("workflow_step_failed", step=self.name, optional=self.optional, error=str(e))
            raise
        self.status = StepStatus.COMPLETED
        logger.info("workflow_step_completed", step=self.name)
        return self.result

    async def compensate(self, context: Dict[str, Any]) -> None:
        if self.compensation is None or self.status != StepStatus.COMPLETED:
            return
        logger.info("workflow_step_compensating", step=self.name)
        try:
            await _call(self.compensation, context, self.result)
            self.status = StepStatus.COMPENSATED
        except Exception as e:
            # Left for manual follow-up; the run already failed
            logger.error("workflow_step_compensation_failed", step=self.name, error=str(e))


class WorkflowRun:
    """
    One execution of a named workflow.

    Example:
        run = WorkflowRun("submit_payment")
        run.add_step("validate", validate).add_step("submit", submit)
        result = await run.execute()
    """

    def __init__(self, name: str, run_id: Optional[str] = None):
        self.run_id = run_id or str(uuid.uuid4())
        self.name = name
        self.steps: List[WorkflowStep] = []
        self.status = RunStatus.PENDING
        self.context: Dict[str, Any] = {}
        self.steps_completed: List[str] = []
        self.compensations_pending: List[str] = []
        self.warnings: List[str] = []
        self.error: Optional[BaseException] = None
        self.created_at = datetime.now(timezone.utc)
        self.completed_at: Optional[datetime] = None

    def add_step(
        self,
        name: str,
        action: Callable[[Dict[str, Any]], Any],
        compensation: Optional[Callable[[Dict[str, Any], Any], Any]] = None,
        optional: bool = False,
    ) -> "WorkflowRun":
        """
        Append a step.

        Args:
            name: Step name; its result is stored as ``context[f"{name}_result"]``
            action: Callable receiving the shared context
            compensation: Callable receiving the context and the step result
            optional: Failure is recorded as a warning instead of failing the run

        Returns:
            WorkflowRun: Self for method chaining
        """
        self.steps.append(WorkflowStep(name, action, compensation, optional))
        return self

    def transition(self, status: RunStatus) -> None:
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Workflow run {self.run_id} cannot move from {self.status.value} to {status.value}"
            )
        logger.debug("workflow_run_transition", run_id=self.run_id, previous=self.status.value, status=status.value)
        self.status = status
        if status in (RunStatus.SUCCEEDED, RunStatus.FAILED):
            self.completed_at = datetime.now(timezone.utc)

    @property
    def settled(self) -> bool:
        return self.status in (RunStatus.SUCCEEDED, RunStatus.FAILED)

    async def execute(self) -> WorkflowResult:
        """
        Run every step in order.

        The result value is ``context["result"]`` when a step sets it,
        otherwise the last completed step's result.
        """
        self.transition(RunStatus.RUNNING)
        logger.info("workflow_run_started", run_id=self.run_id, workflow=self.name)

        completed: List[WorkflowStep] = []
        last_result: Any = None
        for step in self.steps:
            try:
                last_result = await step.execute(self.context)
            except Exception as e:
                if step.optional:
                    self.warnings.append(f"{step.name}: {e}")
                    continue
                self.error = e
                await self._compensate(completed)
                self.transition(RunStatus.FAILED)
                logger.error(
                    "workflow_run_failed",
                    run_id=self.run_id,
                    workflow=self.name,
                    step=step.name,
                    error=str(e),
                )
                return WorkflowResult(
                    success=False, error=e, run_id=self.run_id, warnings=list(self.warnings)
                )
            completed.append(step)
            self.steps_completed.append(step.name)
            self.context[f"{step.name}_result"] = last_result
            if step.compensation is not None:
                self.compensations_pending.append(step.name)

        self.compensations_pending.clear()
        self.transition(RunStatus.SUCCEEDED)
        logger.info(
            "workflow_run_succeeded",
            run_id=self.run_id,
            workflow=self.name,
            steps_completed=len(self.steps_completed),
            warnings=len(self.warnings),
        )
        return WorkflowResult(
            success=True,
            value=self.context.get("result", last_result),
            run_id=self.run_id,
            warnings=list(self.warnings),
        )

    async def _compensate(self, completed: List[WorkflowStep]) -> None:
        for step in reversed(completed):
            if step.name not in self.compensations_pending:
                continue
            await step.compensate(self.context)
            self.compensations_pending.remove(step.name)
