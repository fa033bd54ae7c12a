"""
Records of a pipeline run and its step results.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field

from .pipeline_definition import PipelineState, StepCategory
from .push_event import PushEvent
from ..exceptions import ERRORS_BY_CATEGORY, PipelineStepError


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunOutcome(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_TRIGGERED = "not-triggered"
    DUPLICATE = "duplicate"


class StepResult(BaseModel):
    name: str
    categories: List[StepCategory] = []
    status: StepStatus
    exit_code: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    output_tail: List[str] = []
    error: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None


class PipelineRun(BaseModel):
    """
    One execution of a pipeline for one push event.

    ``state`` is the furthest state reached; it never goes backwards. The
    terminal state is FAILED when the outcome is a failure.
    """
    run_id: str = Field(default_factory=new_run_id)
    pipeline: str
    event: PushEvent
    started_at: datetime = Field(default_factory=_now)
    finished_at: Optional[datetime] = None

    state: PipelineState = PipelineState.TRIGGERED
    outcome: RunOutcome = RunOutcome.RUNNING
    steps: List[StepResult] = []

    failed_step: Optional[str] = None
    error_category: Optional[str] = None
    error_message: Optional[str] = None
    failure_exit_code: Optional[int] = None

    dry_run: bool = False

    @property
    def terminal_state(self) -> PipelineState:
        if self.outcome == RunOutcome.FAILED:
            return PipelineState.FAILED
        return self.state

    @property
    def succeeded(self) -> bool:
        return self.outcome in (RunOutcome.SUCCEEDED, RunOutcome.NOT_TRIGGERED, RunOutcome.DUPLICATE)

    @property
    def released(self) -> bool:
        return (
            self.outcome == RunOutcome.SUCCEEDED
            and self.state == PipelineState.RELEASED
            and not self.dry_run
        )

    @property
    def exit_code(self) -> int:
        if self.outcome == RunOutcome.FAILED:
            return self.failure_exit_code or 1
        return 0

    def advance(self, state: Optional[PipelineState]) -> None:
        if state is not None and state.rank > self.state.rank:
            self.state = state

    def fail(self, error: PipelineStepError) -> None:
        self.outcome = RunOutcome.FAILED
        self.failed_step = error.step
        self.error_category = error.category
        self.error_message = str(error)
        self.failure_exit_code = error.exit_code
        self.finish()

    def finish(self, outcome: Optional[RunOutcome] = None) -> None:
        if outcome is not None:
            self.outcome = outcome
        self.finished_at = _now()

    def raise_for_status(self) -> None:
        """
        Raises the categorised step error if the run failed.
        """
        if self.outcome != RunOutcome.FAILED:
            return
        error_cls = ERRORS_BY_CATEGORY.get(self.error_category or "", PipelineStepError)
        raise error_cls(self.error_message or "pipeline failed", step=self.failed_step,
                        exit_code=self.exit_code)
