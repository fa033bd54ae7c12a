"""
Models for the pipeline definition: push trigger, environment and the ordered
list of steps.
"""
from enum import Enum
from fnmatch import fnmatchcase
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .push_event import PushEvent


class StepCategory(str, Enum):
    """
    What a step does. The category fixes which pipeline state a successful
    step reaches and which error a failing one raises.
    """
    CHECKOUT = "checkout"
    TOOLCHAIN = "toolchain"
    INFO = "info"
    CHECK = "check"
    LINT = "lint"
    TEST = "test"
    BUILD = "build"
    LOGIN = "login"
    PUBLISH = "publish"
    RELEASE = "release"
    OTHER = "other"


class PipelineState(str, Enum):
    """
    Linear states of a release pipeline run, in order.
    """
    TRIGGERED = "triggered"
    TOOLCHAIN_PREPARED = "toolchain-prepared"
    VERIFIED = "verified"
    BUILT = "built"
    AUTHENTICATED = "authenticated"
    PUBLISHED = "published"
    RELEASED = "released"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATE_ORDER.index(self)


_STATE_ORDER = list(PipelineState)

STATE_REACHED_BY = {
    StepCategory.TOOLCHAIN: PipelineState.TOOLCHAIN_PREPARED,
    StepCategory.TEST: PipelineState.VERIFIED,
    StepCategory.BUILD: PipelineState.BUILT,
    StepCategory.LOGIN: PipelineState.AUTHENTICATED,
    StepCategory.PUBLISH: PipelineState.PUBLISHED,
    StepCategory.RELEASE: PipelineState.RELEASED,
}


def _stringify(values: Any) -> Dict[str, str]:
    if values is None:
        return {}
    if not isinstance(values, dict):
        raise ValueError("expected a mapping")
    result = {}
    for key, value in values.items():
        if isinstance(value, bool):
            value = "true" if value else "false"
        result[str(key)] = "" if value is None else str(value)
    return result


class Step(BaseModel):
    """
    A single step: either a shell script (``run``) or a builtin action
    (``uses``).
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: Optional[str] = None
    id: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, str] = Field(default_factory=dict, alias="with")
    env: Dict[str, str] = Field(default_factory=dict)
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)
    working_directory: Optional[str] = Field(default=None, alias="working-directory")
    category: Optional[StepCategory] = None
    categories: List[StepCategory] = Field(default_factory=list)

    @field_validator("env", "with_", mode="before")
    @classmethod
    def _coerce_mapping(cls, value):
        return _stringify(value)

    @model_validator(mode="after")
    def _run_or_uses(self):
        if bool(self.run) == bool(self.uses):
            raise ValueError(f"step {self.display_name!r} must define exactly one of 'run' or 'uses'")
        return self

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.uses:
            return f"Run {self.uses}"
        first_line = (self.run or "").strip().splitlines()
        return f"Run {first_line[0]}" if first_line else "Run"

    @property
    def target_state(self) -> Optional[PipelineState]:
        """The furthest state this step reaches when it succeeds."""
        reached = [STATE_REACHED_BY[c] for c in self.categories if c in STATE_REACHED_BY]
        if not reached:
            return None
        return max(reached, key=lambda state: state.rank)


class PushTrigger(BaseModel):
    """
    Push trigger with optional branch filters (glob patterns). No filter means
    every branch.
    """
    model_config = ConfigDict(populate_by_name=True)

    branches: List[str] = Field(default_factory=list)
    branches_ignore: List[str] = Field(default_factory=list, alias="branches-ignore")

    def matches(self, event: PushEvent) -> bool:
        branch = event.branch
        if branch is None:
            return False
        if any(fnmatchcase(branch, pattern) for pattern in self.branches_ignore):
            return False
        if not self.branches:
            return True
        return any(fnmatchcase(branch, pattern) for pattern in self.branches)


class PipelineDefinition(BaseModel):
    """
    Complete pipeline: one job executed step by step on one machine.
    """
    name: str
    path: Optional[str] = None
    trigger: PushTrigger = Field(default_factory=PushTrigger)
    env: Dict[str, str] = Field(default_factory=dict)

    job_name: str = "build"
    runs_on: Optional[str] = None
    job_env: Dict[str, str] = Field(default_factory=dict)
    steps: List[Step]

    @field_validator("env", "job_env", mode="before")
    @classmethod
    def _coerce_env(cls, value):
        return _stringify(value)

    @field_validator("steps")
    @classmethod
    def _has_steps(cls, value: List[Step]) -> List[Step]:
        if not value:
            raise ValueError("a pipeline needs at least one step")
        return value

    def is_triggered_by(self, event: PushEvent) -> bool:
        return self.trigger.matches(event)
