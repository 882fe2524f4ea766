"""All pydantic models for replayengine."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


# --- Core flow models ---


class StepKind(str, Enum):
    """Closed set of recorded interaction kinds."""

    NAVIGATE = "navigate"
    CLICK = "click"
    TYPE = "type"
    SELECT = "select"
    CHECK = "check"
    KEYPRESS = "keypress"
    SCROLL = "scroll"
    FRAME_SWITCH = "frame-switch"
    TAB_SWITCH = "tab-switch"
    WAIT = "wait"
    UPLOAD = "upload"
    SCRIPT = "script"


# Resolution order, strongest first. Never reordered at runtime.
SELECTOR_STRATEGIES: tuple[str, ...] = ("test_id", "aria", "text", "css", "xpath")


class SelectorSet(BaseModel):
    """Independently captured ways to address one element."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    test_id: str | None = Field(default=None, alias="testId")
    aria: str | None = None
    text: str | None = None
    css: str | None = None
    xpath: str | None = None

    def strategies(self) -> list[tuple[str, str]]:
        """Present strategies as ``(name, value)`` in fixed priority order."""
        result = []
        for name in SELECTOR_STRATEGIES:
            value = getattr(self, name)
            if value and value.strip():
                result.append((name, value))
        return result

    @property
    def is_empty(self) -> bool:
        return not self.strategies()


class Step(BaseModel):
    """One recorded interaction. Immutable once created."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    index: int = Field(ge=0)
    kind: StepKind = Field(alias="type")
    selectors: SelectorSet = Field(default_factory=SelectorSet)
    value: str | None = None
    key: str | None = None
    url: str | None = None
    frame_selector: str | None = Field(default=None, alias="frameSelector")
    wait_before_ms: int = Field(default=0, ge=0, alias="waitBefore")
    page_url: str | None = Field(default=None, alias="pageUrl")
    annotation: str | None = None


class FlowMetadata(BaseModel):
    """Metadata stored alongside a flow's steps."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    url: str
    allowed_domains: list[str] = Field(default_factory=list, alias="allowedDomains")
    steps_count: int = Field(default=0, ge=0, alias="stepsCount")
    version: int = Field(default=1, ge=1)
    recorded_at: datetime | None = Field(default=None, alias="recordedAt")
    login_url: str | None = Field(default=None, alias="loginUrl")
    description: str | None = None


class Flow(BaseModel):
    """A complete recorded flow: metadata plus ordered steps."""

    model_config = ConfigDict(frozen=True)

    metadata: FlowMetadata
    steps: list[Step]

    @field_validator("steps")
    @classmethod
    def _order_steps(cls, steps: list[Step]) -> list[Step]:
        indices = [s.index for s in steps]
        if len(indices) != len(set(indices)):
            raise ValueError("step indices must be unique")
        return sorted(steps, key=lambda s: s.index)

    @property
    def name(self) -> str:
        return self.metadata.name


# --- Retry policy ---


class RetryConfig(BaseModel):
    """Bounded retry with exponential backoff."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0)
    initial_backoff_ms: float = Field(default=500, ge=0)
    backoff_multiplier: float = Field(default=2, ge=1)
    max_backoff_ms: float = Field(default=8000, ge=0)

    def backoff(self, attempt: int) -> float:
        """Delay in ms after the 0-indexed ``attempt``."""
        try:
            delay = self.initial_backoff_ms * self.backoff_multiplier**attempt
        except OverflowError:
            return self.max_backoff_ms
        return min(delay, self.max_backoff_ms)


class FailureDecision(str, Enum):
    """Outcome of a failure callback."""

    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"


# --- Execution models ---


class StepError(BaseModel):
    """Terminal failure of a run, attributed to one step."""

    step: int
    kind: str
    message: str
    screenshot: str = ""
    url: str = ""
    retries_attempted: int = 0


class StepLogEntry(BaseModel):
    """Structured outcome of one step attempt."""

    step_index: int
    kind: str
    status: Literal["success", "failure", "skipped"]
    duration_ms: float
    selector_used: str | None = None
    selectors_tried: list[str] = Field(default_factory=list)
    retries: int = 0
    retry_reason: str | None = None
    screenshot: str | None = None
    error: str | None = None


class RunLog(BaseModel):
    """Full structured log persisted once per run."""

    run_id: str
    flow: str
    started_at: datetime
    completed_at: datetime | None = None
    success: bool = False
    duration_ms: float = 0
    steps: list[StepLogEntry] = Field(default_factory=list)
    params: dict[str, Any] = Field(default_factory=dict)


class RunStatus(str, Enum):
    """Terminal state of a run."""

    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class RunResult(BaseModel):
    """Single well-formed result returned for every run."""

    flow: str
    run_id: str | None = None
    status: RunStatus
    message: str
    duration_ms: float = 0
    steps_completed: int = 0
    steps_total: int = 0
    screenshots: list[str] = Field(default_factory=list)
    error: StepError | None = None
    trace_path: str | None = None

    @computed_field
    @property
    def success(self) -> bool:
        return self.status == RunStatus.COMPLETED


# --- Versioning ---


class FlowVersion(BaseModel):
    """One generated-script revision of a flow with its run statistics."""

    version: int
    saved_at: datetime
    script_file: str
    success_rate: float = Field(default=0.0, ge=0, le=1)
    run_count: int = Field(default=0, ge=0)
