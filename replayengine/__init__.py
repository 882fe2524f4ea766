"""replayengine: replay recorded browser flows reliably."""

from replayengine.config import EngineConfig
from replayengine.engine import FlowEngine
from replayengine.exceptions import (
    AuthFailure,
    BrowserError,
    ConnectionFailure,
    FlowNotFoundError,
    FlowValidationError,
    InvalidTotpSecret,
    NoSelectorMatched,
    RecoveryFailed,
    ReplayEngineError,
    ScriptHookError,
    SecurityViolation,
    StepExecutionError,
    UnsupportedStepKind,
)
from replayengine.models import (
    FailureDecision,
    Flow,
    FlowMetadata,
    FlowVersion,
    RetryConfig,
    RunLog,
    RunResult,
    RunStatus,
    SelectorSet,
    Step,
    StepError,
    StepKind,
    StepLogEntry,
)

__version__ = "0.1.0"

__all__ = [
    "AuthFailure",
    "BrowserError",
    "ConnectionFailure",
    "EngineConfig",
    "FailureDecision",
    "Flow",
    "FlowEngine",
    "FlowMetadata",
    "FlowNotFoundError",
    "FlowValidationError",
    "FlowVersion",
    "InvalidTotpSecret",
    "NoSelectorMatched",
    "RecoveryFailed",
    "ReplayEngineError",
    "RetryConfig",
    "RunLog",
    "RunResult",
    "RunStatus",
    "ScriptHookError",
    "SecurityViolation",
    "SelectorSet",
    "Step",
    "StepError",
    "StepExecutionError",
    "StepKind",
    "StepLogEntry",
    "UnsupportedStepKind",
    "__version__",
]
