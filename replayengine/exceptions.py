"""replayengine exception hierarchy."""

from __future__ import annotations


class ReplayEngineError(Exception):
    """Base exception for all replayengine errors."""


class FlowNotFoundError(ReplayEngineError):
    """Raised when a flow document cannot be found."""

    def __init__(self, flow_name: str) -> None:
        self.flow_name = flow_name
        super().__init__(f"Flow not found: {flow_name}")


class FlowValidationError(ReplayEngineError):
    """Raised when a flow document fails schema validation."""

    def __init__(self, flow_name: str, detail: str) -> None:
        self.flow_name = flow_name
        self.detail = detail
        super().__init__(f"Flow validation error in '{flow_name}': {detail}")


class StepExecutionError(ReplayEngineError):
    """Raised by a step handler when its action cannot be carried out."""

    def __init__(self, step_index: int, kind: str, detail: str) -> None:
        self.step_index = step_index
        self.kind = kind
        self.detail = detail
        super().__init__(f"Step {step_index} ({kind}) failed: {detail}")


class NoSelectorMatched(ReplayEngineError):
    """Raised when every addressing strategy for an element is exhausted."""

    def __init__(
        self, strategies_tried: list[str], frame_scope: str | None = None
    ) -> None:
        self.strategies_tried = strategies_tried
        self.frame_scope = frame_scope
        tried = ", ".join(strategies_tried) if strategies_tried else "none"
        scope = frame_scope or "page"
        super().__init__(
            f"No selector matched (scope: {scope}). Tried: {tried}"
        )


class SecurityViolation(ReplayEngineError):
    """Raised when a navigation target is outside the flow's allowlist."""

    def __init__(self, flow_name: str, url: str, allowlist: list[str]) -> None:
        self.flow_name = flow_name
        self.url = url
        self.allowlist = list(allowlist)
        super().__init__(
            f"[SECURITY] Navigation to {url} is blocked by the domain "
            f'allowlist for flow "{flow_name}". '
            f"Allowed domains: {', '.join(allowlist)}"
        )


class AuthFailure(ReplayEngineError):
    """Raised when the browser has fallen out of an authenticated state."""

    def __init__(self, flow_name: str, url: str) -> None:
        self.flow_name = flow_name
        self.url = url
        super().__init__(
            f"Authentication lost for flow '{flow_name}' at {url}"
        )


class RecoveryFailed(ReplayEngineError):
    """Raised when the login sub-flow could not restore the session."""

    def __init__(self, flow_name: str, detail: str) -> None:
        self.flow_name = flow_name
        self.detail = detail
        super().__init__(
            f"Auth recovery failed for flow '{flow_name}': {detail}"
        )


class UnsupportedStepKind(ReplayEngineError):
    """Raised when a step kind has no registered handler."""

    def __init__(self, kind: str, step_index: int | None = None) -> None:
        self.kind = kind
        self.step_index = step_index
        where = f" at step {step_index}" if step_index is not None else ""
        super().__init__(f'Unsupported step kind: "{kind}"{where}')


class ConnectionFailure(ReplayEngineError):
    """Raised when an attach-mode browser stays unreachable after retries."""

    def __init__(self, endpoint: str, attempts: int, detail: str = "") -> None:
        self.endpoint = endpoint
        self.attempts = attempts
        msg = (
            f"Could not connect to browser at {endpoint} after {attempts} "
            f"attempt(s). The browser may need restarting"
        )
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class ScriptHookError(ReplayEngineError):
    """Raised when a script step's hook cannot be loaded."""

    def __init__(self, reference: str, detail: str) -> None:
        self.reference = reference
        self.detail = detail
        super().__init__(f"Script at {reference} {detail}")


class BrowserError(ReplayEngineError):
    """Raised on browser lifecycle errors."""


class InvalidTotpSecret(ReplayEngineError):
    """Raised when a stored TOTP secret cannot produce a code."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Cannot generate TOTP code: {detail}")
