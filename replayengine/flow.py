"""Flow loader and step executor."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from replayengine.actions import ExecutionContext
from replayengine.actions.navigate import navigation_target
from replayengine.actions.registry import get_action
from replayengine.auth import looks_unauthenticated
from replayengine.browser import capture_screenshot
from replayengine.exceptions import (
    AuthFailure,
    FlowNotFoundError,
    FlowValidationError,
    ScriptHookError,
    SecurityViolation,
    UnsupportedStepKind,
)
from replayengine.logger import get_logger
from replayengine.models import (
    Flow,
    FlowMetadata,
    RetryConfig,
    RunStatus,
    Step,
    StepError,
    StepKind,
)
from replayengine.retry import non_retryable, run_with_retry
from replayengine.security import assert_allowed

if TYPE_CHECKING:
    from replayengine.actions import BaseAction
    from replayengine.auth import AuthRecovery
    from replayengine.resolver import Resolution
    from replayengine.telemetry import RunLogger

log = get_logger(__name__)

FLOW_FILE = "flow.json"

DEFAULT_STEP_RETRY = RetryConfig(
    max_retries=2,
    initial_backoff_ms=500,
    backoff_multiplier=2,
    max_backoff_ms=4000,
)

# Handler errors that retrying cannot fix. Gate and registry errors are
# raised before the retry loop.
step_failure_policy = non_retryable(ScriptHookError)


class FlowStore(Protocol):
    def load_flow(self, name: str) -> Flow | None: ...


class FlowLoader:
    """Loads and validates ``<flows_dir>/<name>/flow.json`` documents."""

    def __init__(self, flows_dir: Path) -> None:
        self.flows_dir = Path(flows_dir)
        self._cache: dict[str, Flow] = {}

    def flow_dir(self, name: str) -> Path:
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise FlowNotFoundError(name)
        return self.flows_dir / name

    def load_flow(self, name: str) -> Flow | None:
        """Flow store interface: the flow, or None when it does not exist."""
        try:
            return self.load(name)
        except FlowNotFoundError:
            return None

    def load(self, name: str) -> Flow:
        """Load a flow by name, using cache if available."""
        if name in self._cache:
            return self._cache[name]
        return self.reload(name)

    def reload(self, name: str) -> Flow:
        """Load a flow from disk, bypassing cache."""
        path = self.flow_dir(name) / FLOW_FILE
        if not path.exists():
            raise FlowNotFoundError(name)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            flow = Flow.model_validate(data)
        except json.JSONDecodeError as exc:
            raise FlowValidationError(name, f"Invalid JSON: {exc}") from exc
        except Exception as exc:
            raise FlowValidationError(name, str(exc)) from exc
        self._cache[name] = flow
        log.info("flow_loaded", flow=name, path=str(path), steps=len(flow.steps))
        return flow

    def list_flows(self) -> list[FlowMetadata]:
        """Metadata of every readable flow, sorted by directory name."""
        return [meta for _, meta in self.list_flow_entries()]

    def list_flow_entries(self) -> list[tuple[str, FlowMetadata]]:
        """``(directory name, metadata)`` pairs; the directory name is what ``load`` takes."""
        if not self.flows_dir.is_dir():
            return []
        entries: list[tuple[str, FlowMetadata]] = []
        for path in sorted(self.flows_dir.glob(f"*/{FLOW_FILE}")):
            name = path.parent.name
            try:
                entries.append((name, self.load(name).metadata))
            except Exception as exc:
                log.warning("flow_load_failed", path=str(path), error=str(exc))
        return entries

    def save(self, flow: Flow) -> Path:
        flow_dir = self.flow_dir(flow.name)
        flow_dir.mkdir(parents=True, exist_ok=True)
        path = flow_dir / FLOW_FILE
        path.write_text(
            flow.model_dump_json(indent=2, by_alias=True, exclude_none=True),
            encoding="utf-8",
        )
        self._cache[flow.name] = flow
        log.info("flow_saved", flow=flow.name, path=str(path))
        return path


class StepExecutor:
    """Runs a flow's steps in order against one execution context.

    Each step goes through the security gate (navigate only), its handler
    under bounded retry, and on failure the auth detector with one recovery
    attempt. The first unrecovered failure ends the run and is recorded on
    ``context.step_error``.
    """

    def __init__(
        self,
        step_retry: RetryConfig = DEFAULT_STEP_RETRY,
        auth_recovery: AuthRecovery | None = None,
        delay_between_ms: float = 0,
        screenshot_dir: Path | None = None,
        cancel_event: asyncio.Event | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.step_retry = step_retry
        self.auth_recovery = auth_recovery
        self.delay_between_ms = delay_between_ms
        self.screenshot_dir = screenshot_dir
        self.cancel_event = cancel_event
        self._sleep = sleep

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    async def run(
        self, flow: Flow, context: ExecutionContext, run_logger: RunLogger
    ) -> RunStatus:
        log.info("flow_started", flow=flow.name, run_id=run_logger.run_id, steps=len(flow.steps))

        for position, step in enumerate(flow.steps):
            if self.cancelled:
                log.warning("flow_cancelled", flow=flow.name, before_step=step.index)
                return RunStatus.ABORTED

            if position > 0 and self.delay_between_ms > 0:
                await self._sleep(self.delay_between_ms / 1000)
            if step.wait_before_ms > 0:
                await self._sleep(step.wait_before_ms / 1000)

            status = await self._run_step(flow, step, context, run_logger)
            if status is not None:
                return status

        log.info("flow_completed", flow=flow.name, run_id=run_logger.run_id)
        return RunStatus.COMPLETED

    async def _run_step(
        self,
        flow: Flow,
        step: Step,
        context: ExecutionContext,
        run_logger: RunLogger,
    ) -> RunStatus | None:
        """Execute one step. Returns a terminal status, or None to continue."""
        run_logger.begin_step(step.index)

        if step.kind == StepKind.NAVIGATE:
            try:
                self._check_navigation(flow, step, context)
            except SecurityViolation as exc:
                log.error("security_violation", flow=flow.name, step=step.index, url=exc.url)
                run_logger.log_step(step.index, step.kind.value, "failure", error=str(exc))
                context.step_error = self._step_error(step, context, exc)
                return RunStatus.ABORTED

        try:
            handler = get_action(step.kind, step.index)
        except UnsupportedStepKind as exc:
            return await self._fail(step, context, run_logger, exc, retries=0)

        attempts = 0

        async def attempt() -> Resolution | None:
            nonlocal attempts
            attempts += 1
            return await handler.execute(context.page, step, context)

        try:
            resolution = await run_with_retry(
                attempt,
                self.step_retry,
                step_failure_policy,
                operation_id=step.index,
                sleep=self._sleep,
            )
        except Exception as exc:
            retries = max(attempts - 1, 0)
            if self.auth_recovery is not None and await looks_unauthenticated(context.page):
                return await self._recover_and_retry(
                    flow, step, handler, context, run_logger, exc, retries
                )
            return await self._fail(step, context, run_logger, exc, retries)

        self._succeed(step, context, run_logger, resolution, max(attempts - 1, 0))
        return None

    @staticmethod
    def _check_navigation(flow: Flow, step: Step, context: ExecutionContext) -> None:
        url = navigation_target(step, context)
        if url:
            assert_allowed(url, flow.metadata.allowed_domains, flow.name)

    async def _recover_and_retry(
        self,
        flow: Flow,
        step: Step,
        handler: BaseAction,
        context: ExecutionContext,
        run_logger: RunLogger,
        original: Exception,
        retries: int,
    ) -> RunStatus | None:
        """Log in again and retry the failed step exactly once."""
        auth_failure = AuthFailure(flow.name, context.page.url)
        log.warning("auth_failure_detected", step=step.index, error=str(auth_failure))
        screenshot = await self._screenshot(context, run_logger, f"fail_step_{step.index}")
        run_logger.log_step(
            step.index,
            step.kind.value,
            "failure",
            retries=retries,
            retry_reason="auth_failure",
            screenshot=screenshot,
            error=f"{auth_failure} ({original})",
        )

        login_url = flow.metadata.login_url or flow.metadata.url
        run_logger.begin_step(step.index)
        try:
            await self.auth_recovery.recover(flow.name, login_url, context.browser_context)
            if step.kind != StepKind.NAVIGATE and step.page_url:
                target = context.render(step.page_url)
                assert_allowed(target, flow.metadata.allowed_domains, flow.name)
                await context.page.goto(
                    target,
                    wait_until=context.navigation_wait_until,
                    timeout=context.action_timeout_ms,
                )
            resolution = await handler.execute(context.page, step, context)
        except SecurityViolation as exc:
            run_logger.log_step(step.index, step.kind.value, "failure", retries=1, error=str(exc))
            context.step_error = self._step_error(step, context, exc, retries=1)
            return RunStatus.ABORTED
        except Exception as exc:
            return await self._fail(step, context, run_logger, exc, retries=1)

        self._succeed(step, context, run_logger, resolution, retries=1, retry_reason="auth_recovered")
        return None

    def _succeed(
        self,
        step: Step,
        context: ExecutionContext,
        run_logger: RunLogger,
        resolution: Resolution | None,
        retries: int,
        retry_reason: str | None = None,
    ) -> None:
        context.steps_completed += 1
        run_logger.log_step(
            step.index,
            step.kind.value,
            "success",
            selector_used=resolution.strategy if resolution else None,
            selectors_tried=resolution.tried if resolution else None,
            retries=retries,
            retry_reason=retry_reason,
        )
        log.info(
            "step_succeeded",
            step=step.index,
            kind=step.kind.value,
            strategy=resolution.strategy if resolution else None,
            retries=retries,
        )

    async def _fail(
        self,
        step: Step,
        context: ExecutionContext,
        run_logger: RunLogger,
        exc: Exception,
        retries: int,
    ) -> RunStatus:
        screenshot = await self._screenshot(context, run_logger, f"fail_step_{step.index}")
        tried = getattr(exc, "strategies_tried", None)
        run_logger.log_step(
            step.index,
            step.kind.value,
            "failure",
            selectors_tried=tried,
            retries=retries,
            screenshot=screenshot,
            error=str(exc),
        )
        context.step_error = self._step_error(step, context, exc, screenshot, retries)
        log.error(
            "step_failed",
            step=step.index,
            kind=step.kind.value,
            retries=retries,
            error=str(exc),
        )
        return RunStatus.FAILED

    async def _screenshot(
        self, context: ExecutionContext, run_logger: RunLogger, label: str
    ) -> str | None:
        if self.screenshot_dir is None:
            return None
        path = await capture_screenshot(
            context.page, self.screenshot_dir, label, run_logger.run_id
        )
        if path:
            context.screenshots.append(path)
        return path

    @staticmethod
    def _step_error(
        step: Step,
        context: ExecutionContext,
        exc: Exception,
        screenshot: str | None = None,
        retries: int = 0,
    ) -> StepError:
        url = context.page.url
        if not isinstance(url, str):
            url = ""
        return StepError(
            step=step.index,
            kind=step.kind.value,
            message=str(exc),
            screenshot=screenshot or "",
            url=url,
            retries_attempted=retries,
        )
