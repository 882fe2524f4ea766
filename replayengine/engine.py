"""FlowEngine: main entry point for replaying flows."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from replayengine.actions import ExecutionContext
from replayengine.actions.navigate import navigation_target
from replayengine.actions.registry import get_action
from replayengine.actions.script import ScriptHookLoader
from replayengine.auth import AuthRecovery, BrowserLoginFlow, Credentials, FileCredentialStore
from replayengine.browser import BrowserManager, capture_screenshot
from replayengine.config import EngineConfig
from replayengine.exceptions import (
    FlowNotFoundError,
    ReplayEngineError,
    SecurityViolation,
    UnsupportedStepKind,
)
from replayengine.flow import FlowLoader, FlowStore, StepExecutor
from replayengine.logger import get_logger
from replayengine.models import (
    Flow,
    FlowMetadata,
    FlowVersion,
    RunLog,
    RunResult,
    RunStatus,
    StepError,
    StepKind,
)
from replayengine.preflight import PreflightResult, run_preflight
from replayengine.resolver import SelectorResolver
from replayengine.security import assert_allowed
from replayengine.telemetry import RunLogger, load_run_logs
from replayengine.totp import generate_totp, normalize_secret
from replayengine.versioning import VersionTracker

if TYPE_CHECKING:
    from replayengine.auth import CookieStore, CredentialStore, LoginFlow, OtpProvider

log = get_logger(__name__)

RUN_LOGS_DIR = "run-logs"
TRACES_DIR = "traces"
SCREENSHOTS_DIR = "screenshots"


class FlowEngine:
    """Replays recorded flows and reports a RunResult for every run.

    ``run`` never raises for engine errors: a missing flow, a blocked
    navigation, an unreachable browser, or a failed step all come back as a
    failed or aborted RunResult.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        flow_store: FlowStore | None = None,
        cookie_store: CookieStore | None = None,
        credential_store: CredentialStore | None = None,
        login_flow: LoginFlow | None = None,
        browser: BrowserManager | None = None,
        otp_provider: OtpProvider | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._config = config or EngineConfig.from_env()
        self._loader = FlowLoader(self._config.flows_dir)
        self._flow_store = flow_store or self._loader
        self._browser = browser or BrowserManager(
            cdp_url=self._config.cdp_url,
            connect_retry=self._config.connect_retry,
        )

        file_store = FileCredentialStore(self._config.auth_dir)
        self._auth_store = file_store
        self._cookie_store = cookie_store or file_store
        credential_store = credential_store or file_store
        if login_flow is None:
            login_flow = BrowserLoginFlow(
                self._browser,
                credential_store,
                self._cookie_store,
                otp_provider=otp_provider,
                timeout_ms=self._config.action_timeout_ms,
            )
        self._recovery = AuthRecovery(login_flow, self._cookie_store)

        self._resolver = SelectorResolver(visible_timeout_ms=self._config.resolve_timeout_ms)
        self._script_loader = ScriptHookLoader()
        self._cancel_event = asyncio.Event()
        self._start_lock = asyncio.Lock()
        self._active_runs = 0
        self._sleep = sleep

    @property
    def config(self) -> EngineConfig:
        return self._config

    # --- Lifecycle ---

    async def start(self) -> None:
        """Launch or attach to the browser."""
        async with self._start_lock:
            if not self._browser.is_started:
                await self._browser.start(headless=self._config.headless)
                log.info("engine_started", flows_dir=str(self._config.flows_dir))

    async def stop(self) -> None:
        await self._browser.stop()
        log.info("engine_stopped")

    async def __aenter__(self) -> FlowEngine:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

    def cancel(self) -> None:
        """Stop in-flight runs before their next step."""
        self._cancel_event.set()
        log.warning("cancel_requested", active_runs=self._active_runs)

    # --- Execution ---

    async def run(
        self,
        flow_name: str,
        params: dict[str, Any] | None = None,
        dry_run: bool = False,
    ) -> RunResult:
        """Run a flow once and return its result."""
        params = dict(params or {})
        started = time.monotonic()

        try:
            flow = self._flow_store.load_flow(flow_name)
            flow_dir = self.flow_dir(flow_name)
        except ReplayEngineError as exc:
            return self._failed(flow_name, str(exc), started)
        if flow is None:
            return self._failed(flow_name, str(FlowNotFoundError(flow_name)), started)

        if dry_run:
            return await self._dry_run(flow, flow_dir, params, started)

        if self._active_runs == 0:
            self._cancel_event.clear()
        self._active_runs += 1
        try:
            return await self._run_flow(flow, flow_dir, params, started)
        finally:
            self._active_runs -= 1

    async def run_batch(
        self,
        flow_name: str,
        param_sets: list[dict[str, Any]],
        parallelism: int = 1,
    ) -> list[RunResult]:
        """Run one flow for each parameter set, at most ``parallelism`` at once.

        Results are returned in the order of ``param_sets``.
        """
        semaphore = asyncio.Semaphore(max(1, parallelism))

        async def run_one(params: dict[str, Any]) -> RunResult:
            async with semaphore:
                return await self.run(flow_name, params)

        log.info("batch_started", flow=flow_name, runs=len(param_sets), parallelism=parallelism)
        results = await asyncio.gather(*(run_one(p) for p in param_sets))
        succeeded = sum(1 for r in results if r.success)
        log.info("batch_completed", flow=flow_name, succeeded=succeeded, total=len(results))
        return list(results)

    async def _run_flow(
        self,
        flow: Flow,
        flow_dir: Path,
        params: dict[str, Any],
        started: float,
    ) -> RunResult:
        run_logger = RunLogger(flow.name, params)
        if self._config.preflight:
            await self.preflight(flow, flow_dir, params)

        try:
            await self.start()
        except ReplayEngineError as exc:
            log.error("browser_unavailable", flow=flow.name, error=str(exc))
            return self._failed_before_steps(flow, flow_dir, run_logger, str(exc), started)

        try:
            cookies = self._cookie_store.load_cookies(flow.name)
            browser_context, page = await self._browser.open_run_context(
                cookies, trace=self._config.trace
            )
        except Exception as exc:
            log.error("run_context_failed", flow=flow.name, error=str(exc))
            return self._failed_before_steps(flow, flow_dir, run_logger, str(exc), started)

        context = ExecutionContext(
            page=page,
            browser_context=browser_context,
            params=params,
            resolver=self._resolver,
            flow_dir=flow_dir,
            script_loader=self._script_loader,
            action_timeout_ms=self._config.action_timeout_ms,
        )
        executor = StepExecutor(
            step_retry=self._config.step_retry,
            auth_recovery=self._recovery,
            delay_between_ms=self._config.delay_between_ms,
            screenshot_dir=flow_dir / SCREENSHOTS_DIR,
            cancel_event=self._cancel_event,
            sleep=self._sleep,
        )

        trace_path = flow_dir / TRACES_DIR / f"{run_logger.run_id}.zip"
        try:
            try:
                status = await executor.run(flow, context, run_logger)
            except Exception as exc:
                log.exception("run_crashed", flow=flow.name, run_id=run_logger.run_id)
                status = RunStatus.FAILED
                if context.step_error is None:
                    context.step_error = StepError(
                        step=context.steps_completed,
                        kind="unknown",
                        message=str(exc),
                    )

            if status == RunStatus.COMPLETED:
                final = await capture_screenshot(
                    context.page, flow_dir / SCREENSHOTS_DIR, "final", run_logger.run_id
                )
                if final:
                    context.screenshots.append(final)
                await self._save_cookies(flow.name, browser_context)
        finally:
            saved_trace = await self._browser.close_run_context(
                browser_context, trace_path if self._config.trace else None
            )

        self._record(flow, flow_dir, run_logger, status == RunStatus.COMPLETED)

        if status == RunStatus.COMPLETED:
            message = (
                f"Flow '{flow.name}' completed "
                f"({context.steps_completed}/{len(flow.steps)} steps)"
            )
        elif context.step_error is None:
            message = "cancelled"
        else:
            message = context.step_error.message

        result = RunResult(
            flow=flow.name,
            run_id=run_logger.run_id,
            status=status,
            message=message,
            duration_ms=round((time.monotonic() - started) * 1000, 1),
            steps_completed=context.steps_completed,
            steps_total=len(flow.steps),
            screenshots=list(context.screenshots),
            error=context.step_error,
            trace_path=saved_trace,
        )
        log.info(
            "run_finished",
            flow=flow.name,
            run_id=result.run_id,
            status=result.status.value,
            steps_completed=result.steps_completed,
            steps_total=result.steps_total,
        )
        return result

    async def preflight(
        self, flow: Flow, flow_dir: Path, params: dict[str, Any], check_portal: bool = True
    ) -> PreflightResult:
        """Warn about an unreachable portal, stale cookies, bad params or low memory."""
        auth_fresh = getattr(self._cookie_store, "cookies_fresh", self._auth_store.cookies_fresh)
        return await run_preflight(
            flow.name,
            flow_dir,
            flow.metadata.url,
            params,
            auth_fresh,
            check_portal=check_portal,
        )

    async def _dry_run(
        self, flow: Flow, flow_dir: Path, params: dict[str, Any], started: float
    ) -> RunResult:
        """Validate params, handlers and navigation targets without a browser."""
        if self._config.preflight:
            checks = await self.preflight(flow, flow_dir, params, check_portal=False)
            if not checks.params_valid:
                return RunResult(
                    flow=flow.name,
                    status=RunStatus.FAILED,
                    message=checks.params_message,
                    duration_ms=round((time.monotonic() - started) * 1000, 1),
                    steps_total=len(flow.steps),
                )

        context = ExecutionContext(page=None, params=params)
        for step in flow.steps:
            try:
                get_action(step.kind, step.index)
                if step.kind == StepKind.NAVIGATE:
                    url = navigation_target(step, context)
                    if url:
                        assert_allowed(url, flow.metadata.allowed_domains, flow.name)
            except (SecurityViolation, UnsupportedStepKind) as exc:
                status = RunStatus.ABORTED if isinstance(exc, SecurityViolation) else RunStatus.FAILED
                return RunResult(
                    flow=flow.name,
                    status=status,
                    message=str(exc),
                    duration_ms=round((time.monotonic() - started) * 1000, 1),
                    steps_total=len(flow.steps),
                    error=StepError(step=step.index, kind=step.kind.value, message=str(exc)),
                )
        return RunResult(
            flow=flow.name,
            status=RunStatus.COMPLETED,
            message=f"Dry run: {len(flow.steps)} step(s) validated",
            duration_ms=round((time.monotonic() - started) * 1000, 1),
            steps_total=len(flow.steps),
        )

    async def _save_cookies(self, flow_name: str, browser_context: Any) -> None:
        try:
            cookies = await browser_context.cookies()
            self._cookie_store.save_cookies(flow_name, cookies)
        except Exception as exc:
            log.warning("cookie_save_failed", flow=flow_name, error=str(exc))

    def _record(
        self, flow: Flow, flow_dir: Path, run_logger: RunLogger, success: bool
    ) -> None:
        run_logger.finish(success)
        try:
            run_logger.save(flow_dir / RUN_LOGS_DIR)
            VersionTracker(flow_dir).record_run(success, flow.metadata.version)
        except OSError as exc:
            log.warning("telemetry_write_failed", flow=flow.name, error=str(exc))

    def _failed_before_steps(
        self,
        flow: Flow,
        flow_dir: Path,
        run_logger: RunLogger,
        message: str,
        started: float,
    ) -> RunResult:
        """A run that never reached its first step still counts as a failed run."""
        self._record(flow, flow_dir, run_logger, False)
        return self._failed(
            flow.name, message, started, steps_total=len(flow.steps), run_id=run_logger.run_id
        )

    @staticmethod
    def _failed(
        flow_name: str,
        message: str,
        started: float,
        steps_total: int = 0,
        run_id: str | None = None,
    ) -> RunResult:
        log.error("run_failed", flow=flow_name, error=message)
        return RunResult(
            flow=flow_name,
            run_id=run_id,
            status=RunStatus.FAILED,
            message=message,
            duration_ms=round((time.monotonic() - started) * 1000, 1),
            steps_total=steps_total,
        )

    # --- Flows, history, versions ---

    def flow_dir(self, flow_name: str) -> Path:
        return self._loader.flow_dir(flow_name)

    def list_flows(self) -> list[FlowMetadata]:
        return self._loader.list_flows()

    def get_flow(self, flow_name: str) -> Flow:
        return self._loader.load(flow_name)

    def run_logs(self, flow_name: str, limit: int | None = None) -> list[RunLog]:
        return load_run_logs(self.flow_dir(flow_name) / RUN_LOGS_DIR, limit)

    def version_history(self, flow_name: str) -> list[FlowVersion]:
        return VersionTracker(self.flow_dir(flow_name)).load_history()

    def rollback(self, flow_name: str) -> FlowVersion | None:
        """Restore the best-scoring script version of a flow."""
        return VersionTracker(self.flow_dir(flow_name)).rollback()

    def stats(self, flow_name: str) -> dict[str, Any]:
        """Version aggregates plus counts from the stored run logs."""
        stats = VersionTracker(self.flow_dir(flow_name)).stats()
        logs = self.run_logs(flow_name)
        stats["logged_runs"] = len(logs)
        stats["logged_failures"] = sum(1 for r in logs if not r.success)
        stats["last_run_at"] = logs[0].started_at.isoformat() if logs else None
        return stats

    # --- Stored auth ---

    def set_credentials(self, flow_name: str, username: str, password: str) -> Credentials:
        """Store a username and password, keeping any TOTP secret."""
        current = self._auth_store.load_credentials(flow_name) or Credentials()
        updated = current.model_copy(update={"username": username, "password": password})
        self._auth_store.save_credentials(flow_name, updated)
        log.info("credentials_saved", flow=flow_name)
        return updated

    def set_totp_secret(self, flow_name: str, secret: str) -> Credentials:
        """Store a TOTP secret after checking it yields a code."""
        secret = normalize_secret(secret)
        generate_totp(secret)
        current = self._auth_store.load_credentials(flow_name) or Credentials()
        updated = current.model_copy(update={"totp_secret": secret})
        self._auth_store.save_credentials(flow_name, updated)
        log.info("totp_secret_saved", flow=flow_name)
        return updated

    def clear_auth(self, flow_name: str) -> bool:
        return self._auth_store.clear(flow_name)

    async def refresh_auth(self, flow_name: str) -> None:
        """Run the login sub-flow now and store fresh cookies.

        Raises:
            FlowNotFoundError: If the flow does not exist.
            RecoveryFailed: If the login does not succeed.
        """
        flow = self.get_flow(flow_name)
        await self.start()
        await self._recovery.recover(flow_name, flow.metadata.login_url or flow.metadata.url)
