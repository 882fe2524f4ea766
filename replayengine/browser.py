"""Playwright browser manager for replayengine."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any

from playwright.async_api import Browser, BrowserContext, Page, async_playwright

from replayengine.exceptions import BrowserError, ConnectionFailure
from replayengine.logger import get_logger
from replayengine.models import RetryConfig
from replayengine.retry import run_with_retry

log = get_logger(__name__)

DEFAULT_CONNECT_RETRY = RetryConfig(
    max_retries=2,
    initial_backoff_ms=1000,
    backoff_multiplier=2,
    max_backoff_ms=5000,
)


class BrowserManager:
    """Manages Playwright browser lifecycle.

    Launches a local Chromium, or attaches to a running one over CDP when a
    ``cdp_url`` is given. Every run gets its own context from
    ``new_context``; attach mode never closes the remote browser.
    """

    def __init__(
        self,
        cdp_url: str | None = None,
        connect_retry: RetryConfig = DEFAULT_CONNECT_RETRY,
    ) -> None:
        self.cdp_url = cdp_url
        self.connect_retry = connect_retry
        self._playwright = None
        self._browser: Browser | None = None

    @property
    def attached(self) -> bool:
        return self.cdp_url is not None

    @property
    def is_started(self) -> bool:
        return self._browser is not None

    async def start(self, headless: bool = True) -> None:
        """Launch or attach to the browser."""
        if self._browser is not None:
            return
        try:
            self._playwright = await async_playwright().start()
        except Exception as exc:
            raise BrowserError(f"Failed to start playwright: {exc}") from exc

        if self.cdp_url:
            self._browser = await self._connect(self.cdp_url)
            log.info("browser_attached", cdp_url=self.cdp_url)
            return

        try:
            self._browser = await self._playwright.chromium.launch(headless=headless)
        except Exception as exc:
            await self._stop_playwright()
            raise BrowserError(f"Failed to start browser: {exc}") from exc
        log.info("browser_started", headless=headless)

    async def _connect(self, cdp_url: str) -> Browser:
        attempts = 0

        async def connect() -> Browser:
            nonlocal attempts
            attempts += 1
            return await self._playwright.chromium.connect_over_cdp(cdp_url)

        try:
            browser = await run_with_retry(
                connect, self.connect_retry, operation_id="cdp_connect"
            )
        except Exception as exc:
            await self._stop_playwright()
            raise ConnectionFailure(cdp_url, attempts, str(exc)[:200]) from exc
        return browser

    async def stop(self) -> None:
        """Close browser and cleanup."""
        try:
            if self._browser and not self.attached:
                await self._browser.close()
        except Exception as exc:
            log.warning("browser_stop_error", error=str(exc))
        finally:
            self._browser = None
            await self._stop_playwright()
            log.info("browser_stopped")

    async def _stop_playwright(self) -> None:
        try:
            if self._playwright:
                await self._playwright.stop()
        except Exception as exc:
            log.warning("playwright_stop_error", error=str(exc))
        finally:
            self._playwright = None

    async def new_context(
        self, cookies: list[dict[str, Any]] | None = None
    ) -> BrowserContext:
        """Create a new browser context, optionally with cookies."""
        if not self._browser:
            raise BrowserError("Browser not started, call start() first")
        ctx = await self._browser.new_context()
        if cookies:
            await ctx.add_cookies(cookies)
        return ctx

    async def open_run_context(
        self,
        cookies: list[dict[str, Any]] | None = None,
        trace: bool = True,
    ) -> tuple[BrowserContext, Page]:
        """Context and first page for one run, with tracing started."""
        ctx = await self.new_context(cookies)
        if trace:
            try:
                await ctx.tracing.start(screenshots=True, snapshots=True)
            except Exception as exc:
                log.warning("trace_start_error", error=str(exc))
        page = await ctx.new_page()
        return ctx, page

    @staticmethod
    async def close_run_context(
        ctx: BrowserContext, trace_path: Path | None = None
    ) -> str | None:
        """Stop tracing and close the context. Returns the saved trace path."""
        saved: str | None = None
        if trace_path is not None:
            try:
                trace_path.parent.mkdir(parents=True, exist_ok=True)
                await ctx.tracing.stop(path=str(trace_path))
                saved = str(trace_path)
            except Exception as exc:
                log.warning("trace_stop_error", error=str(exc))
        try:
            await ctx.close()
        except Exception as exc:
            log.warning("context_close_error", error=str(exc))
        return saved


async def capture_screenshot(
    page: Page, directory: Path, label: str, run_id: str | None = None
) -> str | None:
    """Save a viewport PNG as ``[<run_id>_]<label>_<ts>.png``.

    Returns the path, or None when the page cannot be captured.
    """
    prefix = f"{run_id}_" if run_id else ""
    path = directory / f"{prefix}{label}_{int(time.time() * 1000)}.png"
    try:
        directory.mkdir(parents=True, exist_ok=True)
        await page.screenshot(path=str(path), full_page=False, type="png")
    except Exception as exc:
        log.warning("screenshot_failed", label=label, error=str(exc)[:200])
        return None
    return str(path)
