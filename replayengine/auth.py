"""Auth-failure detection, session recovery, and the stores it relies on."""

from __future__ import annotations

import inspect
import json
import shutil
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel

from replayengine.exceptions import FlowNotFoundError, RecoveryFailed
from replayengine.logger import get_logger
from replayengine.totp import generate_totp

if TYPE_CHECKING:
    from playwright.async_api import BrowserContext, Page

    from replayengine.browser import BrowserManager

log = get_logger(__name__)

AUTH_URL_FRAGMENTS = ("/login", "/signin", "/sign-in", "/auth/")
AUTH_FAILURE_PHRASES = (
    "session expired",
    "please log in",
    "unauthorized",
    "access denied",
)
COOKIE_MAX_AGE = timedelta(hours=8)

_USERNAME_FIELDS = "[name=username],[name=email],[type=email],[autocomplete=username]"
_PASSWORD_FIELDS = "[type=password]"
_OTP_FIELDS = (
    "[name=otp],[name=code],[name=mfa],"
    "[autocomplete=one-time-code],[placeholder*=code i]"
)

OtpProvider = Callable[[str], "str | Awaitable[str]"]


class Credentials(BaseModel):
    """Login credentials consumed by the login sub-flow."""

    username: str | None = None
    password: str | None = None
    totp_secret: str | None = None


# --- Collaborator interfaces ---


class CookieStore(Protocol):
    def load_cookies(self, flow_name: str) -> list[dict[str, Any]] | None: ...

    def save_cookies(self, flow_name: str, cookies: list[dict[str, Any]]) -> None: ...


class CredentialStore(Protocol):
    def load_credentials(self, flow_name: str) -> Credentials | None: ...


class LoginFlow(Protocol):
    async def run_auth_flow(self, flow_name: str, login_url: str) -> None: ...


# --- Detection ---


async def looks_unauthenticated(page: Page) -> bool:
    """Cheap heuristic: login-ish URL or an auth-failure phrase on the page.

    Only meaningful after a step has already failed; pages may legitimately
    contain these words.
    """
    url = (page.url or "").lower()
    if any(fragment in url for fragment in AUTH_URL_FRAGMENTS):
        return True

    try:
        body = await page.text_content("body", timeout=2000) or ""
    except Exception as exc:
        log.debug("auth_probe_body_unreadable", error=str(exc)[:120])
        return False

    body = body.lower()
    return any(phrase in body for phrase in AUTH_FAILURE_PHRASES)


# --- Recovery ---


class AuthRecovery:
    """Runs the login sub-flow and refreshes the running context's cookies."""

    def __init__(
        self,
        login_flow: LoginFlow | None,
        cookie_store: CookieStore | None = None,
    ) -> None:
        self.login_flow = login_flow
        self.cookie_store = cookie_store

    async def recover(
        self,
        flow_name: str,
        login_url: str,
        browser_context: BrowserContext | None = None,
    ) -> None:
        """Re-establish the session.

        Raises:
            RecoveryFailed: If no login flow is configured or it fails.
        """
        if self.login_flow is None:
            raise RecoveryFailed(flow_name, "no login flow configured")

        log.info("auth_recovery_started", flow=flow_name, login_url=login_url)
        try:
            await self.login_flow.run_auth_flow(flow_name, login_url)
        except RecoveryFailed:
            raise
        except Exception as exc:
            raise RecoveryFailed(flow_name, str(exc)) from exc

        if browser_context is not None and self.cookie_store is not None:
            cookies = self.cookie_store.load_cookies(flow_name)
            if cookies:
                await browser_context.add_cookies(cookies)
        log.info("auth_recovery_succeeded", flow=flow_name)


# --- Default collaborators ---


class FileCredentialStore:
    """Per-flow JSON files for cookies and credentials.

    Layout: ``<base_dir>/<flow>/cookies.json`` and
    ``<base_dir>/<flow>/credentials.json``. Files are plain JSON; protect the
    directory with filesystem permissions.
    """

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)

    def flow_dir(self, flow_name: str) -> Path:
        if not flow_name or "/" in flow_name or "\\" in flow_name or flow_name in (".", ".."):
            raise FlowNotFoundError(flow_name)
        return self.base_dir / flow_name

    def clear(self, flow_name: str) -> bool:
        """Delete everything stored for a flow. False when nothing was stored."""
        path = self.flow_dir(flow_name)
        if not path.exists():
            return False
        shutil.rmtree(path)
        log.info("auth_cleared", flow=flow_name)
        return True

    def load_cookies(self, flow_name: str) -> list[dict[str, Any]] | None:
        data = self._read(self.flow_dir(flow_name) / "cookies.json")
        if not data:
            return None
        return data.get("cookies") or None

    def save_cookies(self, flow_name: str, cookies: list[dict[str, Any]]) -> None:
        payload = {
            "cookies": cookies,
            "saved_at": datetime.now(tz=timezone.utc).isoformat(),
        }
        self._write(self.flow_dir(flow_name) / "cookies.json", payload)
        log.debug("cookies_saved", flow=flow_name, count=len(cookies))

    def cookies_fresh(
        self, flow_name: str, max_age: timedelta = COOKIE_MAX_AGE
    ) -> bool:
        """True when cookies exist and were saved within ``max_age``."""
        data = self._read(self.flow_dir(flow_name) / "cookies.json")
        if not data or "saved_at" not in data:
            return False
        saved_at = datetime.fromisoformat(data["saved_at"])
        return datetime.now(tz=timezone.utc) - saved_at < max_age

    def load_credentials(self, flow_name: str) -> Credentials | None:
        data = self._read(self.flow_dir(flow_name) / "credentials.json")
        if not data:
            return None
        return Credentials.model_validate(data)

    def save_credentials(self, flow_name: str, credentials: Credentials) -> None:
        self._write(
            self.flow_dir(flow_name) / "credentials.json",
            credentials.model_dump(exclude_none=True),
        )

    @staticmethod
    def _read(path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            log.warning("auth_file_corrupt", path=str(path), error=str(exc))
            return None
        except OSError as exc:
            log.warning("auth_file_unreadable", path=str(path), error=str(exc))
            return None

    @staticmethod
    def _write(path: Path, payload: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


class BrowserLoginFlow:
    """Default login sub-flow: fill credentials in a fresh context.

    Fills the first username and password fields on ``login_url``, submits
    with Enter, fills a one-time code when a code field shows up (from
    ``otp_provider``, else from the stored TOTP secret), then stores the
    resulting cookies.
    """

    def __init__(
        self,
        browser: BrowserManager,
        credentials: CredentialStore,
        cookies: CookieStore,
        otp_provider: OtpProvider | None = None,
        timeout_ms: float = 15000,
    ) -> None:
        self._browser = browser
        self._credentials = credentials
        self._cookies = cookies
        self._otp_provider = otp_provider
        self._timeout_ms = timeout_ms

    async def run_auth_flow(self, flow_name: str, login_url: str) -> None:
        creds = self._credentials.load_credentials(flow_name)
        if creds is None:
            raise RecoveryFailed(
                flow_name,
                f"no credentials found for flow '{flow_name}'",
            )

        context = await self._browser.new_context()
        try:
            page = await context.new_page()
            await page.goto(login_url, wait_until="networkidle", timeout=self._timeout_ms)

            if creds.username:
                await page.locator(_USERNAME_FIELDS).first.fill(
                    creds.username, timeout=self._timeout_ms
                )
            if creds.password:
                password_field = page.locator(_PASSWORD_FIELDS).first
                await password_field.fill(creds.password, timeout=self._timeout_ms)
                await password_field.press("Enter")
            await page.wait_for_load_state("networkidle", timeout=self._timeout_ms)

            if self._otp_provider is not None or creds.totp_secret:
                otp_field = page.locator(_OTP_FIELDS).first
                if await otp_field.is_visible():
                    code = await self._one_time_code(flow_name, creds)
                    await otp_field.fill(code, timeout=self._timeout_ms)
                    await otp_field.press("Enter")
                    await page.wait_for_load_state("networkidle", timeout=self._timeout_ms)

            self._cookies.save_cookies(flow_name, await context.cookies())
            log.info("login_flow_completed", flow=flow_name)
        finally:
            await context.close()

    async def _one_time_code(self, flow_name: str, creds: Credentials) -> str:
        """The configured provider wins over a stored TOTP secret."""
        if self._otp_provider is None:
            return generate_totp(creds.totp_secret)
        code = self._otp_provider(flow_name)
        if inspect.isawaitable(code):
            code = await code
        return str(code)
