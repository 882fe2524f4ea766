"""Engine configuration via environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from replayengine.models import RetryConfig

DEFAULT_HOME = Path("~/.replayengine").expanduser()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineConfig:
    """Engine configuration loaded from environment variables."""

    flows_dir: Path = DEFAULT_HOME / "flows"
    auth_dir: Path = DEFAULT_HOME / "auth"
    cdp_url: str | None = None
    headless: bool = True
    delay_between_ms: float = 0
    resolve_timeout_ms: float = 4000
    action_timeout_ms: float = 15000
    step_retry: RetryConfig = field(
        default_factory=lambda: RetryConfig(
            max_retries=2, initial_backoff_ms=500, backoff_multiplier=2, max_backoff_ms=4000
        )
    )
    connect_retry: RetryConfig = field(
        default_factory=lambda: RetryConfig(
            max_retries=2, initial_backoff_ms=1000, backoff_multiplier=2, max_backoff_ms=5000
        )
    )
    trace: bool = True
    preflight: bool = True
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load config from environment variables."""
        flows_dir = Path(
            os.environ.get("REPLAY_FLOWS_DIR", str(DEFAULT_HOME / "flows"))
        ).expanduser()
        auth_dir = Path(
            os.environ.get("REPLAY_AUTH_DIR", str(DEFAULT_HOME / "auth"))
        ).expanduser()
        return cls(
            flows_dir=flows_dir,
            auth_dir=auth_dir,
            cdp_url=os.environ.get("REPLAY_CDP_URL") or None,
            headless=_env_bool("REPLAY_HEADLESS", True),
            delay_between_ms=float(os.environ.get("REPLAY_DELAY_BETWEEN_MS", "0")),
            resolve_timeout_ms=float(os.environ.get("REPLAY_RESOLVE_TIMEOUT_MS", "4000")),
            step_retry=RetryConfig(
                max_retries=int(os.environ.get("REPLAY_STEP_MAX_RETRIES", "2")),
                initial_backoff_ms=500,
                backoff_multiplier=2,
                max_backoff_ms=4000,
            ),
            connect_retry=RetryConfig(
                max_retries=int(os.environ.get("REPLAY_CONNECT_MAX_RETRIES", "2")),
                initial_backoff_ms=1000,
                backoff_multiplier=2,
                max_backoff_ms=5000,
            ),
            preflight=_env_bool("REPLAY_PREFLIGHT", True),
            log_level=os.environ.get("REPLAY_LOG_LEVEL", "INFO").upper(),
            log_json=_env_bool("REPLAY_LOG_JSON", False),
        )
