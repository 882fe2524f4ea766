"""Per-run structured logs."""

from __future__ import annotations

import json
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from replayengine.logger import get_logger
from replayengine.models import RunLog, StepLogEntry

log = get_logger(__name__)

SENSITIVE_KEYS = (
    "password",
    "secret",
    "token",
    "apikey",
    "api_key",
    "credential",
    "ssn",
    "cvv",
)
MASK = "***"


def mask_sensitive_params(params: dict[str, Any]) -> dict[str, Any]:
    """Copy of ``params`` with sensitive-looking values replaced by ``***``."""
    masked: dict[str, Any] = {}
    for key, value in params.items():
        lowered = key.lower()
        if any(marker in lowered for marker in SENSITIVE_KEYS):
            masked[key] = MASK
        else:
            masked[key] = value
    return masked


class RunLogger:
    """Collects step entries for one run and writes ``run-<run_id>.json``."""

    def __init__(
        self,
        flow_name: str,
        params: dict[str, Any] | None = None,
        run_id: str | None = None,
    ) -> None:
        self.run_id = run_id or uuid.uuid4().hex
        self._started = time.monotonic()
        self._step_started: dict[int, float] = {}
        self.run_log = RunLog(
            run_id=self.run_id,
            flow=flow_name,
            started_at=datetime.now(tz=timezone.utc),
            params=mask_sensitive_params(params or {}),
        )

    @property
    def entries(self) -> list[StepLogEntry]:
        return self.run_log.steps

    def begin_step(self, step_index: int) -> None:
        self._step_started[step_index] = time.monotonic()

    def log_step(
        self,
        step_index: int,
        kind: str,
        status: str,
        *,
        selector_used: str | None = None,
        selectors_tried: list[str] | None = None,
        retries: int = 0,
        retry_reason: str | None = None,
        screenshot: str | None = None,
        error: str | None = None,
    ) -> StepLogEntry:
        """Append an entry; duration is measured from ``begin_step``."""
        started = self._step_started.pop(step_index, None)
        duration_ms = (time.monotonic() - started) * 1000 if started is not None else 0.0
        entry = StepLogEntry(
            step_index=step_index,
            kind=kind,
            status=status,
            duration_ms=round(duration_ms, 1),
            selector_used=selector_used,
            selectors_tried=selectors_tried or [],
            retries=retries,
            retry_reason=retry_reason,
            screenshot=screenshot,
            error=error,
        )
        self.run_log.steps.append(entry)
        return entry

    def finish(self, success: bool) -> RunLog:
        self.run_log.success = success
        self.run_log.completed_at = datetime.now(tz=timezone.utc)
        self.run_log.duration_ms = round((time.monotonic() - self._started) * 1000, 1)
        return self.run_log

    def save(self, logs_dir: Path) -> Path:
        """Write the run log and return its path."""
        logs_dir = Path(logs_dir)
        logs_dir.mkdir(parents=True, exist_ok=True)
        path = logs_dir / f"run-{self.run_id}.json"
        path.write_text(self.run_log.model_dump_json(indent=2), encoding="utf-8")
        log.debug("run_log_saved", run_id=self.run_id, path=str(path))
        return path


def load_run_logs(logs_dir: Path, limit: int | None = None) -> list[RunLog]:
    """Run logs in ``logs_dir``, newest first. Unreadable files are skipped."""
    logs_dir = Path(logs_dir)
    if not logs_dir.is_dir():
        return []

    logs: list[RunLog] = []
    for path in logs_dir.glob("run-*.json"):
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            logs.append(RunLog.model_validate(data))
        except Exception as exc:
            log.warning("run_log_unreadable", path=str(path), error=str(exc))

    logs.sort(key=lambda r: r.started_at, reverse=True)
    if limit is not None:
        logs = logs[:limit]
    return logs


def load_run_log(logs_dir: Path, run_id: str) -> RunLog | None:
    if not run_id.isalnum():
        return None
    path = Path(logs_dir) / f"run-{run_id}.json"
    if not path.exists():
        return None
    return RunLog.model_validate(json.loads(path.read_text(encoding="utf-8")))
