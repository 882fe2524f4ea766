"""Script version history, success tracking, and rollback."""

from __future__ import annotations

import json
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from replayengine.logger import get_logger
from replayengine.models import FlowVersion

log = get_logger(__name__)

SCRIPT_FILE = "script.py"
VERSIONS_FILE = "versions.json"
SUCCESS_WEIGHT = 0.7
RECENCY_WEIGHT = 0.3
RECENCY_WINDOW_DAYS = 30


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def score_version(version: FlowVersion, now: datetime | None = None) -> float:
    """``0.7 * success_rate + 0.3 * recency``.

    Recency falls linearly from 1 to 0 over 30 days and stays at 0 after.
    """
    now = now or _now()
    saved_at = version.saved_at
    if saved_at.tzinfo is None:
        saved_at = saved_at.replace(tzinfo=timezone.utc)
    age_days = (now - saved_at).total_seconds() / 86400
    recency = min(1.0, max(0.0, 1 - age_days / RECENCY_WINDOW_DAYS))
    return SUCCESS_WEIGHT * version.success_rate + RECENCY_WEIGHT * recency


class VersionTracker:
    """Tracks generated-script versions for one flow directory.

    ``versions.json`` holds a JSON array of FlowVersion entries and is
    rewritten whole on every update. The active script is ``script.py``;
    archived revisions live beside it as ``script.v<N>.py``.
    """

    def __init__(self, flow_dir: Path) -> None:
        self.flow_dir = Path(flow_dir)

    @property
    def versions_path(self) -> Path:
        return self.flow_dir / VERSIONS_FILE

    @property
    def script_path(self) -> Path:
        return self.flow_dir / SCRIPT_FILE

    def load_history(self) -> list[FlowVersion]:
        path = self.versions_path
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return [FlowVersion.model_validate(item) for item in data]
        except Exception as exc:
            log.warning("version_history_unreadable", path=str(path), error=str(exc))
            return []

    def _save_history(self, history: list[FlowVersion]) -> None:
        self.flow_dir.mkdir(parents=True, exist_ok=True)
        payload = [v.model_dump(mode="json") for v in history]
        self.versions_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def _snapshot(self, number: int) -> str:
        """Copy the active script to ``script.v<number>.py`` if there is one."""
        name = f"script.v{number}.py"
        if self.script_path.exists():
            shutil.copyfile(self.script_path, self.flow_dir / name)
        return name

    def archive_current_script(self, now: datetime | None = None) -> FlowVersion | None:
        """Archive the active script as the next version.

        Returns the appended FlowVersion, or None when there is no active
        script.
        """
        if not self.script_path.exists():
            return None

        history = self.load_history()
        number = max((v.version for v in history), default=0) + 1
        entry = FlowVersion(
            version=number,
            saved_at=now or _now(),
            script_file=self._snapshot(number),
        )
        history.append(entry)
        self._save_history(history)
        log.info("script_archived", flow_dir=str(self.flow_dir), version=number)
        return entry

    def record_run(
        self,
        success: bool,
        version: int | None = None,
        now: datetime | None = None,
    ) -> FlowVersion:
        """Fold one run outcome into a version's running success rate.

        Targets ``version`` when it is in the history, otherwise the latest
        entry. With no history, the current version is registered first.
        """
        history = self.load_history()
        if not history:
            number = version or 1
            history.append(
                FlowVersion(
                    version=number,
                    saved_at=now or _now(),
                    script_file=self._snapshot(number),
                )
            )

        target = next((v for v in history if v.version == version), None)
        if target is None:
            target = history[-1]

        runs = target.run_count
        target.success_rate = (target.success_rate * runs + (1 if success else 0)) / (runs + 1)
        target.run_count = runs + 1
        self._save_history(history)
        log.debug(
            "version_run_recorded",
            version=target.version,
            success=success,
            success_rate=round(target.success_rate, 4),
            run_count=target.run_count,
        )
        return target

    def score(self, version: FlowVersion, now: datetime | None = None) -> float:
        return score_version(version, now)

    def select_rollback_target(
        self,
        now: datetime | None = None,
        history: list[FlowVersion] | None = None,
    ) -> FlowVersion | None:
        """Highest scoring version; ties go to the higher version number."""
        if history is None:
            history = self.load_history()
        if not history:
            return None
        now = now or _now()
        return max(history, key=lambda v: (score_version(v, now), v.version))

    def rollback(self, now: datetime | None = None) -> FlowVersion | None:
        """Restore the best-scoring archived version as the active script.

        The active script is archived first so the rollback itself can be
        undone. Versions whose archive file is missing are not candidates.
        Returns the restored version, or None if nothing could be restored.
        """
        now = now or _now()
        candidates = [
            v for v in self.load_history() if (self.flow_dir / v.script_file).exists()
        ]
        target = self.select_rollback_target(now, candidates)
        if target is None:
            log.warning("rollback_no_candidate", flow_dir=str(self.flow_dir))
            return None

        log.info(
            "rollback_selected",
            flow_dir=str(self.flow_dir),
            version=target.version,
            score=round(score_version(target, now), 4),
        )
        self.archive_current_script(now)
        shutil.copyfile(self.flow_dir / target.script_file, self.script_path)
        return target

    def stats(self) -> dict[str, Any]:
        history = self.load_history()
        total_runs = sum(v.run_count for v in history)
        total_successes = sum(round(v.success_rate * v.run_count) for v in history)
        latest = history[-1] if history else None
        return {
            "versions": len(history),
            "total_runs": total_runs,
            "total_successes": total_successes,
            "success_rate": total_successes / total_runs if total_runs else None,
            "latest_version": latest.version if latest else None,
            "latest_success_rate": latest.success_rate if latest else None,
        }
