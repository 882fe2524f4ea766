"""Dashboard: FastAPI monitoring API for replayengine flows."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException

from replayengine.exceptions import FlowNotFoundError, FlowValidationError
from replayengine.flow import FlowLoader
from replayengine.logger import get_logger
from replayengine.telemetry import load_run_log, load_run_logs
from replayengine.versioning import VersionTracker, score_version

log = get_logger(__name__)

app = FastAPI(title="replayengine dashboard", version="0.1.0")

# Configuration: set via environment or startup
FLOWS_DIR = Path(
    os.environ.get("REPLAY_FLOWS_DIR", "~/.replayengine/flows")
).expanduser()
RECENT_RUNS = 20


def _loader() -> FlowLoader:
    return FlowLoader(FLOWS_DIR)


def _flow_dir(name: str) -> Path:
    loader = _loader()
    try:
        loader.load(name)
    except FlowNotFoundError as exc:
        raise HTTPException(404, "Flow not found") from exc
    except FlowValidationError as exc:
        raise HTTPException(422, str(exc)) from exc
    return loader.flow_dir(name)


def _flow_health(flow_dir: Path) -> dict[str, Any]:
    """Success rate over recent runs plus a traffic-light color."""
    runs = load_run_logs(flow_dir / "run-logs", RECENT_RUNS)
    total = len(runs)
    successes = sum(1 for r in runs if r.success)
    rate = (successes / total * 100) if total > 0 else 0

    if rate >= 90:
        color = "green"
    elif rate >= 70:
        color = "yellow"
    else:
        color = "red"

    return {
        "success_rate": round(rate, 1),
        "total_runs": total,
        "color": color,
        "last_run": runs[0].model_dump(mode="json", include={"run_id", "started_at", "success"})
        if runs
        else None,
    }


# --- API Routes ---


@app.get("/api/health")
async def api_health() -> dict[str, Any]:
    """Machine-readable health for all flows."""
    loader = _loader()
    health = {}
    for dir_name, _ in loader.list_flow_entries():
        health[dir_name] = _flow_health(loader.flow_dir(dir_name))
    return {"status": "ok", "flows": health}


@app.get("/api/flows")
async def list_flows() -> list[dict[str, Any]]:
    """Flow summaries; ``id`` is the name the per-flow routes accept."""
    loader = _loader()
    return [
        {"id": dir_name, **meta.model_dump(mode="json"), **_flow_health(loader.flow_dir(dir_name))}
        for dir_name, meta in loader.list_flow_entries()
    ]


@app.get("/api/flows/{name}")
async def flow_detail(name: str) -> dict[str, Any]:
    flow_dir = _flow_dir(name)
    flow = _loader().load(name)
    return {
        "flow": flow.model_dump(mode="json", by_alias=True, exclude_none=True),
        "health": _flow_health(flow_dir),
        "stats": VersionTracker(flow_dir).stats(),
    }


@app.get("/api/flows/{name}/runs")
async def flow_runs(name: str, limit: int = RECENT_RUNS) -> list[dict[str, Any]]:
    flow_dir = _flow_dir(name)
    return [r.model_dump(mode="json") for r in load_run_logs(flow_dir / "run-logs", limit)]


@app.get("/api/flows/{name}/runs/{run_id}")
async def run_detail(name: str, run_id: str) -> dict[str, Any]:
    run = load_run_log(_flow_dir(name) / "run-logs", run_id)
    if run is None:
        raise HTTPException(404, "Run not found")
    return run.model_dump(mode="json")


@app.get("/api/flows/{name}/versions")
async def flow_versions(name: str) -> dict[str, Any]:
    """Version history with the score each version would get in a rollback."""
    tracker = VersionTracker(_flow_dir(name))
    now = datetime.now(tz=timezone.utc)
    history = tracker.load_history()
    target = tracker.select_rollback_target(now, history)
    return {
        "versions": [
            {**v.model_dump(mode="json"), "score": round(score_version(v, now), 4)}
            for v in history
        ],
        "rollback_target": target.version if target else None,
    }


@app.post("/api/flows/{name}/rollback")
async def rollback_flow(name: str) -> dict[str, Any]:
    """Restore the best-scoring script version."""
    restored = VersionTracker(_flow_dir(name)).rollback()
    if restored is None:
        raise HTTPException(409, "No version available to roll back to")
    log.info("dashboard_rollback", flow=name, version=restored.version)
    return {"status": "rolled_back", "flow": name, "version": restored.version}


def main() -> None:
    """Run the dashboard server."""
    uvicorn.run(app, host="0.0.0.0", port=8080)


if __name__ == "__main__":
    main()
