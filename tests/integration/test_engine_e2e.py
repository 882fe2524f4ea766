"""End-to-end integration tests using real Playwright against local HTML."""

import json
from pathlib import Path

import pytest

from replayengine import FlowEngine
from replayengine.config import EngineConfig
from replayengine.exceptions import BrowserError
from replayengine.models import RetryConfig, RunStatus


def _write_flow(flows_dir: Path, name: str, steps: list[dict], allowed=None) -> None:
    flow_dir = flows_dir / name
    flow_dir.mkdir(parents=True)
    flow = {
        "metadata": {
            "name": name,
            "url": "file://local",
            "allowedDomains": allowed or [],
            "stepsCount": len(steps),
        },
        "steps": [{"index": i, **step} for i, step in enumerate(steps)],
    }
    (flow_dir / "flow.json").write_text(json.dumps(flow))


@pytest.fixture
def flows_root(tmp_path: Path) -> Path:
    return tmp_path / "flows"


@pytest.fixture
async def engine(flows_root: Path, tmp_path: Path):
    config = EngineConfig(
        flows_dir=flows_root,
        auth_dir=tmp_path / "auth",
        step_retry=RetryConfig(max_retries=0),
        resolve_timeout_ms=500,
        action_timeout_ms=3000,
    )
    engine = FlowEngine(config)
    try:
        await engine.start()
    except BrowserError as exc:
        pytest.skip(f"Chromium unavailable: {exc}")
    yield engine
    await engine.stop()


async def test_form_flow(engine, flows_root: Path, simple_form_path: Path) -> None:
    _write_flow(
        flows_root,
        "search_form",
        [
            {"type": "navigate", "url": f"file://{simple_form_path}"},
            {"type": "type", "selectors": {"testId": '[data-testid="query"]', "css": "#query"}, "value": "{{query}}"},
            {"type": "select", "selectors": {"css": "#country"}, "value": "de"},
            {"type": "check", "selectors": {"css": "#terms"}},
            {"type": "click", "selectors": {"aria": "Search", "css": "button.search"}},
            {"type": "wait", "selectors": {"text": "Results for boots"}},
        ],
    )

    result = await engine.run("search_form", {"query": "boots"})

    assert result.status == RunStatus.COMPLETED, result.message
    assert result.steps_completed == 6
    assert Path(result.trace_path).exists()

    [run_log] = engine.run_logs("search_form")
    strategies = [entry.selector_used for entry in run_log.steps]
    assert strategies[1] == "test_id"
    assert strategies[4] == "aria"
    assert engine.version_history("search_form")[0].success_rate == 1.0


async def test_selector_fallback(engine, flows_root: Path, simple_form_path: Path) -> None:
    _write_flow(
        flows_root,
        "fallback",
        [
            {"type": "navigate", "url": f"file://{simple_form_path}"},
            {"type": "type", "selectors": {"testId": '[data-testid="gone"]', "css": "#query"}, "value": "x"},
        ],
    )

    result = await engine.run("fallback")

    assert result.success, result.message
    [run_log] = engine.run_logs("fallback")
    assert run_log.steps[1].selector_used == "css"
    assert run_log.steps[1].selectors_tried == ["test_id(not visible)", "css"]


async def test_iframe_scope(engine, flows_root: Path, simple_form_path: Path) -> None:
    _write_flow(
        flows_root,
        "widget",
        [
            {"type": "navigate", "url": f"file://{simple_form_path}"},
            {"type": "frame-switch", "frameSelector": "iframe#widget"},
            {"type": "click", "selectors": {"css": "#inner"}},
            {"type": "wait", "selectors": {"text": "Clicked"}},
            {"type": "frame-switch", "value": "main"},
            {"type": "check", "selectors": {"css": "#terms"}},
        ],
    )

    result = await engine.run("widget")

    assert result.success, result.message
    assert result.steps_completed == 6


async def test_missing_element_fails_with_screenshot(
    engine, flows_root: Path, simple_form_path: Path
) -> None:
    _write_flow(
        flows_root,
        "broken",
        [
            {"type": "navigate", "url": f"file://{simple_form_path}"},
            {"type": "click", "selectors": {"css": "#does-not-exist"}},
        ],
    )

    result = await engine.run("broken")

    assert result.status == RunStatus.FAILED
    assert result.steps_completed == 1
    assert result.error.step == 1
    assert result.error.screenshot
    assert Path(result.error.screenshot).exists()


async def test_allowlist_blocks_before_loading(engine, flows_root: Path, simple_form_path: Path) -> None:
    _write_flow(
        flows_root,
        "locked",
        [{"type": "navigate", "url": f"file://{simple_form_path}"}],
        allowed=["*.example.com"],
    )

    result = await engine.run("locked")

    assert result.status == RunStatus.ABORTED
    assert result.steps_completed == 0
    assert "[SECURITY]" in result.message
