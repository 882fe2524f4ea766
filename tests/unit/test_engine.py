"""Tests for FlowEngine orchestration with a mocked browser."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from replayengine import preflight
from replayengine.config import EngineConfig
from replayengine.engine import FlowEngine
from replayengine.exceptions import (
    ConnectionFailure,
    FlowNotFoundError,
    InvalidTotpSecret,
    RecoveryFailed,
)
from replayengine.models import RetryConfig, RunResult, RunStatus

FLOW = "login_and_search"


def _mock_locator() -> MagicMock:
    loc = MagicMock()
    loc.first = loc
    for method in ("wait_for", "click", "fill"):
        setattr(loc, method, AsyncMock())
    return loc


def _mock_page(loc) -> MagicMock:
    page = MagicMock()
    page.url = "https://app.example.com/search"
    page.goto = AsyncMock()
    page.keyboard.press = AsyncMock()
    page.screenshot = AsyncMock()
    page.text_content = AsyncMock(return_value="")
    for method in ("locator", "get_by_test_id", "get_by_label", "get_by_text"):
        setattr(page, method, MagicMock(return_value=loc))
    return page


def _mock_browser(page) -> MagicMock:
    ctx = MagicMock()
    ctx.cookies = AsyncMock(return_value=[{"name": "sid", "value": "fresh"}])

    browser = MagicMock()
    browser.is_started = False

    async def start(headless=True):
        browser.is_started = True

    browser.start = AsyncMock(side_effect=start)
    browser.stop = AsyncMock()
    browser.open_run_context = AsyncMock(return_value=(ctx, page))
    browser.close_run_context = AsyncMock(
        side_effect=lambda ctx, path: str(path) if path else None
    )
    return browser


@pytest.fixture
def loc():
    return _mock_locator()


@pytest.fixture
def page(loc):
    return _mock_page(loc)


@pytest.fixture
def browser(page):
    return _mock_browser(page)


@pytest.fixture
def engine(flows_dir, tmp_path, browser):
    config = EngineConfig(
        flows_dir=flows_dir,
        auth_dir=tmp_path / "auth",
        step_retry=RetryConfig(max_retries=0),
        preflight=False,
    )
    return FlowEngine(config, browser=browser, sleep=AsyncMock())


def _write_flow(flows_dir, data, name):
    data = json.loads(json.dumps(data))
    data["metadata"]["name"] = name
    (flows_dir / name).mkdir()
    (flows_dir / name / "flow.json").write_text(json.dumps(data))
    return data


class TestRun:
    async def test_missing_flow(self, engine, browser) -> None:
        result = await engine.run("nope")
        assert result.status == RunStatus.FAILED
        assert "Flow not found" in result.message
        browser.start.assert_not_awaited()

    async def test_full_run(self, engine, browser, loc, flows_dir, tmp_path) -> None:
        result = await engine.run(FLOW, {"query": "boots", "password": "pw"})

        assert result.success
        assert result.steps_completed == 4
        assert result.steps_total == 4
        assert result.message == f"Flow '{FLOW}' completed (4/4 steps)"
        assert result.error is None
        assert result.trace_path.endswith(f"{result.run_id}.zip")
        assert any("final" in s for s in result.screenshots)
        loc.fill.assert_awaited_once_with("boots", timeout=15000)
        browser.close_run_context.assert_awaited_once()

        flow_dir = flows_dir / FLOW
        run_log = json.loads((flow_dir / "run-logs" / f"run-{result.run_id}.json").read_text())
        assert run_log["success"] is True
        assert run_log["params"]["password"] == "***"
        versions = json.loads((flow_dir / "versions.json").read_text())
        assert versions[0]["run_count"] == 1
        assert versions[0]["success_rate"] == 1.0
        cookies = json.loads((tmp_path / "auth" / FLOW / "cookies.json").read_text())
        assert cookies["cookies"] == [{"name": "sid", "value": "fresh"}]

    async def test_browser_started_once(self, engine, browser) -> None:
        await engine.run(FLOW, {"query": "a"})
        await engine.run(FLOW, {"query": "b"})
        browser.start.assert_awaited_once()

    async def test_step_failure(self, engine, loc, flows_dir) -> None:
        loc.click = AsyncMock(side_effect=TimeoutError("Timeout 15000ms exceeded"))

        result = await engine.run(FLOW, {"query": "boots"})

        assert result.status == RunStatus.FAILED
        assert result.steps_completed == 2
        assert result.error.step == 2
        assert "Timeout" in result.message
        versions = json.loads((flows_dir / FLOW / "versions.json").read_text())
        assert versions[0]["success_rate"] == 0.0

    async def test_blocked_navigation(self, engine, page, flows_dir, sample_flow_data) -> None:
        sample_flow_data["steps"][0]["url"] = "https://evil.com/"
        _write_flow(flows_dir, sample_flow_data, "evil")

        result = await engine.run("evil", {"query": "boots"})

        assert result.status == RunStatus.ABORTED
        assert result.steps_completed == 0
        assert "https://evil.com/" in result.message
        page.goto.assert_not_awaited()

    async def test_browser_unreachable(self, engine, browser) -> None:
        browser.start = AsyncMock(side_effect=ConnectionFailure("http://localhost:9222", 3))

        result = await engine.run(FLOW, {"query": "boots"})

        assert result.status == RunStatus.FAILED
        assert "Could not connect" in result.message
        browser.open_run_context.assert_not_awaited()

    async def test_browser_unreachable_is_recorded(self, engine, browser, flows_dir) -> None:
        browser.start = AsyncMock(side_effect=ConnectionFailure("http://localhost:9222", 3))

        result = await engine.run(FLOW, {"query": "boots"})

        assert result.run_id is not None
        assert result.steps_total == 4
        flow_dir = flows_dir / FLOW
        run_log = json.loads((flow_dir / "run-logs" / f"run-{result.run_id}.json").read_text())
        assert run_log["success"] is False
        assert run_log["steps"] == []
        versions = json.loads((flow_dir / "versions.json").read_text())
        assert versions[0]["run_count"] == 1
        assert versions[0]["success_rate"] == 0.0

    async def test_run_context_failure_is_recorded(self, engine, browser, flows_dir) -> None:
        browser.open_run_context = AsyncMock(side_effect=RuntimeError("Target closed"))

        result = await engine.run(FLOW, {"query": "boots"})

        assert result.status == RunStatus.FAILED
        assert result.message == "Target closed"
        assert engine.run_logs(FLOW)[0].run_id == result.run_id
        assert engine.version_history(FLOW)[0].success_rate == 0.0

    async def test_cookie_store_error_becomes_failed_result(
        self, flows_dir, tmp_path, browser
    ) -> None:
        cookie_store = MagicMock()
        cookie_store.load_cookies = MagicMock(side_effect=PermissionError("cookies.json"))
        config = EngineConfig(
            flows_dir=flows_dir, auth_dir=tmp_path / "auth", preflight=False
        )
        engine = FlowEngine(config, browser=browser, cookie_store=cookie_store)

        result = await engine.run(FLOW, {"query": "boots"})

        assert result.status == RunStatus.FAILED
        assert "cookies.json" in result.message
        browser.open_run_context.assert_not_awaited()
        assert len(engine.run_logs(FLOW)) == 1

    async def test_cookie_path_is_a_directory(self, engine, browser, tmp_path) -> None:
        (tmp_path / "auth" / FLOW / "cookies.json").mkdir(parents=True)

        result = await engine.run(FLOW, {"query": "boots"})

        assert isinstance(result, RunResult)
        assert result.success
        browser.open_run_context.assert_awaited_once_with(None, trace=True)

    async def test_cancel_between_steps(self, engine, page) -> None:
        page.goto = AsyncMock(side_effect=lambda *a, **k: engine.cancel())

        result = await engine.run(FLOW, {"query": "boots"})

        assert result.status == RunStatus.ABORTED
        assert result.message == "cancelled"
        assert result.steps_completed == 1

        page.goto = AsyncMock()
        assert (await engine.run(FLOW, {"query": "boots"})).success

    async def test_context_manager(self, engine, browser) -> None:
        async with engine:
            pass
        browser.start.assert_awaited_once()
        browser.stop.assert_awaited_once()


class TestDryRun:
    async def test_validates_without_browser(self, engine, browser) -> None:
        result = await engine.run(FLOW, {"query": "boots"}, dry_run=True)
        assert result.status == RunStatus.COMPLETED
        assert result.message == "Dry run: 4 step(s) validated"
        browser.start.assert_not_awaited()

    async def test_reports_blocked_navigation(self, engine, flows_dir, sample_flow_data) -> None:
        sample_flow_data["steps"][0]["url"] = "https://{{host}}/"
        _write_flow(flows_dir, sample_flow_data, "param_nav")

        result = await engine.run("param_nav", {"host": "evil.com"}, dry_run=True)

        assert result.status == RunStatus.ABORTED
        assert result.error.step == 0


class TestBatch:
    async def test_results_keep_input_order(self, engine, loc) -> None:
        async def fill(value, timeout=None):
            if value == "bad":
                raise TimeoutError("Timeout")

        loc.fill = AsyncMock(side_effect=fill)

        results = await engine.run_batch(
            FLOW, [{"query": "a"}, {"query": "bad"}, {"query": "c"}], parallelism=2
        )

        assert [r.success for r in results] == [True, False, True]
        assert len({r.run_id for r in results}) == 3

    async def test_parallelism_bounds_open_contexts(self, engine, browser, page) -> None:
        active = 0
        peak = 0

        async def open_ctx(cookies=None, trace=True):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0)
            return MagicMock(cookies=AsyncMock(return_value=[])), page

        async def close_ctx(ctx, path):
            nonlocal active
            active -= 1

        browser.open_run_context = AsyncMock(side_effect=open_ctx)
        browser.close_run_context = AsyncMock(side_effect=close_ctx)

        results = await engine.run_batch(FLOW, [{"query": str(n)} for n in range(5)], parallelism=2)

        assert all(r.success for r in results)
        assert browser.open_run_context.await_count == 5
        assert peak <= 2


class TestHistory:
    def _seed_versions(self, flow_dir) -> None:
        (flow_dir / "script.py").write_text("# v3\n")
        (flow_dir / "script.v1.py").write_text("# v1\n")
        (flow_dir / "script.v2.py").write_text("# v2\n")
        history = [
            {"version": 1, "saved_at": "2020-01-01T00:00:00+00:00",
             "script_file": "script.v1.py", "success_rate": 0.95, "run_count": 20},
            {"version": 2, "saved_at": "2020-02-01T00:00:00+00:00",
             "script_file": "script.v2.py", "success_rate": 0.1, "run_count": 10},
        ]
        (flow_dir / "versions.json").write_text(json.dumps(history))

    def test_rollback(self, engine, flows_dir) -> None:
        flow_dir = flows_dir / FLOW
        self._seed_versions(flow_dir)

        restored = engine.rollback(FLOW)

        assert restored.version == 1
        assert (flow_dir / "script.py").read_text() == "# v1\n"
        assert [v.version for v in engine.version_history(FLOW)] == [1, 2, 3]

    async def test_stats_include_run_logs(self, engine) -> None:
        await engine.run(FLOW, {"query": "boots"})
        stats = engine.stats(FLOW)
        assert stats["total_runs"] == 1
        assert stats["logged_runs"] == 1
        assert stats["logged_failures"] == 0
        assert stats["last_run_at"] is not None

    def test_list_and_get(self, engine) -> None:
        assert [m.name for m in engine.list_flows()] == [FLOW]
        assert engine.get_flow(FLOW).metadata.version == 1


def _preflight_engine(flows_dir, tmp_path, browser, **kwargs) -> FlowEngine:
    config = EngineConfig(
        flows_dir=flows_dir,
        auth_dir=tmp_path / "auth",
        step_retry=RetryConfig(max_retries=0),
    )
    return FlowEngine(config, browser=browser, sleep=AsyncMock(), **kwargs)


class TestPreflight:
    async def test_warnings_do_not_block_the_run(
        self, flows_dir, tmp_path, browser, monkeypatch
    ) -> None:
        reachable = AsyncMock(return_value=False)
        monkeypatch.setattr(preflight, "url_reachable", reachable)
        engine = _preflight_engine(flows_dir, tmp_path, browser)

        result = await engine.run(FLOW, {"query": "boots"})

        assert result.success
        assert reachable.await_args.args[0] == "https://app.example.com/"

    async def test_reports_stale_auth(self, flows_dir, tmp_path, browser, monkeypatch) -> None:
        monkeypatch.setattr(preflight, "url_reachable", AsyncMock(return_value=True))
        engine = _preflight_engine(flows_dir, tmp_path, browser)
        flow = engine.get_flow(FLOW)

        checks = await engine.preflight(flow, flows_dir / FLOW, {"query": "boots"})

        assert checks.portal_reachable
        assert not checks.auth_fresh
        assert any("auth refresh" in w for w in checks.warnings)

    async def test_dry_run_rejects_params_that_fail_schema(
        self, flows_dir, tmp_path, browser, monkeypatch
    ) -> None:
        reachable = AsyncMock(return_value=True)
        monkeypatch.setattr(preflight, "url_reachable", reachable)
        schema = {"query": {"type": "string", "required": True}, "count": {"type": "number"}}
        (flows_dir / FLOW / "params.schema.json").write_text(json.dumps(schema))
        engine = _preflight_engine(flows_dir, tmp_path, browser)

        bad = await engine.run(FLOW, {"count": "many"}, dry_run=True)
        good = await engine.run(FLOW, {"query": "boots", "count": "3"}, dry_run=True)

        assert bad.status == RunStatus.FAILED
        assert bad.message.startswith("Parameter validation failed")
        assert "query" in bad.message
        assert "count" in bad.message
        assert good.status == RunStatus.COMPLETED
        reachable.assert_not_awaited()
        browser.start.assert_not_awaited()


class TestStoredAuth:
    def _stored(self, tmp_path) -> dict:
        return json.loads((tmp_path / "auth" / FLOW / "credentials.json").read_text())

    def test_set_credentials_keeps_totp_secret(self, engine, tmp_path) -> None:
        engine.set_totp_secret(FLOW, "jbsw y3dp ehpk 3pxp")
        engine.set_credentials(FLOW, "ada", "s3cret")

        assert self._stored(tmp_path) == {
            "username": "ada",
            "password": "s3cret",
            "totp_secret": "JBSWY3DPEHPK3PXP",
        }

    def test_set_totp_keeps_credentials(self, engine, tmp_path) -> None:
        engine.set_credentials(FLOW, "ada", "s3cret")
        engine.set_totp_secret(FLOW, "JBSWY3DPEHPK3PXP")
        assert self._stored(tmp_path)["username"] == "ada"

    def test_invalid_totp_secret_not_stored(self, engine, tmp_path) -> None:
        with pytest.raises(InvalidTotpSecret):
            engine.set_totp_secret(FLOW, "not base32!")
        assert not (tmp_path / "auth" / FLOW).exists()

    def test_clear_auth(self, engine, tmp_path) -> None:
        engine.set_credentials(FLOW, "ada", "s3cret")
        assert engine.clear_auth(FLOW) is True
        assert not (tmp_path / "auth" / FLOW).exists()
        assert engine.clear_auth(FLOW) is False

    async def test_refresh_uses_login_url(self, flows_dir, tmp_path, browser) -> None:
        login_flow = MagicMock()
        login_flow.run_auth_flow = AsyncMock()
        engine = _preflight_engine(flows_dir, tmp_path, browser, login_flow=login_flow)

        await engine.refresh_auth(FLOW)

        browser.start.assert_awaited_once()
        login_flow.run_auth_flow.assert_awaited_once_with(FLOW, "https://app.example.com/login")

    async def test_refresh_failure(self, flows_dir, tmp_path, browser) -> None:
        login_flow = MagicMock()
        login_flow.run_auth_flow = AsyncMock(side_effect=RuntimeError("bad password"))
        engine = _preflight_engine(flows_dir, tmp_path, browser, login_flow=login_flow)

        with pytest.raises(RecoveryFailed, match="bad password"):
            await engine.refresh_auth(FLOW)

    async def test_refresh_unknown_flow(self, engine, browser) -> None:
        with pytest.raises(FlowNotFoundError):
            await engine.refresh_auth("nope")
        browser.start.assert_not_awaited()
