"""replayengine command line: run, list, show, history, rollback, stats, auth."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import signal
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

from replayengine.config import EngineConfig
from replayengine.engine import FlowEngine
from replayengine.exceptions import ReplayEngineError
from replayengine.logger import configure_logging, get_logger
from replayengine.models import RunResult

log = get_logger(__name__)

DEFAULT_CDP_URL = "http://localhost:9222"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="replayengine",
        description="Replay recorded browser flows",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  replayengine run checkout --params '{"sku": "A-100"}'
  replayengine run checkout --batch skus.jsonl --parallel 4
  replayengine run checkout --lightweight --json
  replayengine history checkout
  replayengine rollback checkout
  replayengine auth set-totp checkout --secret JBSWY3DPEHPK3PXP
        """,
    )
    parser.add_argument("--flows-dir", help="Directory holding one folder per flow")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    sub = parser.add_subparsers(dest="command", required=True)

    p_run = sub.add_parser("run", help="Execute a recorded flow")
    p_run.add_argument("name")
    p_run.add_argument("-p", "--params", default="{}", help="JSON parameters object")
    p_run.add_argument("--batch", help="JSON-lines file with one params object per line")
    p_run.add_argument("--parallel", type=int, default=1, help="Concurrent runs in batch mode")
    p_run.add_argument("--dry-run", action="store_true", help="Validate without a browser")
    _add_browser_options(p_run)
    p_run.add_argument("--delay-between", type=float, help="Delay in ms between steps")
    p_run.add_argument("--json", action="store_true", help="Print results as JSON")

    sub.add_parser("list", help="List recorded flows")

    p_show = sub.add_parser("show", help="Show a flow's steps")
    p_show.add_argument("name")

    p_hist = sub.add_parser("history", help="Show version history for a flow")
    p_hist.add_argument("name")

    p_rb = sub.add_parser("rollback", help="Restore the best-scoring script version")
    p_rb.add_argument("name")

    p_stats = sub.add_parser("stats", help="Show run statistics for a flow")
    p_stats.add_argument("name")

    p_auth = sub.add_parser("auth", help="Manage stored logins for a flow")
    auth_sub = p_auth.add_subparsers(dest="auth_command", required=True)

    p_creds = auth_sub.add_parser("set-creds", help="Store login credentials")
    p_creds.add_argument("name")
    p_creds.add_argument("-u", "--username", required=True)
    p_creds.add_argument("-p", "--password", help="Prompted for when omitted")

    p_totp = auth_sub.add_parser("set-totp", help="Store a TOTP secret for MFA")
    p_totp.add_argument("name")
    p_totp.add_argument("-s", "--secret", required=True, help="Base32 TOTP secret")

    p_clear = auth_sub.add_parser("clear", help="Delete stored cookies and credentials")
    p_clear.add_argument("name")

    p_refresh = auth_sub.add_parser("refresh", help="Log in again and store fresh cookies")
    p_refresh.add_argument("name")
    _add_browser_options(p_refresh)

    return parser


def _add_browser_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--lightweight",
        action="store_true",
        help=f"Attach to a running browser over CDP ({DEFAULT_CDP_URL})",
    )
    parser.add_argument("--cdp-url", help="CDP endpoint to attach to")
    parser.add_argument("--headed", action="store_true", help="Show the browser window")


def load_batch(path: str | Path) -> list[dict[str, Any]]:
    """Params objects from a JSON-lines file, skipping blank lines."""
    param_sets = []
    for line in Path(path).read_text(encoding="utf-8").splitlines():
        if line.strip():
            param_sets.append(json.loads(line))
    return param_sets


def _config_for(args: argparse.Namespace) -> EngineConfig:
    config = EngineConfig.from_env()
    overrides: dict[str, Any] = {}
    if args.flows_dir:
        overrides["flows_dir"] = Path(args.flows_dir).expanduser()
    if args.log_level:
        overrides["log_level"] = args.log_level.upper()
    if getattr(args, "cdp_url", None):
        overrides["cdp_url"] = args.cdp_url
    elif getattr(args, "lightweight", False):
        overrides["cdp_url"] = config.cdp_url or DEFAULT_CDP_URL
    if getattr(args, "headed", False):
        overrides["headless"] = False
    if args.command == "run":
        if args.delay_between is not None:
            overrides["delay_between_ms"] = args.delay_between
        if args.json:
            overrides["log_json"] = True
    return replace(config, **overrides)


def make_engine(config: EngineConfig) -> FlowEngine:
    return FlowEngine(config)


def _print_result(result: RunResult) -> None:
    icon = "✓" if result.success else "✗"
    print(f"{icon} {result.flow} [{result.status.value}] {result.duration_ms:.0f}ms")
    print(f"  Steps: {result.steps_completed}/{result.steps_total}")
    print(f"  {result.message}")
    if result.error:
        print(f"  Failed at step {result.error.step} ({result.error.kind})")
        if result.error.url:
            print(f"  URL: {result.error.url}")
        if result.error.screenshot:
            print(f"  Screenshot: {result.error.screenshot}")
    if result.trace_path:
        print(f"  Trace: {result.trace_path}")


async def _run(args: argparse.Namespace, engine: FlowEngine) -> int:
    try:
        params = json.loads(args.params)
    except json.JSONDecodeError as exc:
        print(f"Invalid --params JSON: {exc}", file=sys.stderr)
        return 1
    if not isinstance(params, dict):
        print("--params must be a JSON object", file=sys.stderr)
        return 1

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, engine.cancel)
    except (NotImplementedError, RuntimeError):
        log.debug("sigint_handler_unavailable")

    try:
        if args.batch:
            param_sets = load_batch(args.batch)
            if args.dry_run:
                results = [await engine.run(args.name, p, dry_run=True) for p in param_sets]
            else:
                results = await engine.run_batch(args.name, param_sets, args.parallel)
        else:
            results = [await engine.run(args.name, params, dry_run=args.dry_run)]
    finally:
        await engine.stop()

    if args.json:
        payload = [r.model_dump(mode="json") for r in results]
        print(json.dumps(payload if args.batch else payload[0], indent=2))
    else:
        for result in results:
            _print_result(result)
    return 0 if all(r.success for r in results) else 1


def _list(engine: FlowEngine) -> int:
    flows = engine.list_flows()
    if not flows:
        print(f"No flows found in {engine.config.flows_dir}")
        return 0
    for meta in flows:
        recorded = meta.recorded_at.date().isoformat() if meta.recorded_at else "-"
        print(f"{meta.name:<30} v{meta.version:<4} {meta.steps_count:>4} steps  {recorded}  {meta.url}")
    return 0


def _show(engine: FlowEngine, name: str) -> int:
    flow = engine.get_flow(name)
    meta = flow.metadata
    print(f"{meta.name} (v{meta.version})")
    print(f"  URL: {meta.url}")
    print(f"  Allowed domains: {', '.join(meta.allowed_domains) or 'any'}")
    for step in flow.steps:
        target = step.url or step.value or ", ".join(v for _, v in step.selectors.strategies()[:1])
        print(f"  {step.index:>3}. {step.kind.value:<12} {target or ''}")
    return 0


def _history(engine: FlowEngine, name: str) -> int:
    history = engine.version_history(name)
    if not history:
        print(f'No version history for flow "{name}".')
        return 0
    for version in reversed(history):
        print(
            f"  v{version.version:<4} {version.saved_at.isoformat()}  "
            f"{version.success_rate * 100:5.1f}% of {version.run_count} run(s)  {version.script_file}"
        )
    return 0


def _rollback(engine: FlowEngine, name: str) -> int:
    restored = engine.rollback(name)
    if restored is None:
        print(f'Nothing to roll back to for flow "{name}".')
        return 1
    print(f"Rolled back {name} to v{restored.version} ({restored.script_file})")
    return 0


def _stats(engine: FlowEngine, name: str) -> int:
    stats = engine.stats(name)
    rate = stats["success_rate"]
    print(f"Stats for {name}")
    print(f"  Versions:     {stats['versions']}")
    print(f"  Runs:         {stats['total_runs']}")
    print(f"  Success rate: {'-' if rate is None else f'{rate * 100:.1f}%'}")
    print(f"  Last run:     {stats['last_run_at'] or '-'}")
    return 0


async def _refresh_auth(engine: FlowEngine, name: str) -> None:
    try:
        await engine.refresh_auth(name)
    finally:
        await engine.stop()


def _auth(args: argparse.Namespace, engine: FlowEngine) -> int:
    name = args.name
    if args.auth_command == "set-creds":
        password = args.password or getpass.getpass("Password: ")
        engine.set_credentials(name, args.username, password)
        print(f'Credentials saved for flow "{name}".')
    elif args.auth_command == "set-totp":
        engine.set_totp_secret(name, args.secret)
        print(f'TOTP secret saved for flow "{name}".')
    elif args.auth_command == "clear":
        if engine.clear_auth(name):
            print(f'Auth cleared for flow "{name}".')
        else:
            print(f'No stored auth for flow "{name}".')
    elif args.auth_command == "refresh":
        asyncio.run(_refresh_auth(engine, name))
        print(f'Auth refreshed for flow "{name}".')
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = _config_for(args)
    configure_logging(config.log_level, json=config.log_json)
    engine = make_engine(config)

    try:
        if args.command == "run":
            return asyncio.run(_run(args, engine))
        if args.command == "list":
            return _list(engine)
        if args.command == "show":
            return _show(engine, args.name)
        if args.command == "history":
            return _history(engine, args.name)
        if args.command == "rollback":
            return _rollback(engine, args.name)
        if args.command == "stats":
            return _stats(engine, args.name)
        if args.command == "auth":
            return _auth(args, engine)
    except ReplayEngineError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    return 1


if __name__ == "__main__":
    sys.exit(main())
