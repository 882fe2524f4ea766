"""Pre-run checks: portal reachability, session freshness, params and memory.

Preflight never blocks a run. Every failed check becomes a warning on the
result and in the log.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from pathlib import Path
from typing import Annotated, Any, Optional
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, Field, StringConstraints, ValidationError, create_model

from replayengine.logger import get_logger

log = get_logger(__name__)

PARAMS_SCHEMA_FILE = "params.schema.json"
REACHABILITY_TIMEOUT_S = 5.0
MIN_AVAILABLE_MB = 200
MEMINFO = Path("/proc/meminfo")

_DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}"
_PARAM_TYPES: dict[str, type] = {"string": str, "number": float, "boolean": bool, "date": str}


class PreflightResult(BaseModel):
    portal_reachable: bool = True
    auth_fresh: bool = True
    params_valid: bool = True
    resources_ok: bool = True
    param_errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def params_message(self) -> str:
        return "Parameter validation failed: " + "; ".join(self.param_errors)


# --- Checks ---


async def url_reachable(
    url: str,
    timeout: float = REACHABILITY_TIMEOUT_S,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bool:
    """HEAD the URL; reachable means any status below 400.

    Non-HTTP targets (``file://`` pages) are not checked.
    """
    if urlparse(url).scheme not in ("http", "https"):
        return True
    try:
        async with httpx.AsyncClient(
            timeout=timeout, follow_redirects=True, transport=transport
        ) as client:
            response = await client.head(url)
    except httpx.HTTPError as exc:
        log.debug("portal_unreachable", url=url, error=str(exc))
        return False
    return response.status_code < 400


def available_memory_mb(meminfo: Path = MEMINFO) -> int | None:
    """MemAvailable from /proc/meminfo in MB, or None off Linux."""
    try:
        text = meminfo.read_text(encoding="utf-8")
    except OSError:
        return None
    match = re.search(r"MemAvailable:\s+(\d+)", text)
    return int(match.group(1)) // 1024 if match else None


def load_params_schema(flow_dir: Path) -> dict[str, dict[str, Any]] | None:
    path = Path(flow_dir) / PARAMS_SCHEMA_FILE
    if not path.exists():
        return None
    return json.loads(path.read_text(encoding="utf-8"))


def build_params_model(schema: dict[str, dict[str, Any]]) -> type[BaseModel]:
    """Pydantic model for a ``params.schema.json`` document.

    Each entry has a ``type`` (string, number, boolean or date) and optional
    ``required``, ``default`` and ``pattern`` keys.
    """
    fields: dict[str, Any] = {}
    for key, entry in schema.items():
        kind = entry.get("type", "string")
        annotation: Any = _PARAM_TYPES.get(kind, str)
        pattern = _DATE_PATTERN if kind == "date" else entry.get("pattern")
        if pattern and annotation is str:
            annotation = Annotated[str, StringConstraints(pattern=pattern)]

        if "default" in entry:
            default = entry["default"]
        elif entry.get("required"):
            default = ...
        else:
            annotation = Optional[annotation]
            default = None
        fields[key] = (annotation, Field(default=default, description=entry.get("description")))
    return create_model("FlowParams", **fields)


def validate_params(params: dict[str, Any], schema: dict[str, dict[str, Any]]) -> list[str]:
    """Problems with ``params`` as ``"<field>: <message>"`` lines; empty when valid."""
    try:
        build_params_model(schema).model_validate(params)
    except ValidationError as exc:
        return [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        ]
    return []


# --- Runner ---


async def run_preflight(
    flow_name: str,
    flow_dir: Path,
    target_url: str,
    params: dict[str, Any],
    auth_fresh: Callable[[str], bool],
    *,
    check_portal: bool = True,
    transport: httpx.AsyncBaseTransport | None = None,
    meminfo: Path = MEMINFO,
) -> PreflightResult:
    result = PreflightResult()

    if check_portal and not await url_reachable(target_url, transport=transport):
        result.portal_reachable = False
        result.warnings.append(f"Target URL {target_url} is not reachable.")

    if not auth_fresh(flow_name):
        result.auth_fresh = False
        result.warnings.append(
            f'Auth cookies may be expired. Consider running "replayengine auth refresh {flow_name}".'
        )

    try:
        schema = load_params_schema(flow_dir)
    except (OSError, json.JSONDecodeError) as exc:
        result.param_errors = [f"unreadable {PARAMS_SCHEMA_FILE}: {exc}"]
    else:
        result.param_errors = validate_params(params, schema) if schema else []
    if result.param_errors:
        result.params_valid = False
        result.warnings.append(result.params_message)

    available = available_memory_mb(meminfo)
    if available is not None and available < MIN_AVAILABLE_MB:
        result.resources_ok = False
        result.warnings.append(
            f"Low memory: only ~{available}MB available. "
            "Consider --lightweight to attach to a running browser."
        )

    for warning in result.warnings:
        log.warning("preflight_warning", flow=flow_name, warning=warning)
    return result
