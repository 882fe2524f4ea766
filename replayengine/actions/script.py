"""Script steps: externally supplied Python hooks."""

from __future__ import annotations

import importlib
import importlib.util
import inspect
import sys
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from replayengine.actions import BaseAction, ExecutionContext
from replayengine.exceptions import ScriptHookError, StepExecutionError
from replayengine.logger import get_logger

if TYPE_CHECKING:
    from playwright.async_api import Page

    from replayengine.models import Step

log = get_logger(__name__)

ENTRY_POINTS = ("default", "run")

ScriptHook = Callable[..., Any]


class ScriptHookLoader:
    """Resolves a script reference to its entry point callable.

    A reference is either a ``.py`` file (relative paths resolve against the
    flow directory) or a dotted module name. The module must expose a
    callable ``default`` or ``run`` taking ``(page, browser_context, params)``;
    it may be sync or async.
    """

    def __init__(self) -> None:
        self._cache: dict[str, ScriptHook] = {}

    def load(self, reference: str, flow_dir: Path | None = None) -> ScriptHook:
        key = f"{flow_dir}:{reference}"
        if key in self._cache:
            return self._cache[key]

        module = self._import(reference, flow_dir)
        for name in ENTRY_POINTS:
            hook = getattr(module, name, None)
            if callable(hook):
                self._cache[key] = hook
                log.debug("script_hook_loaded", reference=reference, entry=name)
                return hook
        raise ScriptHookError(reference, "must export a default function or run()")

    @staticmethod
    def _import(reference: str, flow_dir: Path | None) -> Any:
        if reference.endswith(".py"):
            path = Path(reference)
            if not path.is_absolute() and flow_dir is not None:
                path = flow_dir / path
            if not path.exists():
                raise ScriptHookError(reference, f"not found ({path})")
            module_name = f"replayengine_hook_{abs(hash(str(path.resolve())))}"
            spec = importlib.util.spec_from_file_location(module_name, path)
            if spec is None or spec.loader is None:
                raise ScriptHookError(reference, "cannot be imported")
            module = importlib.util.module_from_spec(spec)
            sys.modules[module_name] = module
            try:
                spec.loader.exec_module(module)
            except Exception as exc:
                sys.modules.pop(module_name, None)
                raise ScriptHookError(reference, f"failed to import: {exc}") from exc
            return module

        try:
            return importlib.import_module(reference)
        except ImportError as exc:
            raise ScriptHookError(reference, f"failed to import: {exc}") from exc


class ScriptAction(BaseAction):
    """Run an external hook with the live page, context, and params."""

    async def execute(self, page: Page, step: Step, context: ExecutionContext) -> None:
        reference = (step.value or "").strip()
        if not reference:
            raise StepExecutionError(
                step.index, step.kind.value, "Script step has no script reference"
            )
        loader = context.script_loader or ScriptHookLoader()
        hook = loader.load(reference, context.flow_dir)
        result = hook(page, context.browser_context, dict(context.params))
        if inspect.isawaitable(result):
            await result
