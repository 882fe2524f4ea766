"""Step handler interface, execution context, and parameter substitution."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from replayengine.resolver import Resolution, SelectorResolver

if TYPE_CHECKING:
    from playwright.async_api import BrowserContext, Page

    from replayengine.actions.script import ScriptHookLoader
    from replayengine.models import Step, StepError

_PLACEHOLDER = re.compile(r"\{\{\s*(?:params\.)?(\w+)\s*\}\}")


def render_params(template: str, params: dict[str, Any]) -> str:
    """Replace ``{{name}}`` / ``{{params.name}}`` with parameter values.

    Unknown placeholders are left untouched.
    """
    def replacer(match: re.Match) -> str:
        key = match.group(1)
        if key in params:
            return str(params[key])
        return match.group(0)
    return _PLACEHOLDER.sub(replacer, template)


@dataclass
class ExecutionContext:
    """Mutable state owned by exactly one run."""

    page: Page
    browser_context: BrowserContext | None = None
    params: dict[str, Any] = field(default_factory=dict)
    resolver: SelectorResolver = field(default_factory=SelectorResolver)
    flow_dir: Path | None = None
    script_loader: ScriptHookLoader | None = None
    frame_scope: str | None = None
    screenshots: list[str] = field(default_factory=list)
    steps_completed: int = 0
    step_error: StepError | None = None
    action_timeout_ms: float = 15000
    navigation_wait_until: str = "networkidle"

    def render(self, value: str | None) -> str:
        return render_params(value or "", self.params)


class BaseAction(ABC):
    """Base class for step handlers.

    Handlers raise on failure. Element handlers return the Resolution that
    located their target so the executor can log the winning strategy.
    """

    @abstractmethod
    async def execute(
        self, page: Page, step: Step, context: ExecutionContext
    ) -> Resolution | None:
        """Carry out the step against the page."""

    @staticmethod
    async def resolve(
        page: Page, step: Step, context: ExecutionContext
    ) -> Resolution:
        """Locate the step's element inside the active frame scope."""
        return await context.resolver.resolve(
            page, step.selectors, context.frame_scope
        )
