"""Scroll action."""

from __future__ import annotations

from typing import TYPE_CHECKING

from replayengine.actions import BaseAction, ExecutionContext
from replayengine.exceptions import StepExecutionError

if TYPE_CHECKING:
    from playwright.async_api import Page

    from replayengine.models import Step

DEFAULT_SCROLL_DELTA = 300


class ScrollAction(BaseAction):
    """Scroll the page vertically by the step's value in pixels."""

    async def execute(self, page: Page, step: Step, context: ExecutionContext) -> None:
        raw = context.render(step.value).strip()
        try:
            delta_y = int(float(raw)) if raw else DEFAULT_SCROLL_DELTA
        except ValueError as exc:
            raise StepExecutionError(
                step.index, step.kind.value, f"Invalid scroll delta: {raw!r}"
            ) from exc
        await page.mouse.wheel(0, delta_y)
