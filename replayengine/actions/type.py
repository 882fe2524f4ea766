"""Type action."""

from __future__ import annotations

from typing import TYPE_CHECKING

from replayengine.actions import BaseAction, ExecutionContext
from replayengine.resolver import Resolution

if TYPE_CHECKING:
    from playwright.async_api import Page

    from replayengine.models import Step


class TypeAction(BaseAction):
    """Fill an input with the step's value.

    Recorded ``type`` steps carry the final field value, so the field is
    filled in one go rather than replaying individual key presses.
    """

    async def execute(
        self, page: Page, step: Step, context: ExecutionContext
    ) -> Resolution:
        value = context.render(step.value)
        resolution = await self.resolve(page, step, context)
        await resolution.locator.fill(value, timeout=context.action_timeout_ms)
        return resolution
