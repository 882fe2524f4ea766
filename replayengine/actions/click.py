"""Click action."""

from __future__ import annotations

from typing import TYPE_CHECKING

from replayengine.actions import BaseAction, ExecutionContext
from replayengine.resolver import Resolution

if TYPE_CHECKING:
    from playwright.async_api import Page

    from replayengine.models import Step


class ClickAction(BaseAction):
    """Click on a resolved element."""

    async def execute(
        self, page: Page, step: Step, context: ExecutionContext
    ) -> Resolution:
        resolution = await self.resolve(page, step, context)
        await resolution.locator.click(timeout=context.action_timeout_ms)
        return resolution
