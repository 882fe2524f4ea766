"""Wait action."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from replayengine.actions import BaseAction, ExecutionContext
from replayengine.resolver import Resolution

if TYPE_CHECKING:
    from playwright.async_api import Page

    from replayengine.models import Step


class WaitAction(BaseAction):
    """Wait for an element, a fixed delay, or network idle.

    With selectors, waits until the resolved element is visible. A numeric
    value without selectors is a delay in milliseconds. Otherwise waits for
    the page's network to go idle.
    """

    async def execute(
        self, page: Page, step: Step, context: ExecutionContext
    ) -> Resolution | None:
        if not step.selectors.is_empty:
            resolution = await self.resolve(page, step, context)
            await resolution.locator.wait_for(
                state="visible", timeout=context.action_timeout_ms
            )
            return resolution

        raw = context.render(step.value).strip()
        if raw.isdigit():
            await asyncio.sleep(int(raw) / 1000)
            return None

        await page.wait_for_load_state("networkidle", timeout=context.action_timeout_ms)
        return None
