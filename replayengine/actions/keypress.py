"""Keypress action."""

from __future__ import annotations

from typing import TYPE_CHECKING

from replayengine.actions import BaseAction, ExecutionContext

if TYPE_CHECKING:
    from playwright.async_api import Page

    from replayengine.models import Step


class KeypressAction(BaseAction):
    """Send a key to the focused element (Enter when unspecified)."""

    async def execute(self, page: Page, step: Step, context: ExecutionContext) -> None:
        key = context.render(step.key) or "Enter"
        await page.keyboard.press(key)
