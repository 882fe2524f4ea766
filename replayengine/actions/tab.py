"""Tab-switch action."""

from __future__ import annotations

from typing import TYPE_CHECKING

from replayengine.actions import BaseAction, ExecutionContext
from replayengine.exceptions import StepExecutionError

if TYPE_CHECKING:
    from playwright.async_api import Page

    from replayengine.models import Step


class TabSwitchAction(BaseAction):
    """Make the newest tab of the browser context the current page.

    A tab opened by the previous step is picked up directly; otherwise the
    handler waits for one to open.
    """

    async def execute(self, page: Page, step: Step, context: ExecutionContext) -> None:
        browser_context = context.browser_context
        if browser_context is None:
            raise StepExecutionError(
                step.index, step.kind.value, "No browser context to watch for tabs"
            )

        open_pages = [p for p in browser_context.pages if not p.is_closed()]
        if open_pages and open_pages[-1] is not page:
            new_page = open_pages[-1]
        else:
            new_page = await browser_context.wait_for_event(
                "page", timeout=context.action_timeout_ms
            )
        await new_page.wait_for_load_state(timeout=context.action_timeout_ms)
        context.page = new_page
