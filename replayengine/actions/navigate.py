"""Navigate action."""

from __future__ import annotations

from typing import TYPE_CHECKING

from replayengine.actions import BaseAction, ExecutionContext
from replayengine.exceptions import StepExecutionError

if TYPE_CHECKING:
    from playwright.async_api import Page

    from replayengine.models import Step


def navigation_target(step: Step, context: ExecutionContext) -> str:
    """URL a navigate step will load, with parameters substituted."""
    return context.render(step.url or step.page_url)


class NavigateAction(BaseAction):
    """Navigate to a URL."""

    async def execute(self, page: Page, step: Step, context: ExecutionContext) -> None:
        url = navigation_target(step, context)
        if not url:
            raise StepExecutionError(step.index, step.kind.value, "No URL to navigate to")
        await page.goto(
            url,
            wait_until=context.navigation_wait_until,
            timeout=context.action_timeout_ms,
        )
