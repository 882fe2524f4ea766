"""Frame-switch action."""

from __future__ import annotations

from typing import TYPE_CHECKING

from replayengine.actions import BaseAction, ExecutionContext
from replayengine.logger import get_logger

if TYPE_CHECKING:
    from playwright.async_api import Page

    from replayengine.models import Step

log = get_logger(__name__)

# Values that return element lookups to the top-level document.
_TOP_LEVEL = {"", "main", "top", "page"}


class FrameSwitchAction(BaseAction):
    """Change the frame scope used by subsequent element steps.

    Performs no element action. The scope stays in effect until another
    frame-switch step changes it.
    """

    async def execute(self, page: Page, step: Step, context: ExecutionContext) -> None:
        selector = (step.frame_selector or step.value or "").strip()
        previous = context.frame_scope
        context.frame_scope = None if selector.lower() in _TOP_LEVEL else selector
        log.debug(
            "frame_scope_changed",
            step=step.index,
            previous=previous,
            current=context.frame_scope,
        )
