"""Upload action."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from replayengine.actions import BaseAction, ExecutionContext
from replayengine.exceptions import StepExecutionError
from replayengine.resolver import Resolution

if TYPE_CHECKING:
    from playwright.async_api import Page

    from replayengine.models import Step


class UploadAction(BaseAction):
    """Attach a file to a file input.

    Relative paths are looked up in the flow directory first.
    """

    async def execute(
        self, page: Page, step: Step, context: ExecutionContext
    ) -> Resolution:
        raw = context.render(step.value).strip()
        if not raw:
            raise StepExecutionError(step.index, step.kind.value, "No file to upload")

        path = Path(raw)
        if not path.is_absolute() and context.flow_dir is not None:
            candidate = context.flow_dir / path
            if candidate.exists():
                path = candidate

        resolution = await self.resolve(page, step, context)
        await resolution.locator.set_input_files(
            str(path), timeout=context.action_timeout_ms
        )
        return resolution
