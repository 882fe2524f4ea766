"""Visible text resolver."""

from __future__ import annotations

from typing import TYPE_CHECKING

from replayengine.resolvers import BaseResolver

if TYPE_CHECKING:
    from playwright.async_api import FrameLocator, Locator, Page

    from replayengine.models import SelectorSet


class TextResolver(BaseResolver):
    """Resolve elements by exact visible text."""

    @property
    def name(self) -> str:
        return "text"

    def candidate(
        self, root: Page | FrameLocator, selectors: SelectorSet
    ) -> Locator | None:
        if not selectors.text or not selectors.text.strip():
            return None
        return root.get_by_text(selectors.text.strip(), exact=True)
