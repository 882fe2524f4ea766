"""CSS selector resolver."""

from __future__ import annotations

from typing import TYPE_CHECKING

from replayengine.resolvers import BaseResolver

if TYPE_CHECKING:
    from playwright.async_api import FrameLocator, Locator, Page

    from replayengine.models import SelectorSet


class CSSResolver(BaseResolver):
    """Resolve elements using CSS paths."""

    @property
    def name(self) -> str:
        return "css"

    def candidate(
        self, root: Page | FrameLocator, selectors: SelectorSet
    ) -> Locator | None:
        if not selectors.css:
            return None
        return root.locator(selectors.css)
