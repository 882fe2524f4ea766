"""Aria label resolver."""

from __future__ import annotations

from typing import TYPE_CHECKING

from replayengine.resolvers import BaseResolver, looks_like_selector

if TYPE_CHECKING:
    from playwright.async_api import FrameLocator, Locator, Page

    from replayengine.models import SelectorSet


class AriaResolver(BaseResolver):
    """Resolve elements by aria-label or role selectors."""

    @property
    def name(self) -> str:
        return "aria"

    def candidate(
        self, root: Page | FrameLocator, selectors: SelectorSet
    ) -> Locator | None:
        if not selectors.aria:
            return None
        if looks_like_selector(selectors.aria):
            return root.locator(selectors.aria)
        return root.get_by_label(selectors.aria)
