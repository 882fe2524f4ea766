"""XPath selector resolver."""

from __future__ import annotations

from typing import TYPE_CHECKING

from replayengine.resolvers import BaseResolver

if TYPE_CHECKING:
    from playwright.async_api import FrameLocator, Locator, Page

    from replayengine.models import SelectorSet


class XPathResolver(BaseResolver):
    """Resolve elements using XPath selectors."""

    @property
    def name(self) -> str:
        return "xpath"

    def candidate(
        self, root: Page | FrameLocator, selectors: SelectorSet
    ) -> Locator | None:
        if not selectors.xpath:
            return None
        xpath = selectors.xpath
        if not xpath.startswith("xpath="):
            xpath = f"xpath={xpath}"
        return root.locator(xpath)
