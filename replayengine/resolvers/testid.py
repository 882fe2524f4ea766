"""Test-id attribute resolver."""

from __future__ import annotations

from typing import TYPE_CHECKING

from replayengine.resolvers import BaseResolver, looks_like_selector

if TYPE_CHECKING:
    from playwright.async_api import FrameLocator, Locator, Page

    from replayengine.models import SelectorSet


class DataTestIdResolver(BaseResolver):
    """Resolve elements by ``data-testid`` style attributes.

    Recorded values are usually full attribute selectors such as
    ``[data-cy="submit"]``; a bare id falls back to ``get_by_test_id``.
    """

    @property
    def name(self) -> str:
        return "test_id"

    def candidate(
        self, root: Page | FrameLocator, selectors: SelectorSet
    ) -> Locator | None:
        if not selectors.test_id:
            return None
        if looks_like_selector(selectors.test_id):
            return root.locator(selectors.test_id)
        return root.get_by_test_id(selectors.test_id)
