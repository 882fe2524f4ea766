"""Selector strategy interface and implementations."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from playwright.async_api import FrameLocator, Locator, Page

    from replayengine.models import SelectorSet


def looks_like_selector(value: str) -> bool:
    """True when a captured value is already a full CSS/attribute selector."""
    value = value.strip()
    return value.startswith("[") or ("[" in value and value.endswith("]"))


class BaseResolver(ABC):
    """Builds a locator candidate for one addressing strategy."""

    @abstractmethod
    def candidate(
        self, root: Page | FrameLocator, selectors: SelectorSet
    ) -> Locator | None:
        """Return a locator for this strategy, or None if it is absent."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Strategy name for logging."""
