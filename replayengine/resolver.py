"""Selector resolution with fixed-priority fallback."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from replayengine.exceptions import NoSelectorMatched
from replayengine.logger import get_logger
from replayengine.resolvers import BaseResolver
from replayengine.resolvers.aria import AriaResolver
from replayengine.resolvers.css import CSSResolver
from replayengine.resolvers.testid import DataTestIdResolver
from replayengine.resolvers.text import TextResolver
from replayengine.resolvers.xpath import XPathResolver

if TYPE_CHECKING:
    from playwright.async_api import Locator, Page

    from replayengine.models import SelectorSet

log = get_logger(__name__)

DEFAULT_VISIBLE_TIMEOUT_MS = 4000


@dataclass
class Resolution:
    """The locator chosen for a step and how it was found."""

    locator: Locator
    strategy: str
    tried: list[str] = field(default_factory=list)
    visible: bool = True


class SelectorResolver:
    """Tries strategies test-id, aria, text, css, xpath until one is visible."""

    def __init__(
        self,
        resolvers: list[BaseResolver] | None = None,
        visible_timeout_ms: float = DEFAULT_VISIBLE_TIMEOUT_MS,
    ) -> None:
        self.resolvers = resolvers or [
            DataTestIdResolver(),
            AriaResolver(),
            TextResolver(),
            CSSResolver(),
            XPathResolver(),
        ]
        self.visible_timeout_ms = visible_timeout_ms

    async def resolve(
        self,
        page: Page,
        selectors: SelectorSet,
        frame_scope: str | None = None,
    ) -> Resolution:
        """Resolve a SelectorSet to a locator.

        The first candidate that becomes visible within the timeout wins. If
        none does, the first candidate is returned anyway so the caller's
        action surfaces a precise error.

        Raises:
            NoSelectorMatched: If the SelectorSet has no usable strategy.
        """
        root = page.frame_locator(frame_scope) if frame_scope else page
        candidates: list[tuple[str, Locator]] = []
        tried: list[str] = []

        for resolver in self.resolvers:
            try:
                candidate = resolver.candidate(root, selectors)
            except Exception as exc:
                log.warning("resolver_error", resolver=resolver.name, error=str(exc))
                tried.append(f"{resolver.name}(error)")
                continue
            if candidate is None:
                continue

            locator = candidate.first
            candidates.append((resolver.name, locator))
            try:
                await locator.wait_for(
                    state="visible", timeout=self.visible_timeout_ms
                )
            except Exception as exc:
                log.debug(
                    "candidate_not_visible",
                    resolver=resolver.name,
                    frame=frame_scope,
                    error=str(exc)[:120],
                )
                tried.append(f"{resolver.name}(not visible)")
                continue

            tried.append(resolver.name)
            log.debug("element_resolved", resolver=resolver.name, frame=frame_scope)
            return Resolution(locator=locator, strategy=resolver.name, tried=tried)

        if not candidates:
            if not tried:
                tried = [f"{r.name}(absent)" for r in self.resolvers]
            raise NoSelectorMatched(strategies_tried=tried, frame_scope=frame_scope)

        name, locator = candidates[0]
        log.warning(
            "no_visible_candidate",
            fallback=name,
            tried=tried,
            frame=frame_scope,
        )
        return Resolution(locator=locator, strategy=name, tried=tried, visible=False)
