"""Composite locator strategies and condition races.

A :class:`LocatorStrategy` replaces inline "selector A or text B or selector C"
fallback chains: candidates are ordered most specific first and the first
visible one wins. Lookups that error or time out mean "not visible".
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Mapping

import structlog
from playwright.async_api import Error as PlaywrightError, Locator, Page

from ..exceptions import ElementNotFound

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LocatorStrategy:
    name: str
    candidates: tuple[str, ...]

    @classmethod
    def of(cls, name: str, candidates: Any) -> "LocatorStrategy":
        return cls(name=name, candidates=tuple(str(c) for c in candidates))

    def __bool__(self) -> bool:
        return bool(self.candidates)

    async def first_visible_now(self, page: Page) -> tuple[str, Locator] | None:
        for selector in self.candidates:
            locator = page.locator(selector).first
            if await is_visible(locator):
                return selector, locator
        return None

    async def resolve(self, page: Page, timeout_ms: int = 0) -> tuple[str, Locator] | None:
        """Return ``(selector, locator)`` of the first visible candidate, or None.

        When nothing is visible yet, waits up to ``timeout_ms`` for any candidate
        to appear, then re-applies declaration order so the most specific
        candidate still wins over a text match that rendered first.
        """
        found = await self.first_visible_now(page)
        if found is not None or timeout_ms <= 0 or not self.candidates:
            return found

        combined = page.locator(self.candidates[0])
        for selector in self.candidates[1:]:
            combined = combined.or_(page.locator(selector))
        try:
            await combined.first.wait_for(state="visible", timeout=timeout_ms)
        except PlaywrightError:
            return None
        return await self.first_visible_now(page)

    async def is_visible(self, page: Page, timeout_ms: int = 0) -> bool:
        return await self.resolve(page, timeout_ms) is not None


async def is_visible(locator: Locator) -> bool:
    try:
        return await locator.is_visible()
    except PlaywrightError:
        return False


async def until_visible(page: Page, strategy: LocatorStrategy, timeout_ms: int) -> None:
    """Raising form of :meth:`LocatorStrategy.resolve`, for :func:`wait_for_first` races."""
    if await strategy.resolve(page, timeout_ms) is None:
        raise ElementNotFound(f"visible {strategy.name}", "none visible")


async def wait_for_first(conditions: Mapping[str, Awaitable[Any]], timeout_ms: int) -> str | None:
    """Race named waits; return the name of the first that completes without error.

    Conditions that raise (typically Playwright timeouts) simply drop out. The
    losers are cancelled. Returns None when nothing succeeds before the deadline.
    """
    tasks = {asyncio.ensure_future(aw): name for name, aw in conditions.items()}
    pending: set[asyncio.Future[Any]] = set(tasks)
    winner: str | None = None
    loop = asyncio.get_running_loop()
    deadline = loop.time() + (timeout_ms / 1000.0)
    try:
        while pending and winner is None:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
            if not done:
                break
            for task in done:
                if task.cancelled():
                    continue
                if task.exception() is None and winner is None:
                    winner = tasks[task]
    finally:
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                pass
    if winner is not None:
        logger.debug("Condition satisfied", condition=winner)
    return winner
