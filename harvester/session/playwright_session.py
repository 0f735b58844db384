"""Playwright-backed rendering session.

Translates Playwright's exceptions into the session contract so nothing
above this module depends on Playwright error types.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from playwright.async_api import Browser, Error as PlaywrightError, Page
from playwright.async_api import TimeoutError as PlaywrightTimeout

from harvester.session.base import (
    ElementNotFoundError,
    NavigationError,
    SessionError,
    SessionTimeoutError,
)

logger = logging.getLogger(__name__)

_DEFAULT_ACTION_TIMEOUT_MS = 5000


class PlaywrightSession:
    """RenderingSession over a single Playwright page."""

    def __init__(self, page: Page, action_timeout_ms: int = _DEFAULT_ACTION_TIMEOUT_MS):
        self.page = page
        self.action_timeout_ms = action_timeout_ms

    async def navigate(self, url: str, timeout_ms: int) -> Optional[int]:
        try:
            response = await self.page.goto(url, timeout=timeout_ms, wait_until="domcontentloaded")
        except PlaywrightTimeout as e:
            raise SessionTimeoutError(f"navigation to {url} timed out after {timeout_ms}ms") from e
        except PlaywrightError as e:
            raise NavigationError(str(e)[:300]) from e

        # Allow client-rendered menus a moment to settle
        try:
            await self.page.wait_for_load_state("networkidle", timeout=5000)
        except PlaywrightTimeout:
            pass  # Use whatever content loaded

        return response.status if response else None

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        try:
            return await self.page.evaluate(script, arg)
        except PlaywrightTimeout as e:
            raise SessionTimeoutError(str(e)[:300]) from e
        except PlaywrightError as e:
            raise SessionError(str(e)[:300]) from e

    async def click(self, selector: str, timeout_ms: Optional[int] = None) -> None:
        locator = self.page.locator(selector).first
        try:
            if await locator.count() == 0:
                raise ElementNotFoundError(selector)
            await locator.click(timeout=timeout_ms or self.action_timeout_ms)
        except PlaywrightTimeout as e:
            raise SessionTimeoutError(f"click {selector!r} timed out") from e
        except PlaywrightError as e:
            raise SessionError(str(e)[:300]) from e

    async def fill(self, selector: str, value: str, timeout_ms: Optional[int] = None) -> None:
        locator = self.page.locator(selector).first
        try:
            if await locator.count() == 0:
                raise ElementNotFoundError(selector)
            await locator.fill(value, timeout=timeout_ms or self.action_timeout_ms)
        except PlaywrightTimeout as e:
            raise SessionTimeoutError(f"fill {selector!r} timed out") from e
        except PlaywrightError as e:
            raise SessionError(str(e)[:300]) from e

    async def wait_for_selector(self, selector: str, timeout_ms: int) -> None:
        try:
            await self.page.wait_for_selector(selector, timeout=timeout_ms)
        except PlaywrightTimeout as e:
            raise SessionTimeoutError(f"{selector!r} did not appear within {timeout_ms}ms") from e
        except PlaywrightError as e:
            raise SessionError(str(e)[:300]) from e

    async def content(self) -> str:
        try:
            return await self.page.content()
        except PlaywrightError as e:
            raise SessionError(str(e)[:300]) from e

    async def screenshot(self, path: str) -> None:
        try:
            await self.page.screenshot(path=path, full_page=True)
        except PlaywrightError as e:
            logger.debug("Screenshot to %s failed: %s", path, e)


class PlaywrightSessionFactory:
    """Opens one isolated browser context + page per job attempt."""

    def __init__(
        self,
        browser: Browser,
        user_agent: Optional[str] = None,
        action_timeout_ms: int = _DEFAULT_ACTION_TIMEOUT_MS,
    ):
        self.browser = browser
        self.user_agent = user_agent
        self.action_timeout_ms = action_timeout_ms

    @asynccontextmanager
    async def __call__(self) -> AsyncIterator[PlaywrightSession]:
        try:
            context = await self.browser.new_context(user_agent=self.user_agent)
        except PlaywrightError as e:
            raise NavigationError(f"could not open browser context: {e}") from e
        try:
            page = await context.new_page()
            yield PlaywrightSession(page, action_timeout_ms=self.action_timeout_ms)
        finally:
            try:
                await context.close()
            except PlaywrightError as e:
                logger.debug("Error closing browser context: %s", e)
