"""Rendering session contract consumed by the crawler and inventory resolver.

A session is a controllable headless page owned by exactly one job. Any
call may fail with SessionTimeoutError or ElementNotFoundError; strategies
treat both as "not applicable here" rather than as fatal.
"""

from typing import Any, AsyncContextManager, Callable, Optional, Protocol


class SessionError(Exception):
    """Base class for rendering session failures."""


class SessionTimeoutError(SessionError):
    """A session operation did not complete in time."""


class ElementNotFoundError(SessionError):
    """No element matched the selector."""

    def __init__(self, selector: str):
        self.selector = selector
        super().__init__(f"no element matches {selector!r}")


class NavigationError(SessionError):
    """Network-level failure while loading a page."""


class RenderingSession(Protocol):
    async def navigate(self, url: str, timeout_ms: int) -> Optional[int]:
        """Load the URL; returns the HTTP status when known."""
        ...

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        """Run a JS function against the live DOM, returning JSON-serializable data."""
        ...

    async def click(self, selector: str, timeout_ms: Optional[int] = None) -> None:
        ...

    async def fill(self, selector: str, value: str, timeout_ms: Optional[int] = None) -> None:
        ...

    async def wait_for_selector(self, selector: str, timeout_ms: int) -> None:
        ...

    async def content(self) -> str:
        """Current rendered HTML."""
        ...

    async def screenshot(self, path: str) -> None:
        """Diagnostic capture only."""
        ...


# Opens a fresh session for one job attempt and closes it on exit
SessionFactory = Callable[[], AsyncContextManager[RenderingSession]]
