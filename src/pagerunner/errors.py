"""
Exception types shared by the session, transport and execution layers.

Every error raised on purpose by pagerunner derives from PageRunnerError so
callers can catch the whole family in one place.
"""

from __future__ import annotations

from typing import Iterable


class PageRunnerError(Exception):
    """Base exception for pagerunner errors."""


class SessionUnavailable(PageRunnerError):
    """Raised when no session exists for a browser and one could not be created."""

    def __init__(self, browser: str, reason: str | None = None) -> None:
        self.browser = browser
        self.reason = reason
        message = f"No browser session available for '{browser}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class NoBrowsersAvailable(PageRunnerError):
    """Raised when every configured browser failed to initialize."""

    def __init__(self, attempted: Iterable[str]) -> None:
        self.attempted = list(attempted)
        names = ", ".join(self.attempted) or "<none>"
        super().__init__(f"No browsers could be initialized (attempted: {names})")


class NoRunnerForBrowser(PageRunnerError):
    """Raised when work is routed to a browser that has no module bridge."""

    def __init__(self, browser: str) -> None:
        self.browser = browser
        super().__init__(f"No module runner available for browser: {browser}")


class InvokeFailed(PageRunnerError):
    """Raised when an in-page invoke call fails."""

    def __init__(self, message: str, status: int | None = None) -> None:
        self.message = message
        self.status = status
        super().__init__(f"Invoke failed: {message}")


class InvokeTimeout(InvokeFailed):
    """Raised when waiting on the page exceeded the configured timeout."""

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{operation} timed out after {timeout_seconds}s")


class ElementNotFound(PageRunnerError):
    """Raised when a selector does not appear before the timeout."""

    def __init__(self, selector: str, timeout_ms: int) -> None:
        self.selector = selector
        self.timeout_ms = timeout_ms
        super().__init__(f"Element '{selector}' not found within {timeout_ms}ms")


class EngineFailure(PageRunnerError):
    """Raised when launching, navigating or closing a browser engine fails."""

    def __init__(self, browser: str, reason: str) -> None:
        self.browser = browser
        self.reason = reason
        super().__init__(f"Browser engine failure for '{browser}': {reason}")


class InvalidStateError(PageRunnerError):
    """Raised when a coordinator operation is called in the wrong lifecycle state."""
