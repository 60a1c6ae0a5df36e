"""Pytest fixtures for pagerunner tests."""

from __future__ import annotations

import asyncio
import inspect
import tempfile
from pathlib import Path
from typing import Any, Callable, Generator
from unittest.mock import MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from pagerunner.config import BrowserSpec, RunnerConfig
from pagerunner.execution.bridge import IMPORT_JS, INVOKE_JS
from pagerunner.session.engine_pool import FETCH_INVOKE_JS, EnginePool

PageHandler = Callable[[str, Any], Any]


def default_page_handler(expression: str, arg: Any) -> Any:
    """Answer the scripts pagerunner evaluates the way a healthy dev server would."""
    if expression == INVOKE_JS:
        filepath = arg["payload"]["data"]["data"][0]
        return {"ok": True, "body": {"result": {"url": f"/{filepath}"}}}
    if expression == IMPORT_JS:
        return {"ok": True, "exports": ["default"]}
    if expression == FETCH_INVOKE_JS:
        return {"ok": True, "status": 200, "body": {"pong": True}}
    return None


class FakeLocator:
    def __init__(self, page: FakePage, selector: str) -> None:
        self.page = page
        self.selector = selector

    async def screenshot(self) -> bytes:
        if self.page.fail_with is not None:
            raise self.page.fail_with
        return f"element:{self.selector}".encode()


class FakePage:
    """Page double recording evaluations and its own closing."""

    def __init__(
        self,
        context: FakeContext | None = None,
        handler: PageHandler | None = default_page_handler,
        present_selectors: set[str] | None = None,
    ) -> None:
        self.context = context
        self.handler = handler
        self.present_selectors = present_selectors if present_selectors is not None else set()
        self.url = "about:blank"
        self.closed = False
        self.fail_with: BaseException | None = None
        self.evaluations: list[tuple[str, Any]] = []
        self.exposed: dict[str, Callable[..., Any]] = {}
        self.init_scripts: list[str] = []

    async def goto(self, url: str) -> None:
        self.url = url

    async def evaluate(self, expression: str, arg: Any = None) -> Any:
        self.evaluations.append((expression, arg))
        if self.fail_with is not None:
            raise self.fail_with
        if self.handler is None:
            return None
        result = self.handler(expression, arg)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def expose_function(self, name: str, fn: Callable[..., Any]) -> None:
        if name in self.exposed:
            raise PlaywrightError(f'Function "{name}" has been already registered')
        self.exposed[name] = fn

    async def add_init_script(self, script: str | None = None, path: str | None = None) -> None:
        self.init_scripts.append(script or "")

    async def wait_for_selector(
        self,
        selector: str,
        timeout: float | None = None,
        state: str | None = None,
    ) -> Any:
        if self.fail_with is not None:
            raise self.fail_with
        if selector in self.present_selectors:
            return MagicMock()
        await asyncio.sleep((timeout or 30000) / 1000)
        raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded.")

    async def screenshot(self, full_page: bool = False) -> bytes:
        if self.fail_with is not None:
            raise self.fail_with
        return b"page-full" if full_page else b"page"

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    def evaluated(self, expression: str) -> list[Any]:
        """Arguments of every evaluation of ``expression``."""
        return [arg for expr, arg in self.evaluations if expr == expression]

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            if self.context is not None:
                self.context.closed_pages += 1


class FakeContext:
    def __init__(self, browser: FakeBrowser) -> None:
        self.browser = browser
        self.pages: list[FakePage] = []
        self.closed = False
        self.closed_pages = 0

    async def new_page(self) -> FakePage:
        launcher = self.browser.launcher
        page = FakePage(self, launcher.page_handler, launcher.present_selectors)
        if launcher.action_page_error is not None and self.pages:
            page.fail_with = launcher.action_page_error
        self.pages.append(page)
        return page

    async def close(self) -> None:
        self.closed = True
        for page in self.pages:
            await page.close()


class FakeBrowser:
    def __init__(self, launcher: FakeLauncher, spec: BrowserSpec) -> None:
        self.launcher = launcher
        self.spec = spec
        self.contexts: list[FakeContext] = []
        self.closed = False
        self.fail_close = False
        self.close_delay = 0.0

    async def new_context(self) -> FakeContext:
        context = FakeContext(self)
        self.contexts.append(context)
        return context

    async def close(self) -> None:
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        if self.fail_close:
            raise PlaywrightError("Browser has been closed")
        self.closed = True
        for context in self.contexts:
            await context.close()


class FakeLauncher:
    """BrowserLauncher double; launches fail for names listed in ``failing``."""

    def __init__(
        self,
        failing: set[str] | None = None,
        launch_delay: float = 0.0,
        page_handler: PageHandler | None = default_page_handler,
    ) -> None:
        self.failing = failing or set()
        self.launch_delay = launch_delay
        self.page_handler = page_handler
        self.present_selectors: set[str] = set()
        # applied to every page after the first one in a context
        self.action_page_error: BaseException | None = None
        self.launched: list[str] = []
        self.browsers: list[FakeBrowser] = []
        self.closed = False

    async def launch(self, spec: BrowserSpec) -> FakeBrowser:
        self.launched.append(spec.name)
        if self.launch_delay:
            await asyncio.sleep(self.launch_delay)
        if spec.name in self.failing:
            raise PlaywrightError(f"Failed to launch {spec.name}")
        browser = FakeBrowser(self, spec)
        self.browsers.append(browser)
        return browser

    async def close(self) -> None:
        self.closed = True

    def browser_for(self, name: str) -> FakeBrowser:
        for browser in self.browsers:
            if browser.spec.name == name:
                return browser
        raise KeyError(name)

    @property
    def all_pages(self) -> list[FakePage]:
        return [p for b in self.browsers for c in b.contexts for p in c.pages]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test artifacts."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config() -> RunnerConfig:
    """Two-browser configuration with short timeouts."""
    return RunnerConfig(
        browsers=("chrome", "firefox"),
        session_timeout_seconds=2.0,
        bridge_timeout_seconds=1.0,
        action_timeout_ms=200,
    )


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def pool(config: RunnerConfig, launcher: FakeLauncher) -> EnginePool:
    return EnginePool(config, launcher)


@pytest.fixture
def make_launcher() -> type[FakeLauncher]:
    """Factory for launchers with failing browsers, delays or custom page handlers."""
    return FakeLauncher


@pytest.fixture
def page() -> FakePage:
    """Standalone page answering like a healthy dev server."""
    return FakePage()
