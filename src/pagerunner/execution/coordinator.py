"""
Execution coordinator for browser participation in a test run.

Provides:
- Best-effort initialization of every configured browser
- One module bridge and transport channel per live browser
- Round-robin assignment of test files over initialized browsers
- Interactive actions on throwaway pages that never outlive the call
- Ordered teardown of bridges, then engines
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import os
from enum import StrEnum
from typing import TYPE_CHECKING, Any, AsyncIterator, Iterable

import structlog
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from pagerunner.best_effort import run_all_best_effort
from pagerunner.config import RunnerConfig, load_runner_config
from pagerunner.errors import (
    ElementNotFound,
    InvalidStateError,
    NoBrowsersAvailable,
    NoRunnerForBrowser,
)
from pagerunner.execution.bridge import BridgeHandlers, ModuleBridge, ModuleImportResult
from pagerunner.session.engine_pool import EnginePool
from pagerunner.session.proxy import SessionProxy
from pagerunner.transport.channel import TransportChannel

if TYPE_CHECKING:
    from playwright.async_api import Page

    from pagerunner.session.engine_pool import BrowserLauncher

logger = structlog.get_logger(__name__)


class CoordinatorState(StrEnum):
    """Lifecycle state of an ExecutionCoordinator."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    RUNNING = "running"
    CLEANING_UP = "cleaning_up"
    CLOSED = "closed"


def file_path_of(item: Any) -> str:
    """Get the file path from a path string or a collected-file object."""
    if isinstance(item, (str, os.PathLike)):
        return os.fspath(item)
    filepath = getattr(item, "filepath", None)
    if filepath is None:
        raise TypeError(f"Cannot determine file path of {item!r}")
    return os.fspath(filepath)


def browser_marker(filepath: str, names: Iterable[str]) -> str | None:
    """Browser named in the file's basename (``app.firefox.test.ts``), if any."""
    basename = os.path.basename(filepath)
    for name in names:
        if f".{name}." in basename:
            return name
    return None


class ExecutionCoordinator:
    """
    Owns one test run's browser participation.

    Features:
    - Per-browser failures during initialization are logged and skipped
    - Assignment only ever references initialized browsers
    - Interactive actions use a dedicated page per call, always closed

    Usage:
        async with ExecutionCoordinator(config) as coordinator:
            coordinator.prepare_test_files(files)
            await coordinator.execute_in_browser("src/app.test.ts")
    """

    def __init__(
        self,
        config: RunnerConfig | None = None,
        pool: EnginePool | None = None,
        launcher: BrowserLauncher | None = None,
    ) -> None:
        """
        Initialize the coordinator.

        Args:
            config: Runner configuration (loads from env if not provided)
            pool: Engine pool to use (one is created and owned if not provided)
            launcher: Engine launcher for a pool created here
        """
        self._config = config or load_runner_config()
        self._pool = pool or EnginePool(self._config, launcher)

        self._state = CoordinatorState.UNINITIALIZED
        self._bridges: dict[str, ModuleBridge] = {}
        self._channels: dict[str, TransportChannel] = {}
        self._initialized: list[str] = []
        self._assignment: dict[str, str] = {}
        self._current_browser: str | None = None

        self._log = logger.bind(component="execution_coordinator")

    @property
    def config(self) -> RunnerConfig:
        return self._config

    @property
    def pool(self) -> EnginePool:
        return self._pool

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def initialized_browsers(self) -> list[str]:
        """Browsers that initialized successfully, in configuration order."""
        return list(self._initialized)

    @property
    def assignment(self) -> dict[str, str]:
        """Copy of the file -> browser assignment."""
        return dict(self._assignment)

    def get_current_browser(self) -> str:
        """Browser used for actions that are not scoped to a file."""
        if self._current_browser is None:
            raise InvalidStateError("No browser has been initialized")
        return self._current_browser

    def transport_for(self, browser: str) -> TransportChannel:
        """Transport channel carrying events for an initialized browser."""
        try:
            return self._channels[browser]
        except KeyError:
            raise NoRunnerForBrowser(browser) from None

    async def initialize(self) -> list[str]:
        """
        Start a session and bridge for every active browser.

        Returns:
            Identifiers that initialized successfully

        Raises:
            InvalidStateError: If not in the uninitialized state
            NoBrowsersAvailable: If no browser could be initialized
        """
        if self._state != CoordinatorState.UNINITIALIZED:
            raise InvalidStateError(f"Cannot initialize from state {self._state}")

        self._state = CoordinatorState.INITIALIZING
        names = [spec.name for spec in self._config.active_browsers()]
        self._log.info("Initializing browsers", browsers=names)

        outcomes = await run_all_best_effort(
            {name: (lambda n=name: self._setup_browser(n)) for name in names},
            label="Browser initialization",
        )

        for outcome in outcomes:
            if outcome.ok and outcome.value is not None:
                bridge, channel = outcome.value
                self._bridges[outcome.key] = bridge
                self._channels[outcome.key] = channel
                self._initialized.append(outcome.key)
                self._log.info("Browser initialized", browser=outcome.key)

        if not self._initialized:
            self._state = CoordinatorState.UNINITIALIZED
            raise NoBrowsersAvailable(names)

        self._current_browser = self._initialized[0]
        self._state = CoordinatorState.READY
        self._log.info(
            "Browsers ready",
            initialized=self._initialized,
            failed=[n for n in names if n not in self._initialized],
            current=self._current_browser,
        )
        return self.initialized_browsers

    async def _setup_browser(self, browser: str) -> tuple[ModuleBridge, TransportChannel]:
        session = await self._pool.get_session(browser)
        channel = TransportChannel(
            SessionProxy(self._pool, browser, self._config.dev_server_url)
        )
        bridge = ModuleBridge(browser, session.page, self._config)
        await bridge.connect(BridgeHandlers(on_message=channel.deliver))
        return bridge, channel

    def prepare_test_files(self, files: Iterable[Any]) -> dict[str, list[str]]:
        """
        Assign test files to initialized browsers by round-robin.

        Args:
            files: Paths or collected-file objects exposing ``filepath``

        Returns:
            Browser -> assigned file paths, for reporting
        """
        self._require(CoordinatorState.READY, CoordinatorState.RUNNING)

        browsers = self._initialized
        assignment: dict[str, str] = {}
        distribution: dict[str, list[str]] = {name: [] for name in browsers}
        for index, item in enumerate(files):
            filepath = file_path_of(item)
            browser = browsers[index % len(browsers)]
            assignment[filepath] = browser
            distribution[browser].append(filepath)

        self._assignment = assignment
        self._log.info(
            "Test file distribution",
            distribution={k: len(v) for k, v in distribution.items()},
        )
        return distribution

    def get_browser_for_file(self, filepath: str) -> str:
        """
        Resolve which browser runs a file.

        Filename markers (``app.firefox.test.ts``) win, then the assignment,
        then the current browser.
        """
        browser = browser_marker(filepath, self._config.browser_names)
        if browser is not None:
            return browser
        browser = self._assignment.get(filepath)
        if browser is not None:
            return browser
        return self.get_current_browser()

    def get_browser_for_test(self, test: Any) -> str:
        """Resolve which browser runs a test, from the file it belongs to."""
        task_file = getattr(test, "file", None)
        filepath = getattr(task_file, "filepath", None) or getattr(test, "filepath", None)
        return self.get_browser_for_file(os.fspath(filepath) if filepath else "")

    async def execute_in_browser(
        self,
        filepath: str,
        source: Any = None,
    ) -> ModuleImportResult:
        """
        Import a test file inside the browser responsible for it.

        Raises:
            NoRunnerForBrowser: If the resolved browser has no bridge
            InvokeFailed: If the import fails in the page
        """
        self._require(CoordinatorState.READY, CoordinatorState.RUNNING)
        self._state = CoordinatorState.RUNNING

        browser = self.get_browser_for_file(filepath)
        bridge = self._bridges.get(browser)
        if bridge is None:
            raise NoRunnerForBrowser(browser)

        try:
            return await bridge.import_module(filepath)
        except Exception as e:
            self._log.error(
                "Execution failed",
                browser=browser,
                filepath=filepath,
                error=str(e),
            )
            raise

    @contextlib.asynccontextmanager
    async def _action_page(self, browser: str | None) -> AsyncIterator[Page]:
        """Open a throwaway page in the browser's context and always close it."""
        self._require(CoordinatorState.READY, CoordinatorState.RUNNING)
        name = browser or self.get_current_browser()
        if name not in self._bridges:
            raise NoRunnerForBrowser(name)

        session = await self._pool.get_session(name)
        page = await session.context.new_page()
        try:
            if self._config.navigate_action_pages:
                await page.goto(session.origin)
            yield page
        finally:
            try:
                await page.close()
            except Exception as e:
                self._log.warning("Error closing action page", browser=name, error=str(e))

    async def take_screenshot(
        self,
        selector: str | None = None,
        browser: str | None = None,
    ) -> str:
        """Capture the page (or one element) as a base64-encoded PNG."""
        async with self._action_page(browser) as page:
            if selector:
                data = await page.locator(selector).screenshot()
            else:
                data = await page.screenshot(full_page=True)
        return base64.b64encode(data).decode("ascii")

    async def evaluate_in_browser(
        self,
        expression: str,
        arg: Any = None,
        browser: str | None = None,
    ) -> Any:
        """Evaluate a JavaScript expression or function in a fresh page."""
        async with self._action_page(browser) as page:
            return await page.evaluate(expression, arg)

    async def wait_for_element(
        self,
        selector: str,
        timeout_ms: int | None = None,
        browser: str | None = None,
    ) -> None:
        """
        Wait for a selector to appear in a fresh page.

        Raises:
            ValueError: If timeout_ms is not positive
            ElementNotFound: If the selector does not appear in time
        """
        timeout = timeout_ms if timeout_ms is not None else self._config.action_timeout_ms
        if timeout <= 0:
            raise ValueError(f"timeout_ms must be positive, got {timeout}")
        async with self._action_page(browser) as page:
            try:
                # the outer bound only guards against a driver that ignores its own timeout
                await asyncio.wait_for(
                    page.wait_for_selector(selector, timeout=timeout),
                    timeout / 1000 + self._config.bridge_timeout_seconds,
                )
            except (PlaywrightTimeoutError, TimeoutError):
                raise ElementNotFound(selector, timeout) from None

    async def cleanup(self) -> None:
        """
        Settle queued sends, close every bridge, then close the engine pool.

        The pool refuses new sessions afterwards, so late sends on a channel
        fail instead of relaunching a browser. Safe to call repeatedly.
        """
        if self._state == CoordinatorState.CLOSED:
            return

        self._state = CoordinatorState.CLEANING_UP
        self._log.info("Cleaning up browser resources")

        await asyncio.gather(*(channel.flush() for channel in self._channels.values()))
        await run_all_best_effort(
            {name: bridge.close for name, bridge in self._bridges.items()},
            label="Bridge close",
        )
        await self._pool.close()

        self._bridges.clear()
        self._channels.clear()
        self._initialized.clear()
        self._assignment.clear()
        self._current_browser = None
        self._state = CoordinatorState.CLOSED
        self._log.info("Browser resources released")

    def _require(self, *states: CoordinatorState) -> None:
        if self._state not in states:
            raise InvalidStateError(
                f"Operation requires state {' or '.join(states)}, current state is {self._state}"
            )

    async def __aenter__(self) -> ExecutionCoordinator:
        """Async context manager entry."""
        try:
            await self.initialize()
        except BaseException:
            await self._pool.cleanup()
            raise
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Async context manager exit."""
        await self.cleanup()
