"""
Engine pool owning browser processes, isolated contexts and primary pages.

Provides one session per browser identifier with:
- Lazy launch on first use and reuse of engines of the same family
- A pending-task table so racing first calls share one creation
- Bounded waiting on launch and navigation
- Best-effort teardown of every engine on cleanup
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from pagerunner.best_effort import Outcome, run_all_best_effort
from pagerunner.errors import (
    EngineFailure,
    InvokeFailed,
    InvokeTimeout,
    PageRunnerError,
    SessionUnavailable,
)

if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Page, Playwright

    from pagerunner.config import BrowserSpec, RunnerConfig

logger = structlog.get_logger(__name__)

DISPATCH_MESSAGE_JS = """
(payload) => {
  window.dispatchEvent(new MessageEvent('message', { data: payload }))
}
"""

FETCH_INVOKE_JS = """
async ({ path, payload }) => {
  const response = await fetch(path, {
    method: 'POST',
    headers: { 'Content-Type': 'application/json' },
    body: JSON.stringify(payload),
  })
  if (!response.ok) {
    return { ok: false, status: response.status, statusText: response.statusText }
  }
  return { ok: true, status: response.status, body: await response.json() }
}
"""


class BrowserLauncher(Protocol):
    """Launches engine processes for browser specs."""

    async def launch(self, spec: BrowserSpec) -> Browser:
        """Launch a new engine for the spec."""
        ...

    async def close(self) -> None:
        """Release any driver resources held by the launcher."""
        ...


class PlaywrightLauncher:
    """Launches engines through one shared Playwright driver instance."""

    def __init__(self) -> None:
        self._playwright: Playwright | None = None
        self._lock = asyncio.Lock()

    async def _driver(self) -> Playwright:
        async with self._lock:
            if self._playwright is None:
                logger.debug("Starting Playwright driver")
                self._playwright = await async_playwright().start()
            return self._playwright

    async def launch(self, spec: BrowserSpec) -> Browser:
        driver = await self._driver()
        browser_type = getattr(driver, spec.engine.value)

        options: dict[str, Any] = {"headless": spec.headless}
        if spec.args:
            options["args"] = list(spec.args)
        if spec.channel:
            options["channel"] = spec.channel

        return await browser_type.launch(**options)

    async def close(self) -> None:
        async with self._lock:
            if self._playwright is not None:
                driver, self._playwright = self._playwright, None
                await driver.stop()


@dataclass
class Session:
    """
    Live browser resources for one browser identifier.

    Owned by the EnginePool; other components refer to it by identifier.
    """

    browser: str
    """Browser identifier this session belongs to."""

    engine: Browser
    """The launched engine (possibly shared with other identifiers)."""

    context: BrowserContext
    """Isolated context created for this identifier."""

    page: Page
    """Primary page, navigated to the dev-server origin."""

    origin: str
    """URL the primary page was navigated to."""

    created_at: float = field(default_factory=time.time)
    """Unix timestamp when the session was created."""


class EnginePool:
    """
    Single source of truth for live browser resources in a run.

    Features:
    - Get-or-create sessions keyed by browser identifier
    - Concurrent first calls for one identifier share a single creation
    - Engines shared between identifiers of the same family
    - Collect-and-continue cleanup

    Usage:
        async with EnginePool(config) as pool:
            session = await pool.get_session("chrome")
            result = await pool.invoke_module("chrome", {"op": "ping"})
    """

    def __init__(
        self,
        config: RunnerConfig,
        launcher: BrowserLauncher | None = None,
    ) -> None:
        """
        Initialize engine pool.

        Args:
            config: Runner configuration
            launcher: Engine launcher (Playwright when not provided)
        """
        self._config = config
        self._launcher = launcher or PlaywrightLauncher()

        self._engines: dict[tuple[Any, ...], Browser] = {}
        self._engine_owners: dict[tuple[Any, ...], list[str]] = {}
        self._engine_locks: dict[tuple[Any, ...], asyncio.Lock] = {}
        self._sessions: dict[str, Session] = {}
        self._pending: dict[str, asyncio.Task[Session]] = {}
        self._closed = False

        self._log = logger.bind(component="engine_pool")

        # Statistics
        self._stats = {
            "engines_launched": 0,
            "sessions_created": 0,
            "session_failures": 0,
            "messages_sent": 0,
            "invokes": 0,
        }

    @property
    def size(self) -> int:
        """Number of live sessions."""
        return len(self._sessions)

    @property
    def engine_count(self) -> int:
        """Number of launched engines."""
        return len(self._engines)

    @property
    def browsers(self) -> list[str]:
        """Identifiers with a live session."""
        return list(self._sessions)

    @property
    def statistics(self) -> dict[str, Any]:
        """Get pool statistics."""
        return {
            **self._stats,
            "sessions": self.size,
            "engines": self.engine_count,
            "pending": len(self._pending),
            "closed": self._closed,
        }

    @property
    def closed(self) -> bool:
        """Whether the pool refuses new sessions."""
        return self._closed

    def has_session(self, browser: str) -> bool:
        """Check whether a session exists for the identifier."""
        return browser in self._sessions

    async def get_session(self, browser: str, origin: str | None = None) -> Session:
        """
        Get the session for a browser identifier, creating it on first use.

        Args:
            browser: Browser identifier
            origin: URL for the primary page (config dev-server URL if not given)

        Returns:
            The cached or newly created session

        Raises:
            SessionUnavailable: If the identifier is not configured or the pool is closed
            EngineFailure: If launching or navigating fails or times out
        """
        if self._closed:
            raise SessionUnavailable(browser, "engine pool is closed")

        session = self._sessions.get(browser)
        if session is not None:
            return session

        pending = self._pending.get(browser)
        if pending is None:
            try:
                spec = self._config.spec_for(browser)
            except KeyError:
                raise SessionUnavailable(browser, "browser is not configured") from None

            pending = asyncio.create_task(
                self._create_session(spec, origin or self._config.dev_server_url),
                name=f"pagerunner-session-{browser}",
            )
            self._pending[browser] = pending
            pending.add_done_callback(lambda task: self._forget_pending(browser, task))
        else:
            self._log.debug("Awaiting in-flight session creation", browser=browser)

        return await asyncio.shield(pending)

    def _forget_pending(self, browser: str, task: asyncio.Task[Session]) -> None:
        if self._pending.get(browser) is task:
            del self._pending[browser]

    async def _create_session(self, spec: BrowserSpec, origin: str) -> Session:
        """Create, cache and return a session, bounded by the session timeout."""
        timeout = self._config.session_timeout_seconds
        try:
            session = await asyncio.wait_for(self._open_session(spec, origin), timeout)
        except TimeoutError:
            self._stats["session_failures"] += 1
            raise EngineFailure(
                spec.name, f"session creation timed out after {timeout}s"
            ) from None
        except PageRunnerError:
            self._stats["session_failures"] += 1
            raise
        except Exception as e:
            self._stats["session_failures"] += 1
            raise EngineFailure(spec.name, str(e) or type(e).__name__) from e

        self._sessions[spec.name] = session
        self._stats["sessions_created"] += 1
        self._log.info("Browser session created", browser=spec.name, origin=origin)
        return session

    async def _open_session(self, spec: BrowserSpec, origin: str) -> Session:
        engine = await self._get_engine(spec)
        context = await engine.new_context()
        try:
            page = await context.new_page()
            await page.goto(origin)
        except BaseException:
            try:
                await context.close()
            except Exception as e:
                self._log.debug("Error closing context", browser=spec.name, error=str(e))
            raise

        return Session(
            browser=spec.name,
            engine=engine,
            context=context,
            page=page,
            origin=origin,
        )

    async def _get_engine(self, spec: BrowserSpec) -> Browser:
        """Launch an engine for the spec's family or reuse the running one."""
        key = spec.family_key
        lock = self._engine_locks.setdefault(key, asyncio.Lock())

        async with lock:
            engine = self._engines.get(key)
            if engine is None:
                self._log.info(
                    "Launching browser engine",
                    browser=spec.name,
                    engine=spec.engine.value,
                    headless=spec.headless,
                )
                engine = await self._launcher.launch(spec)
                self._engines[key] = engine
                self._engine_owners[key] = []
                self._stats["engines_launched"] += 1
            else:
                self._log.debug("Reusing browser engine", browser=spec.name)

            if spec.name not in self._engine_owners[key]:
                self._engine_owners[key].append(spec.name)
            return engine

    async def _session_for(self, browser: str, origin: str | None = None) -> Session:
        try:
            return await self.get_session(browser, origin)
        except SessionUnavailable:
            raise
        except PageRunnerError as e:
            raise SessionUnavailable(browser, str(e)) from e

    async def send_message(
        self, browser: str, payload: Any, origin: str | None = None
    ) -> None:
        """
        Deliver a payload into the primary page as an incoming message event.

        Raises:
            SessionUnavailable: If no session exists and one cannot be created
        """
        session = await self._session_for(browser, origin)
        await session.page.evaluate(DISPATCH_MESSAGE_JS, payload)
        self._stats["messages_sent"] += 1

    async def invoke_module(
        self, browser: str, payload: Any, origin: str | None = None
    ) -> Any:
        """
        POST the payload to the invoke endpoint from inside the primary page.

        Returns:
            The parsed JSON response body

        Raises:
            SessionUnavailable: If no session exists and one cannot be created
            InvokeFailed: If the response is not a success status
            InvokeTimeout: If the page does not answer in time
        """
        session = await self._session_for(browser, origin)
        self._stats["invokes"] += 1

        timeout = self._config.bridge_timeout_seconds
        try:
            response = await asyncio.wait_for(
                session.page.evaluate(
                    FETCH_INVOKE_JS,
                    {"path": self._config.invoke_path, "payload": payload},
                ),
                timeout,
            )
        except TimeoutError:
            raise InvokeTimeout(f"invoke in {browser}", timeout) from None
        except PlaywrightError as e:
            raise InvokeFailed(e.message) from e

        if not response.get("ok"):
            status = response.get("status")
            status_text = response.get("statusText") or f"HTTP {status}"
            self._log.warning(
                "Invoke request failed",
                browser=browser,
                status=status,
                status_text=status_text,
            )
            raise InvokeFailed(f"Failed to invoke module: {status_text}", status=status)

        return response.get("body")

    async def cleanup(self) -> list[Outcome[None]]:
        """
        Close every engine and forget all sessions.

        Safe to call repeatedly and with no sessions. A failure closing one
        engine does not stop the others from being closed. Sessions created
        while cleanup is running are left for the next cleanup.

        Returns:
            One outcome per engine that was closed
        """
        pending, self._pending = self._pending, {}
        engines, self._engines = self._engines, {}
        owners, self._engine_owners = self._engine_owners, {}
        self._engine_locks = {}
        self._sessions = {}

        for task in pending.values():
            task.cancel()
        if pending:
            await asyncio.gather(*pending.values(), return_exceptions=True)

        named = {
            "+".join(owners.get(key) or ["unused"]): engine
            for key, engine in engines.items()
        }
        if named:
            self._log.info("Closing browser engines", engines=list(named))

        outcomes = await run_all_best_effort(
            {name: engine.close for name, engine in named.items()},
            label="Engine close",
        )

        if not self._engines and not self._pending:
            try:
                await self._launcher.close()
            except Exception as e:
                self._log.warning("Error stopping browser driver", error=str(e))

        return outcomes

    async def close(self) -> list[Outcome[None]]:
        """Refuse new sessions, then clean up. Undone only by ``reopen``."""
        self._closed = True
        return await self.cleanup()

    def reopen(self) -> None:
        """Accept new sessions again after ``close``."""
        self._closed = False

    async def __aenter__(self) -> EnginePool:
        """Async context manager entry."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Async context manager exit."""
        await self.cleanup()
