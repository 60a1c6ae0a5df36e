"""
Module-execution bridge between the host process and a browser page.

Turns a page into an RPC endpoint using three primitives:
- connect: one-time handshake exposing a host callback to the page
- send: one-way host -> page delivery
- invoke: host -> page -> response through the in-page invoke endpoint

On top of those, import_module resolves a test file through the dev server
and imports it inside the page.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar
from urllib.parse import urljoin

import structlog
from playwright.async_api import Error as PlaywrightError

from pagerunner.errors import InvalidStateError, InvokeFailed, InvokeTimeout

if TYPE_CHECKING:
    from playwright.async_api import Page

    from pagerunner.config import RunnerConfig

logger = structlog.get_logger(__name__)

T = TypeVar("T")

HOST_CALLBACK = "__pagerunner_rpc_send"

INSTALL_COMMUNICATION_JS = f"""
window.__testCommunication = window.__testCommunication || {{
  handlers: {{}},
  send: (data) => window.{HOST_CALLBACK}(data),
}}
"""

REMOVE_COMMUNICATION_JS = "delete window.__testCommunication"

SEND_JS = "(payload) => window.__testCommunication?.send(payload)"

INVOKE_JS = """
async ({ path, payload }) => {
  try {
    const response = await fetch(path, {
      method: 'POST',
      headers: { 'Content-Type': 'application/json' },
      body: JSON.stringify(payload),
    })
    return { ok: true, body: await response.json() }
  } catch (error) {
    return { ok: false, error: String((error && error.message) || error) }
  }
}
"""

IMPORT_JS = """
async (url) => {
  try {
    const mod = await import(url)
    return { ok: true, exports: Object.keys(mod) }
  } catch (error) {
    return { ok: false, error: String((error && error.message) || error) }
  }
}
"""


@dataclass(frozen=True, slots=True)
class BridgeHandlers:
    """Host-side handlers for traffic coming from the page."""

    on_message: Callable[[Any], Any]


@dataclass
class ModuleImportResult:
    """Outcome of importing one module inside a page."""

    filepath: str
    url: str
    browser: str
    exports: list[str] = field(default_factory=list)


class ModuleBridge:
    """
    RPC adapter over one page.

    The page itself is owned by the engine pool; the bridge never closes it.

    Usage:
        bridge = ModuleBridge("chrome", page, config)
        await bridge.connect(BridgeHandlers(on_message=channel.deliver))
        result = await bridge.import_module("src/app.test.ts")
        await bridge.close()
    """

    def __init__(
        self,
        browser: str,
        page: Page,
        config: RunnerConfig,
        timeout: float | None = None,
    ) -> None:
        """
        Initialize the bridge.

        Args:
            browser: Browser identifier the page belongs to
            page: Page to drive
            config: Runner configuration (invoke path, origin, timeout)
            timeout: Seconds to wait on any single page round trip
        """
        self._browser = browser
        self._page = page
        self._origin = config.dev_server_url
        self._invoke_path = config.invoke_path
        self._timeout = timeout or config.bridge_timeout_seconds

        self._handlers: BridgeHandlers | None = None
        self._connected = False
        self._closed = False

        self._log = logger.bind(component="module_bridge", browser=browser)

    @property
    def browser(self) -> str:
        return self._browser

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def is_connected(self) -> bool:
        return self._connected and not self._closed

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def _bounded(self, awaitable: Awaitable[T], operation: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, self._timeout)
        except TimeoutError:
            raise InvokeTimeout(f"{operation} in {self._browser}", self._timeout) from None

    def _ensure_open(self) -> None:
        if self._closed:
            raise InvokeFailed("bridge closed")

    def _dispatch(self, data: Any) -> Any:
        """Host callback exposed to the page; inert once the bridge is closed."""
        handlers = self._handlers
        if handlers is None:
            return None
        return handlers.on_message(data)

    async def connect(self, handlers: BridgeHandlers) -> None:
        """
        Establish the page -> host direction.

        Installs the page-side communication object and the test context
        marker, and routes the exposed host callback to ``handlers``.

        Raises:
            InvalidStateError: If already connected
            InvokeTimeout: If the page does not respond in time
        """
        self._ensure_open()
        if self._connected:
            raise InvalidStateError(f"Bridge for {self._browser} is already connected")

        self._handlers = handlers
        context_js = (
            "window.__testContext = "
            f"{{ browserName: {json.dumps(self._browser)}, startTime: Date.now() }}"
        )

        try:
            await self._bounded(
                self._page.expose_function(HOST_CALLBACK, self._dispatch), "connect"
            )
            await self._bounded(
                self._page.add_init_script(script=INSTALL_COMMUNICATION_JS + context_js),
                "connect",
            )
            await self._bounded(self._page.evaluate(INSTALL_COMMUNICATION_JS), "connect")
            await self._bounded(self._page.evaluate(context_js), "connect")
        except PlaywrightError as e:
            self._handlers = None
            raise InvokeFailed(f"connect failed: {e.message}") from e
        except BaseException:
            self._handlers = None
            raise

        self._connected = True
        self._log.debug("Bridge connected")

    async def send(self, data: Any) -> None:
        """Deliver data to the page-side communication object."""
        self._ensure_open()
        try:
            await self._bounded(self._page.evaluate(SEND_JS, data), "send")
        except PlaywrightError as e:
            raise InvokeFailed(e.message) from e

    async def invoke(self, data: Any) -> Any:
        """
        POST data to the invoke endpoint from inside the page.

        Returns:
            The parsed JSON response body

        Raises:
            InvokeFailed: If the in-page request throws
            InvokeTimeout: If the page does not answer in time
        """
        self._ensure_open()
        try:
            response = await self._bounded(
                self._page.evaluate(
                    INVOKE_JS, {"path": self._invoke_path, "payload": data}
                ),
                "invoke",
            )
        except PlaywrightError as e:
            raise InvokeFailed(e.message) from e

        if not response.get("ok"):
            raise InvokeFailed(response.get("error") or "unknown error")
        return response.get("body")

    async def import_module(self, filepath: str) -> ModuleImportResult:
        """
        Resolve a module through the dev server and import it in the page.

        Connects on first use if no handshake has been made yet.

        Raises:
            InvokeFailed: If resolution or the in-page import fails
        """
        self._ensure_open()
        if not self._connected:
            await self.connect(BridgeHandlers(on_message=self._log_unrouted))

        request = {
            "type": "custom",
            "event": "vite:invoke",
            "data": {
                "name": "fetchModule",
                "id": f"send:{uuid.uuid4()}",
                "data": [filepath],
            },
        }
        response = await self.invoke(request)
        url = self._module_url(response, filepath)

        try:
            result = await self._bounded(self._page.evaluate(IMPORT_JS, url), "import")
        except PlaywrightError as e:
            raise InvokeFailed(e.message) from e

        if not result.get("ok"):
            raise InvokeFailed(f"import of {filepath} failed: {result.get('error')}")

        self._log.debug("Module imported", filepath=filepath, url=url)
        return ModuleImportResult(
            filepath=filepath,
            url=url,
            browser=self._browser,
            exports=list(result.get("exports") or []),
        )

    def _module_url(self, response: Any, filepath: str) -> str:
        """Pick the module URL out of a fetchModule response."""
        if isinstance(response, dict):
            error = response.get("error")
            if error:
                message = error.get("message") if isinstance(error, dict) else error
                raise InvokeFailed(str(message))

            result = response.get("result", response)
            if isinstance(result, dict) and result.get("url"):
                return urljoin(self._origin, result["url"])

        if filepath.startswith("/"):
            return urljoin(self._origin, f"/@fs{filepath}")
        return urljoin(self._origin, filepath.removeprefix("./"))

    def _log_unrouted(self, data: Any) -> None:
        self._log.debug("Unrouted message from page", data=data)

    async def close(self) -> None:
        """Detach from the page. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._handlers = None

        if self._connected:
            try:
                await asyncio.wait_for(
                    self._page.evaluate(REMOVE_COMMUNICATION_JS), self._timeout
                )
            except (PlaywrightError, TimeoutError) as e:
                self._log.debug("Could not remove page communication object", error=str(e))

        self._connected = False
        self._log.debug("Bridge closed")
