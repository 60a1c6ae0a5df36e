"""
Bidirectional channel between the dev server and one browser page.

Satisfies the dev-server channel contract:
- on/off listener registration keyed by event name
- fire-and-forget send into the page
- request/response invoke through the page
- inbound delivery of custom events coming back from the page
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Callable

import structlog

from pagerunner.transport.messages import CustomEvent, parse_inbound

if TYPE_CHECKING:
    from pagerunner.session.proxy import SessionProxy

logger = structlog.get_logger(__name__)

Listener = Callable[[Any], Any]


class TransportChannel:
    """
    Event pub/sub plus send/invoke for one logical connection.

    Usage:
        channel = TransportChannel(SessionProxy(pool, "chrome"))
        channel.on("manual-test:result", print)
        channel.send({"type": "full-reload"})
        result = await channel.invoke({"op": "ping"})
    """

    def __init__(self, proxy: SessionProxy) -> None:
        self._proxy = proxy
        # dict keys give ordered set semantics
        self._listeners: dict[str, dict[Listener, None]] = {}
        self._pending_sends: set[asyncio.Task[None]] = set()
        self._log = logger.bind(component="transport", browser=proxy.browser)

    @property
    def browser(self) -> str:
        return self._proxy.browser

    def on(self, event: str, listener: Listener) -> None:
        """Register a listener; registering the same listener twice is a no-op."""
        self._listeners.setdefault(event, {})[listener] = None

    def off(self, event: str, listener: Listener) -> None:
        """Unregister a listener if present."""
        listeners = self._listeners.get(event)
        if listeners is None:
            return
        listeners.pop(listener, None)
        if not listeners:
            del self._listeners[event]

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def deliver(self, raw: Any) -> int:
        """
        Route an inbound message from the page to its listeners.

        Listeners run synchronously in registration order. A listener that
        raises is logged and does not prevent the remaining listeners from
        running. Messages that are not custom events are ignored.

        Returns:
            Number of listeners invoked
        """
        message = parse_inbound(raw)
        if not isinstance(message, CustomEvent):
            self._log.debug("Ignoring inbound message", type=message.type)
            return 0

        listeners = list(self._listeners.get(message.event, ()))
        for listener in listeners:
            try:
                listener(message.data)
            except Exception as e:
                self._log.warning(
                    "Listener raised",
                    event=message.event,
                    error=str(e),
                )
        return len(listeners)

    def send(self, payload: Any) -> None:
        """
        Forward a payload into the page without waiting for it.

        Delivery failures are logged, never raised.
        """
        task = asyncio.get_running_loop().create_task(self._send(payload))
        self._pending_sends.add(task)
        task.add_done_callback(self._pending_sends.discard)

    async def _send(self, payload: Any) -> None:
        try:
            await self._proxy.send_message(payload)
        except Exception as e:
            self._log.warning("Failed to send message to browser", error=str(e))

    async def flush(self) -> None:
        """Wait for every in-flight send to settle."""
        while self._pending_sends:
            await asyncio.gather(*list(self._pending_sends), return_exceptions=True)

    async def invoke(self, payload: Any) -> Any:
        """
        Forward a request through the page and return its result.

        Raises:
            PageRunnerError: Whatever the session layer raised
        """
        try:
            return await self._proxy.invoke_module(payload)
        except Exception as e:
            self._log.error("Module invocation failed", error=str(e))
            raise

    def __repr__(self) -> str:
        return f"TransportChannel(browser={self.browser!r})"
