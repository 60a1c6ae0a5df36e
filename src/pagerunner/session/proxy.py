"""Per-browser facade over the engine pool."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pagerunner.session.engine_pool import EnginePool, Session


class SessionProxy:
    """
    Binds engine pool calls to one browser identifier.

    Upper layers hold a proxy instead of passing the identifier around.
    """

    def __init__(self, pool: EnginePool, browser: str, origin: str | None = None) -> None:
        self._pool = pool
        self._browser = browser
        self._origin = origin

    @property
    def browser(self) -> str:
        return self._browser

    async def session(self) -> Session:
        """Get or create the session for this browser."""
        return await self._pool.get_session(self._browser, self._origin)

    async def send_message(self, payload: Any) -> None:
        await self._pool.send_message(self._browser, payload, self._origin)

    async def invoke_module(self, payload: Any) -> Any:
        return await self._pool.invoke_module(self._browser, payload, self._origin)

    def __repr__(self) -> str:
        return f"SessionProxy(browser={self._browser!r})"
