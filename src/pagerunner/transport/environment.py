"""
Dev-server environment factory for browser-backed module execution.

Wraps a TransportChannel as the environment's hot transport and reports
results published by in-page harnesses on the ``manual-test:result`` event.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping

import structlog

from pagerunner.session.proxy import SessionProxy
from pagerunner.transport.channel import TransportChannel

if TYPE_CHECKING:
    from pagerunner.config import RunnerConfig
    from pagerunner.session.engine_pool import EnginePool

logger = structlog.get_logger(__name__)

RESULT_EVENT = "manual-test:result"
RESOLVE_CONDITIONS: tuple[str, ...] = ("browser", "module", "import")


@dataclass(eq=False)
class ResultReporter:
    """Logs and counts results reported from the page."""

    browser: str
    passed: int = 0
    failed: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)

    def __call__(self, result: Any) -> None:
        if not isinstance(result, dict):
            logger.warning("Malformed test result", browser=self.browser, result=result)
            return

        self.results.append(result)
        name = result.get("name", "<unnamed>")
        if result.get("pass"):
            self.passed += 1
            logger.info(f"✓ {name}", browser=self.browser)
        else:
            self.failed += 1
            logger.error(
                f"✗ {name}",
                browser=self.browser,
                error=result.get("error"),
                stack=result.get("stack"),
            )


@dataclass
class DevEnvironment:
    """A dev-server environment whose hot transport runs through a browser page."""

    name: str
    config: RunnerConfig
    transport: TransportChannel
    reporter: ResultReporter
    hot: bool = True
    resolve_conditions: tuple[str, ...] = RESOLVE_CONDITIONS
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def browser(self) -> str:
        return self.transport.browser


def create_browser_dev_environment(
    name: str,
    config: RunnerConfig,
    context: Mapping[str, Any] | None,
    browser: str,
    pool: EnginePool,
) -> DevEnvironment:
    """
    Build a dev environment whose transport talks to ``browser``.

    Args:
        name: Environment name
        config: Runner configuration
        context: Environment context; its ``options`` are merged in
        browser: Browser identifier backing the transport
        pool: Engine pool owning the browser session

    Returns:
        The environment with a result reporter already listening
    """
    channel = TransportChannel(SessionProxy(pool, browser, config.dev_server_url))
    reporter = ResultReporter(browser=browser)
    channel.on(RESULT_EVENT, reporter)

    options: dict[str, Any] = {
        "resolve": {
            "conditions": list(RESOLVE_CONDITIONS),
            "browser_field": True,
        },
    }
    options.update(dict((context or {}).get("options") or {}))

    logger.debug("Created browser dev environment", name=name, browser=browser)
    return DevEnvironment(
        name=name,
        config=config,
        transport=channel,
        reporter=reporter,
        options=options,
    )
