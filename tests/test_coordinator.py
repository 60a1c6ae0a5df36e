"""Tests for the execution coordinator."""

import base64
import time
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from playwright.async_api import Error as PlaywrightError

from pagerunner.config import RunnerConfig
from pagerunner.errors import (
    ElementNotFound,
    InvalidStateError,
    NoBrowsersAvailable,
    NoRunnerForBrowser,
)
from pagerunner.execution import CoordinatorState, ExecutionCoordinator
from pagerunner.execution.bridge import HOST_CALLBACK
from pagerunner.session.engine_pool import DISPATCH_MESSAGE_JS
from pagerunner.transport import custom_event


@pytest.fixture
def coordinator(config, launcher):
    return ExecutionCoordinator(config, launcher=launcher)


class TestInitialize:
    """Test best-effort browser initialization."""

    @pytest.mark.asyncio
    async def test_initializes_all_browsers(self, coordinator):
        initialized = await coordinator.initialize()

        assert initialized == ["chrome", "firefox"]
        assert coordinator.state == CoordinatorState.READY
        assert coordinator.get_current_browser() == "chrome"

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_working_browsers(self, config, make_launcher):
        """Test a browser that fails to launch is skipped."""
        coordinator = ExecutionCoordinator(config, launcher=make_launcher(failing={"firefox"}))

        initialized = await coordinator.initialize()

        assert initialized == ["chrome"]
        assert coordinator.get_current_browser() == "chrome"
        result = await coordinator.execute_in_browser("src/x.test.ts")
        assert result.browser == "chrome"

    @pytest.mark.asyncio
    async def test_first_working_browser_becomes_current(self, config, make_launcher):
        coordinator = ExecutionCoordinator(config, launcher=make_launcher(failing={"chrome"}))

        await coordinator.initialize()

        assert coordinator.get_current_browser() == "firefox"

    @pytest.mark.asyncio
    async def test_all_failing_raises(self, config, make_launcher):
        coordinator = ExecutionCoordinator(
            config, launcher=make_launcher(failing={"chrome", "firefox"})
        )

        with pytest.raises(NoBrowsersAvailable) as exc_info:
            await coordinator.initialize()

        assert exc_info.value.attempted == ["chrome", "firefox"]
        assert "chrome" in str(exc_info.value)
        assert "firefox" in str(exc_info.value)
        assert coordinator.state == CoordinatorState.UNINITIALIZED
        with pytest.raises(InvalidStateError):
            coordinator.get_current_browser()

    @pytest.mark.asyncio
    async def test_selected_browser_only(self, launcher):
        config = RunnerConfig(browsers=("chrome", "firefox"), selected_browser="firefox")
        coordinator = ExecutionCoordinator(config, launcher=launcher)

        assert await coordinator.initialize() == ["firefox"]
        assert launcher.launched == ["firefox"]

    @pytest.mark.asyncio
    async def test_initialize_twice_rejected(self, coordinator):
        await coordinator.initialize()

        with pytest.raises(InvalidStateError):
            await coordinator.initialize()

    @pytest.mark.asyncio
    async def test_page_events_reach_transport(self, coordinator, launcher):
        await coordinator.initialize()
        received = []
        coordinator.transport_for("chrome").on("ready", received.append)

        primary = launcher.browser_for("chrome").contexts[0].pages[0]
        primary.exposed[HOST_CALLBACK](custom_event("ready", {"ok": True}))

        assert received == [{"ok": True}]

    @pytest.mark.asyncio
    async def test_transport_for_uninitialized_browser(self, config, make_launcher):
        coordinator = ExecutionCoordinator(config, launcher=make_launcher(failing={"firefox"}))
        await coordinator.initialize()

        with pytest.raises(NoRunnerForBrowser):
            coordinator.transport_for("firefox")


class TestAssignment:
    """Test distribution of test files over browsers."""

    @pytest.mark.asyncio
    async def test_round_robin(self, coordinator):
        await coordinator.initialize()

        distribution = coordinator.prepare_test_files(["f0", "f1", "f2", "f3"])

        assert coordinator.assignment == {
            "f0": "chrome",
            "f1": "firefox",
            "f2": "chrome",
            "f3": "firefox",
        }
        assert distribution == {"chrome": ["f0", "f2"], "firefox": ["f1", "f3"]}

    @pytest.mark.asyncio
    async def test_only_initialized_browsers_assigned(self, config, make_launcher):
        coordinator = ExecutionCoordinator(config, launcher=make_launcher(failing={"firefox"}))
        await coordinator.initialize()

        coordinator.prepare_test_files(["a", "b", "c"])

        assert set(coordinator.assignment.values()) == {"chrome"}

    @pytest.mark.asyncio
    async def test_accepts_collected_file_objects(self, coordinator):
        await coordinator.initialize()

        coordinator.prepare_test_files([SimpleNamespace(filepath="a.test.ts")])

        assert coordinator.get_browser_for_file("a.test.ts") == "chrome"

    def test_requires_initialization(self, coordinator):
        with pytest.raises(InvalidStateError):
            coordinator.prepare_test_files(["a"])

    @pytest.mark.asyncio
    async def test_filename_marker_wins(self, coordinator):
        await coordinator.initialize()
        coordinator.prepare_test_files(["app.firefox.test.ts"])

        assert coordinator.get_browser_for_file("src/app.chrome.test.ts") == "chrome"
        assert coordinator.get_browser_for_file("app.firefox.test.ts") == "firefox"

    @pytest.mark.asyncio
    async def test_unassigned_file_uses_current_browser(self, coordinator):
        await coordinator.initialize()
        assert coordinator.get_browser_for_file("other.test.ts") == "chrome"

    @pytest.mark.asyncio
    async def test_browser_for_test(self, coordinator):
        await coordinator.initialize()
        coordinator.prepare_test_files(["a.test.ts", "b.test.ts"])

        test = SimpleNamespace(file=SimpleNamespace(filepath="b.test.ts"))

        assert coordinator.get_browser_for_test(test) == "firefox"


class TestExecuteInBrowser:
    """Test module execution routing."""

    @pytest.mark.asyncio
    async def test_runs_in_assigned_browser(self, coordinator):
        await coordinator.initialize()
        coordinator.prepare_test_files(["a.test.ts", "b.test.ts"])

        result = await coordinator.execute_in_browser("b.test.ts")

        assert result.browser == "firefox"
        assert coordinator.state == CoordinatorState.RUNNING

    @pytest.mark.asyncio
    async def test_marker_for_failed_browser(self, config, make_launcher):
        coordinator = ExecutionCoordinator(config, launcher=make_launcher(failing={"firefox"}))
        await coordinator.initialize()

        with pytest.raises(NoRunnerForBrowser) as exc_info:
            await coordinator.execute_in_browser("app.firefox.test.ts")

        assert exc_info.value.browser == "firefox"

    @pytest.mark.asyncio
    async def test_requires_initialization(self, coordinator):
        with pytest.raises(InvalidStateError):
            await coordinator.execute_in_browser("a.test.ts")


class TestActions:
    """Test interactive actions on throwaway pages."""

    @pytest.mark.asyncio
    async def test_screenshot_returns_base64(self, coordinator, launcher):
        await coordinator.initialize()

        encoded = await coordinator.take_screenshot()

        assert base64.b64decode(encoded) == b"page-full"
        context = launcher.browser_for("chrome").contexts[0]
        assert len(context.pages) == 2
        assert context.pages[1].closed
        assert not context.pages[0].closed

    @pytest.mark.asyncio
    async def test_element_screenshot(self, coordinator):
        await coordinator.initialize()

        encoded = await coordinator.take_screenshot("#app", browser="firefox")

        assert base64.b64decode(encoded) == b"element:#app"

    @pytest.mark.asyncio
    async def test_action_page_navigates_to_origin(self, coordinator, launcher, config):
        await coordinator.initialize()

        await coordinator.evaluate_in_browser("() => document.title")

        action_page = launcher.browser_for("chrome").contexts[0].pages[1]
        assert action_page.url == config.dev_server_url
        assert action_page.evaluated("() => document.title") == [None]

    @pytest.mark.asyncio
    async def test_evaluate_in_named_browser(self, coordinator, launcher):
        launcher.page_handler = lambda expression, arg: arg * 2 if arg else None
        await coordinator.initialize()

        assert await coordinator.evaluate_in_browser("(n) => n * 2", 21, browser="firefox") == 42
        assert launcher.browser_for("firefox").contexts[0].closed_pages == 1
        assert launcher.browser_for("chrome").contexts[0].closed_pages == 0

    @pytest.mark.asyncio
    async def test_wait_for_present_element(self, coordinator, launcher):
        launcher.present_selectors.add("#app")
        await coordinator.initialize()

        await coordinator.wait_for_element("#app", 100)

        assert launcher.browser_for("chrome").contexts[0].closed_pages == 1

    @pytest.mark.asyncio
    async def test_wait_for_missing_element_times_out(self, coordinator, launcher):
        """Test a missing selector fails after roughly the requested timeout."""
        await coordinator.initialize()

        started = time.monotonic()
        with pytest.raises(ElementNotFound) as exc_info:
            await coordinator.wait_for_element("#missing", 50)
        elapsed = time.monotonic() - started

        assert exc_info.value.selector == "#missing"
        assert exc_info.value.timeout_ms == 50
        assert 0.04 <= elapsed < 1.0
        assert launcher.browser_for("chrome").contexts[0].closed_pages == 1

    @pytest.mark.asyncio
    async def test_wait_uses_configured_timeout(self, coordinator):
        await coordinator.initialize()

        with pytest.raises(ElementNotFound) as exc_info:
            await coordinator.wait_for_element("#missing")

        assert exc_info.value.timeout_ms == 200

    @pytest.mark.asyncio
    @pytest.mark.parametrize("timeout_ms", [0, -5])
    async def test_wait_rejects_non_positive_timeout(self, coordinator, launcher, timeout_ms):
        await coordinator.initialize()

        with pytest.raises(ValueError, match="timeout_ms must be positive"):
            await coordinator.wait_for_element("#app", timeout_ms)

        assert launcher.browser_for("chrome").contexts[0].pages[1:] == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "action",
        [
            lambda c: c.take_screenshot(),
            lambda c: c.evaluate_in_browser("() => 1"),
            lambda c: c.wait_for_element("#app", 50),
        ],
        ids=["screenshot", "evaluate", "wait_for_element"],
    )
    async def test_action_page_closed_on_error(self, coordinator, launcher, action):
        launcher.action_page_error = PlaywrightError("Target crashed")
        await coordinator.initialize()

        with pytest.raises(PlaywrightError):
            await action(coordinator)

        context = launcher.browser_for("chrome").contexts[0]
        assert context.closed_pages == 1
        assert all(page.closed for page in context.pages[1:])

    @pytest.mark.asyncio
    async def test_action_on_failed_browser(self, config, make_launcher):
        coordinator = ExecutionCoordinator(config, launcher=make_launcher(failing={"firefox"}))
        await coordinator.initialize()

        with pytest.raises(NoRunnerForBrowser):
            await coordinator.take_screenshot(browser="firefox")


class TestCleanup:
    """Test coordinator teardown."""

    @pytest.mark.asyncio
    async def test_closes_everything(self, coordinator, launcher):
        await coordinator.initialize()

        await coordinator.cleanup()

        assert coordinator.state == CoordinatorState.CLOSED
        assert coordinator.initialized_browsers == []
        assert coordinator.assignment == {}
        assert all(browser.closed for browser in launcher.browsers)
        assert coordinator.pool.size == 0

    @pytest.mark.asyncio
    async def test_cleanup_twice(self, coordinator):
        await coordinator.initialize()

        await coordinator.cleanup()
        await coordinator.cleanup()

        assert coordinator.state == CoordinatorState.CLOSED

    @pytest.mark.asyncio
    async def test_queued_sends_delivered_before_teardown(self, coordinator, launcher):
        await coordinator.initialize()
        channel = coordinator.transport_for("chrome")

        channel.send({"n": 1})
        await coordinator.cleanup()

        page = launcher.browser_for("chrome").contexts[0].pages[0]
        assert page.evaluated(DISPATCH_MESSAGE_JS) == [{"n": 1}]

    @pytest.mark.asyncio
    async def test_send_after_cleanup_does_not_relaunch(self, coordinator, launcher):
        await coordinator.initialize()
        channel = coordinator.transport_for("chrome")
        launched = list(launcher.launched)

        await coordinator.cleanup()
        channel.send({"n": 2})
        await channel.flush()

        assert launcher.launched == launched
        assert all(browser.closed for browser in launcher.browsers)
        assert coordinator.pool.engine_count == 0
        assert coordinator.pool.closed

    @pytest.mark.asyncio
    async def test_bridge_close_failure_does_not_stop_teardown(self, coordinator, launcher):
        await coordinator.initialize()
        coordinator._bridges["chrome"].close = AsyncMock(side_effect=RuntimeError("stuck"))

        await coordinator.cleanup()

        assert all(browser.closed for browser in launcher.browsers)
        assert coordinator.state == CoordinatorState.CLOSED

    @pytest.mark.asyncio
    async def test_operations_rejected_after_cleanup(self, coordinator):
        await coordinator.initialize()
        await coordinator.cleanup()

        with pytest.raises(InvalidStateError):
            await coordinator.execute_in_browser("a.test.ts")
        with pytest.raises(InvalidStateError):
            await coordinator.take_screenshot()

    @pytest.mark.asyncio
    async def test_context_manager(self, config, launcher):
        async with ExecutionCoordinator(config, launcher=launcher) as coordinator:
            assert coordinator.state == CoordinatorState.READY

        assert coordinator.state == CoordinatorState.CLOSED
        assert all(browser.closed for browser in launcher.browsers)

    @pytest.mark.asyncio
    async def test_context_manager_releases_on_failed_initialize(self, config, make_launcher):
        launcher = make_launcher(failing={"chrome", "firefox"})

        with pytest.raises(NoBrowsersAvailable):
            async with ExecutionCoordinator(config, launcher=launcher):
                pass

        assert launcher.closed
