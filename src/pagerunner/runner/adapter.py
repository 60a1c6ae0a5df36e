"""
Test-framework runner adapter backed by real browsers.

Maps the runner lifecycle hooks onto the ExecutionCoordinator:
- collection starts -> initialize browsers
- files collected -> assign files to browsers
- file import -> import inside the assigned browser
- task context -> attach a ``browser`` capability object
- run finished -> summarize and tear down
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Mapping, Sequence

import structlog

from pagerunner.errors import NoBrowsersAvailable
from pagerunner.execution.coordinator import ExecutionCoordinator

if TYPE_CHECKING:
    from pagerunner.config import RunnerConfig
    from pagerunner.execution.bridge import ModuleImportResult

logger = structlog.get_logger(__name__)


def _get(obj: Any, key: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(key)
    return getattr(obj, key, None)


def task_state(test: Any) -> str | None:
    """Read ``test.result.state`` from an object or mapping."""
    return _get(_get(test, "result"), "state")


def task_id(test: Any) -> str:
    """Identity of a test, falling back to its name."""
    return str(_get(test, "id") or _get(test, "name") or id(test))


@dataclass
class TaskRecord:
    """Result of one test, recorded after it ran."""

    name: str
    state: str | None
    browser: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class RunSummary:
    """Aggregate counts over every recorded test."""

    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def is_success(self) -> bool:
        """Check if no recorded test failed."""
        return self.failed == 0

    @classmethod
    def from_records(cls, records: Sequence[TaskRecord]) -> RunSummary:
        passed = sum(1 for r in records if r.state == "pass")
        failed = sum(1 for r in records if r.state == "fail")
        return cls(
            total=len(records),
            passed=passed,
            failed=failed,
            skipped=len(records) - passed - failed,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
        }


@dataclass
class BrowserHandle:
    """Browser capability exposed to an individual test."""

    name: str
    coordinator: ExecutionCoordinator = field(repr=False)

    async def take_screenshot(self, selector: str | None = None) -> str:
        return await self.coordinator.take_screenshot(selector, browser=self.name)

    async def evaluate(self, expression: str, arg: Any = None) -> Any:
        return await self.coordinator.evaluate_in_browser(expression, arg, browser=self.name)

    async def wait_for(self, selector: str, timeout_ms: int = 5000) -> None:
        await self.coordinator.wait_for_element(selector, timeout_ms, browser=self.name)


class BrowserTestRunner:
    """
    Runner whose file imports execute inside browser pages.

    Usage:
        runner = BrowserTestRunner(config)
        await runner.on_before_collect(paths)
        await runner.on_collected(files)
        for file in files:
            await runner.import_file(file.filepath)
        await runner.on_after_run_files(files)
    """

    def __init__(
        self,
        config: RunnerConfig | None = None,
        coordinator: ExecutionCoordinator | None = None,
    ) -> None:
        self.coordinator = coordinator or ExecutionCoordinator(config)
        self._records: dict[str, TaskRecord] = {}
        self._summary: RunSummary | None = None
        self._log = logger.bind(component="browser_test_runner")

    @property
    def records(self) -> dict[str, TaskRecord]:
        return dict(self._records)

    @property
    def summary(self) -> RunSummary | None:
        """Summary of the finished run, None until the run ends."""
        return self._summary

    async def on_before_collect(self, paths: Sequence[str]) -> None:
        self._log.info("Starting test collection", files=len(paths))
        try:
            await self.coordinator.initialize()
        except NoBrowsersAvailable as e:
            self._log.error("Failed to initialize browser executor", error=str(e))
            raise

    async def on_collected(self, files: Sequence[Any]) -> None:
        self._log.info("Collected test files", files=len(files))
        self.coordinator.prepare_test_files(files)

    async def on_before_run_task(self, test: Any) -> None:
        browser = self.coordinator.get_browser_for_test(test)
        self._log.info("Running test", test=_get(test, "name"), browser=browser)

    async def on_after_run_task(self, test: Any) -> None:
        key = task_id(test)
        if key in self._records:
            self._log.debug("Result already recorded", test=key)
            return
        self._records[key] = TaskRecord(
            name=str(_get(test, "name") or key),
            state=task_state(test),
            browser=self.coordinator.get_browser_for_test(test),
        )

    async def import_file(self, filepath: str, source: Any = None) -> ModuleImportResult:
        try:
            return await self.coordinator.execute_in_browser(os.fspath(filepath), source)
        except Exception as e:
            self._log.error("Failed to import file", filepath=filepath, error=str(e))
            raise

    def extend_task_context(self, context: Any) -> Any:
        """
        Attach a ``browser`` capability to a test context.

        The handle is scoped to the browser the context's task is assigned
        to, or the current browser when the context carries no task.
        """
        task = _get(context, "task")
        if task is not None:
            browser = self.coordinator.get_browser_for_test(task)
        else:
            browser = self.coordinator.get_current_browser()
        handle = BrowserHandle(name=browser, coordinator=self.coordinator)

        if isinstance(context, Mapping):
            return {**context, "browser": handle}
        context.browser = handle
        return context

    async def on_after_run_files(self, files: Sequence[Any]) -> RunSummary:
        summary = RunSummary.from_records(list(self._records.values()))
        self._summary = summary
        self._log.info("Test execution completed", **summary.to_dict())

        try:
            await self.coordinator.cleanup()
        except Exception as e:
            self._log.warning("Cleanup warning", error=str(e))
        return summary
