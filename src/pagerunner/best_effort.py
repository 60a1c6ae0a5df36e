"""
Collect-and-continue execution of independent async tasks.

Initialization of each browser, closing of each bridge and closing of each
engine all follow the same policy: every task is attempted, failures are
logged and reported, and nothing is raised to the caller.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Mapping, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Outcome(Generic[T]):
    """Result of one best-effort task."""

    key: str
    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        """True if the task completed without raising."""
        return self.error is None


async def run_all_best_effort(
    tasks: Mapping[str, Callable[[], Awaitable[T]]],
    label: str = "task",
) -> list[Outcome[T]]:
    """
    Run every task concurrently and collect one outcome per key.

    Outcomes are returned in the mapping's iteration order. Exceptions raised
    by tasks are logged and captured; cancellation of the caller propagates.

    Args:
        tasks: Mapping of key to zero-argument coroutine factory
        label: Name used in log events for this group of tasks

    Returns:
        Outcomes in input order
    """
    keys = list(tasks)
    if not keys:
        return []

    results: list[Any] = await asyncio.gather(
        *(_invoke(tasks[key]) for key in keys),
        return_exceptions=True,
    )

    outcomes: list[Outcome[T]] = []
    for key, result in zip(keys, results):
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            logger.warning(
                f"{label} failed",
                key=key,
                error=str(result) or type(result).__name__,
            )
            outcomes.append(Outcome(key=key, error=result))
        else:
            outcomes.append(Outcome(key=key, value=result))
    return outcomes


async def _invoke(factory: Callable[[], Awaitable[T]]) -> T:
    return await factory()
