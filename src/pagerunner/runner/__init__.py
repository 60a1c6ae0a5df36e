"""
Runner module integrating browsers into a test framework lifecycle.

Provides:
- BrowserTestRunner implementing the framework hooks
- BrowserHandle capability object for individual tests
- TaskRecord and RunSummary for result aggregation
"""

from pagerunner.runner.adapter import (
    BrowserHandle,
    BrowserTestRunner,
    RunSummary,
    TaskRecord,
)

__all__ = [
    "BrowserHandle",
    "BrowserTestRunner",
    "RunSummary",
    "TaskRecord",
]
