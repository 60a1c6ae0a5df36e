"""
Execution module for running test files inside browser pages.

Provides:
- ExecutionCoordinator owning the run's browser lifecycle
- ModuleBridge adapting a page into an RPC endpoint
"""

from pagerunner.execution.bridge import BridgeHandlers, ModuleBridge, ModuleImportResult
from pagerunner.execution.coordinator import (
    CoordinatorState,
    ExecutionCoordinator,
    browser_marker,
)

__all__ = [
    "BridgeHandlers",
    "CoordinatorState",
    "ExecutionCoordinator",
    "ModuleBridge",
    "ModuleImportResult",
    "browser_marker",
]
