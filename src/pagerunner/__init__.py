"""
pagerunner: run test modules inside real browser engines.

Launches and reuses browser engines, keeps one isolated session per browser,
and carries module imports and test events between the host process and
in-page code.
"""

__version__ = "0.3.0"

from pagerunner.best_effort import Outcome, run_all_best_effort
from pagerunner.config import (
    BrowserSpec,
    EngineType,
    RunnerConfig,
    load_runner_config,
    load_runner_config_file,
)
from pagerunner.errors import (
    ElementNotFound,
    EngineFailure,
    InvalidStateError,
    InvokeFailed,
    InvokeTimeout,
    NoBrowsersAvailable,
    NoRunnerForBrowser,
    PageRunnerError,
    SessionUnavailable,
)
from pagerunner.execution import (
    BridgeHandlers,
    CoordinatorState,
    ExecutionCoordinator,
    ModuleBridge,
    ModuleImportResult,
)
from pagerunner.runner import BrowserHandle, BrowserTestRunner, RunSummary, TaskRecord
from pagerunner.session import EnginePool, PlaywrightLauncher, Session, SessionProxy
from pagerunner.transport import (
    DevEnvironment,
    TransportChannel,
    create_browser_dev_environment,
    parse_inbound,
)

__all__ = [
    # Configuration
    "BrowserSpec",
    "EngineType",
    "RunnerConfig",
    "load_runner_config",
    "load_runner_config_file",
    # Errors
    "ElementNotFound",
    "EngineFailure",
    "InvalidStateError",
    "InvokeFailed",
    "InvokeTimeout",
    "NoBrowsersAvailable",
    "NoRunnerForBrowser",
    "PageRunnerError",
    "SessionUnavailable",
    # Sessions
    "EnginePool",
    "PlaywrightLauncher",
    "Session",
    "SessionProxy",
    # Transport
    "DevEnvironment",
    "TransportChannel",
    "create_browser_dev_environment",
    "parse_inbound",
    # Execution
    "BridgeHandlers",
    "CoordinatorState",
    "ExecutionCoordinator",
    "ModuleBridge",
    "ModuleImportResult",
    "Outcome",
    "run_all_best_effort",
    # Runner
    "BrowserHandle",
    "BrowserTestRunner",
    "RunSummary",
    "TaskRecord",
    "__version__",
]
