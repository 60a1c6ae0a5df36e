"""
Session module for browser engine ownership.

Provides:
- EnginePool owning engines, isolated contexts and primary pages
- SessionProxy scoping pool calls to one browser identifier
- PlaywrightLauncher for launching real engines
"""

from pagerunner.session.engine_pool import (
    BrowserLauncher,
    EnginePool,
    PlaywrightLauncher,
    Session,
)
from pagerunner.session.proxy import SessionProxy

__all__ = [
    "BrowserLauncher",
    "EnginePool",
    "PlaywrightLauncher",
    "Session",
    "SessionProxy",
]
