"""
Transport module for host <-> page communication.

Provides:
- TransportChannel implementing the dev-server channel contract
- Tagged inbound message models
- Dev environment factory wiring a channel as hot transport
"""

from pagerunner.transport.channel import TransportChannel
from pagerunner.transport.environment import (
    RESULT_EVENT,
    DevEnvironment,
    ResultReporter,
    create_browser_dev_environment,
)
from pagerunner.transport.messages import (
    ControlMessage,
    CustomEvent,
    IgnoredMessage,
    InboundMessage,
    custom_event,
    parse_inbound,
)

__all__ = [
    "RESULT_EVENT",
    "ControlMessage",
    "CustomEvent",
    "DevEnvironment",
    "IgnoredMessage",
    "InboundMessage",
    "ResultReporter",
    "TransportChannel",
    "create_browser_dev_environment",
    "custom_event",
    "parse_inbound",
]
