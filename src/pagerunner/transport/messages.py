"""
Inbound transport message models.

Messages arriving from the page are parsed into a tagged union keyed on
``type``. Only CustomEvent carries listener-routable data; every other
shape is a ControlMessage or an IgnoredMessage.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class CustomEvent(BaseModel):
    """A named event with a payload, routed to listeners by event name."""

    model_config = ConfigDict(frozen=True, extra="allow")

    type: Literal["custom"] = "custom"
    event: str = Field(min_length=1)
    data: Any = None


class ControlMessage(BaseModel):
    """Hot-update protocol traffic that is not routed to listeners."""

    model_config = ConfigDict(frozen=True, extra="allow")

    type: Literal["connected", "update", "full-reload", "prune", "error", "ping"]


class IgnoredMessage(BaseModel):
    """Anything that does not match a known variant."""

    model_config = ConfigDict(frozen=True)

    type: Literal["ignored"] = "ignored"
    raw: Any = None


KnownMessage = Annotated[Union[CustomEvent, ControlMessage], Field(discriminator="type")]
InboundMessage = Union[CustomEvent, ControlMessage, IgnoredMessage]

_known_adapter: TypeAdapter[CustomEvent | ControlMessage] = TypeAdapter(KnownMessage)


def parse_inbound(raw: Any) -> InboundMessage:
    """Parse a raw message from the page into its variant."""
    if isinstance(raw, (CustomEvent, ControlMessage, IgnoredMessage)):
        return raw
    try:
        return _known_adapter.validate_python(raw)
    except ValidationError:
        return IgnoredMessage(raw=raw)


def custom_event(event: str, data: Any = None) -> dict[str, Any]:
    """Build the wire form of a custom event."""
    return CustomEvent(event=event, data=data).model_dump()
