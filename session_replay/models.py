"""Event model — typed interaction events and their per-type payloads."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, asdict, fields, replace
from enum import Enum
from typing import Optional, Union


class EventType(str, Enum):
    DOM_MUTATION = "DOM_MUTATION"
    MOUSE_MOVE = "MOUSE_MOVE"
    MOUSE_CLICK = "MOUSE_CLICK"
    SCROLL = "SCROLL"
    VIEWPORT = "VIEWPORT"
    INPUT = "INPUT"
    ERROR = "ERROR"


@dataclass(frozen=True)
class Position:
    x: float
    y: float


# ----------------------------------------------------------------------
# Payload variants, one per EventType
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class DomMutationData:
    mutation: str
    target: str
    text: Optional[str] = None
    html: Optional[str] = None
    attributes: Optional[dict] = None

    MUTATIONS = ("childList", "attributes", "characterData")

    def __post_init__(self):
        if self.mutation not in self.MUTATIONS:
            raise ValueError(f"unknown mutation kind: {self.mutation!r}")


@dataclass(frozen=True)
class MouseMoveData:
    buttons: int = 0


@dataclass(frozen=True)
class MouseClickData:
    button: int = 0
    target: Optional[str] = None


@dataclass(frozen=True)
class ScrollData:
    scrollX: float
    scrollY: float
    target: Optional[str] = None


@dataclass(frozen=True)
class ViewportData:
    width: int
    height: int

    def __post_init__(self):
        if self.width < 1 or self.height < 1:
            raise ValueError("viewport dimensions must be positive")


@dataclass(frozen=True)
class InputData:
    target: str
    value: str
    inputType: Optional[str] = None


@dataclass(frozen=True)
class ErrorData:
    message: str
    stack: Optional[str] = None
    source: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None


EventData = Union[
    DomMutationData,
    MouseMoveData,
    MouseClickData,
    ScrollData,
    ViewportData,
    InputData,
    ErrorData,
]

PAYLOAD_TYPES: dict[EventType, type] = {
    EventType.DOM_MUTATION: DomMutationData,
    EventType.MOUSE_MOVE: MouseMoveData,
    EventType.MOUSE_CLICK: MouseClickData,
    EventType.SCROLL: ScrollData,
    EventType.VIEWPORT: ViewportData,
    EventType.INPUT: InputData,
    EventType.ERROR: ErrorData,
}

# Payload fields holding page text, masked when text masking is on.
# Dict-valued fields have each of their values masked.
TEXT_FIELDS: dict[EventType, tuple[str, ...]] = {
    EventType.DOM_MUTATION: ("text", "html", "attributes"),
    EventType.INPUT: ("value",),
    EventType.ERROR: ("message", "stack", "source"),
}

# Event types that are meaningless without a pointer position.
POSITIONED_TYPES = frozenset({EventType.MOUSE_MOVE, EventType.MOUSE_CLICK})


def build_payload(event_type: EventType, data: dict | None) -> EventData:
    """Build the payload variant for *event_type* from a plain dict.

    Unknown keys are ignored; missing required keys raise TypeError and
    out-of-range values raise ValueError.
    """
    cls = PAYLOAD_TYPES[EventType(event_type)]
    data = data or {}
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


def payload_to_dict(payload: EventData) -> dict:
    """Drop unset optional fields so the wire form stays compact."""
    return {k: v for k, v in asdict(payload).items() if v is not None}


def now_ms() -> int:
    return int(time.time() * 1000)


def new_event_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Event:
    id: str
    sessionId: str
    timestamp: int
    type: EventType
    data: EventData
    position: Optional[Position] = None

    def with_data(self, data: EventData) -> "Event":
        return replace(self, data=data)


@dataclass
class ElementInfo:
    """Description of the DOM element an event originated from."""
    tag: str = ""
    id: Optional[str] = None
    classes: tuple[str, ...] = ()
    attributes: dict = field(default_factory=dict)
    ancestors: tuple["ElementInfo", ...] = ()


@dataclass
class RawEvent:
    """An event as produced by the page observers, before filtering."""
    type: EventType
    data: dict = field(default_factory=dict)
    position: Optional[Position] = None
    timestamp: Optional[int] = None
    element: Optional[ElementInfo] = None
    page_url: Optional[str] = None
    id: Optional[str] = None


def create_event(
    session_id: str,
    event_type: EventType | str,
    data: dict | EventData | None = None,
    position: Position | dict | None = None,
    timestamp: int | None = None,
    event_id: str | None = None,
) -> Event:
    """Factory function that creates a validated Event."""
    event_type = EventType(event_type)
    if isinstance(data, dict) or data is None:
        payload = build_payload(event_type, data)
    else:
        payload = data
    if isinstance(position, dict):
        position = Position(x=position["x"], y=position["y"])
    if event_type in POSITIONED_TYPES and position is None:
        raise ValueError(f"{event_type.value} events require a position")
    return Event(
        id=event_id or new_event_id(),
        sessionId=session_id,
        timestamp=timestamp if timestamp is not None else now_ms(),
        type=event_type,
        data=payload,
        position=position,
    )


def event_to_dict(event: Event) -> dict:
    """Convert an Event to its JSON wire form."""
    result = {
        "id": event.id,
        "sessionId": event.sessionId,
        "timestamp": event.timestamp,
        "type": event.type.value,
        "data": payload_to_dict(event.data),
    }
    if event.position is not None:
        result["position"] = {"x": event.position.x, "y": event.position.y}
    return result


def event_from_dict(entry: dict) -> Event:
    """Rebuild an Event from its wire form. The dict is assumed schema-valid."""
    return create_event(
        session_id=entry["sessionId"],
        event_type=entry["type"],
        data=entry.get("data"),
        position=entry.get("position"),
        timestamp=int(entry["timestamp"]),
        event_id=entry["id"],
    )
