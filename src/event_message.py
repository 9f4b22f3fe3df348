"""
Event messages carried by stream queues, and the codec that turns them into bytes.

An EventMessage is a tagged record:
  event:   discriminant string. Three reserved values mark control events that
           bound a live-tail (end, error, cancel); every other value is a payload
           event the queue never looks into.
  payload: arbitrary JSON-compatible data owned by producer and consumer.

The codec is a plain UTF-8 JSON object {"event": ..., "payload": ...}. Decoding
never falls back to a default: anything that is not such an object is rejected
with CorruptMessage.
"""

import json
from dataclasses import dataclass, asdict
from typing import Any, Dict, Union

from errors import CorruptMessage

STREAM_END = "__stream_end__"
STREAM_ERROR = "__stream_error__"
STREAM_CANCEL = "__stream_cancel__"

CONTROL_EVENTS = frozenset({STREAM_END, STREAM_ERROR, STREAM_CANCEL})


@dataclass(frozen=True)
class EventMessage:
    event: str
    payload: Any = None

    @property
    def is_control(self) -> bool:
        return self.event in CONTROL_EVENTS

    @property
    def is_cancel(self) -> bool:
        return self.event == STREAM_CANCEL

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "EventMessage":
        if not isinstance(data, dict):
            raise CorruptMessage(f"Event message must be an object, got {type(data).__name__}")
        event = data.get("event")
        if not isinstance(event, str):
            raise CorruptMessage(f"Event message has no string 'event' field: {data!r:.200}")
        return EventMessage(event=event, payload=data.get("payload"))


def CancelEvent(reason: str = "user cancel this run") -> EventMessage:
    """Control message that terminates every live-tail of a run."""
    return EventMessage(event=STREAM_CANCEL, payload={"reason": reason})


def EndEvent(payload: Any = None) -> EventMessage:
    return EventMessage(event=STREAM_END, payload=payload)


def ErrorEvent(message: str, **details: Any) -> EventMessage:
    return EventMessage(event=STREAM_ERROR, payload={"message": message, **details})


def encode(message: EventMessage) -> bytes:
    """Serialize an EventMessage to UTF-8 JSON bytes."""
    try:
        return json.dumps(message.to_dict(), ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise ValueError(f"Payload of event '{message.event}' is not JSON-serializable: {e}") from e


def decode(data: Union[bytes, bytearray, memoryview, str]) -> EventMessage:
    """Inverse of encode(). Raises CorruptMessage on anything malformed."""
    if isinstance(data, (bytearray, memoryview)):
        data = bytes(data)
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CorruptMessage(f"Event message is not valid UTF-8: {e}") from e
    if not isinstance(data, str):
        raise CorruptMessage(f"Cannot decode event message from {type(data).__name__}")
    try:
        raw = json.loads(data)
    except json.JSONDecodeError as e:
        raise CorruptMessage(f"Event message is not valid JSON: {e}") from e
    return EventMessage.from_dict(raw)
