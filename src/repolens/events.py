"""Progress events and the progress-channel protocol.

Server -> client messages are ``ProgressEvent`` dicts. Client -> server
messages are a closed tagged union parsed with pydantic; anything else is
answered with an ``error`` message.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import Field, TypeAdapter

from .schemas import CamelModel


class EventType(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"
    PONG = "pong"
    ERROR = "error"


TERMINAL_EVENTS = {EventType.COMPLETED, EventType.FAILED}

# Pipeline stages in run order, with the percentage reported on entering each
STAGES = {
    "fetching": 10,
    "walking": 30,
    "extracting": 50,
    "enriching": 70,
    "persisting": 90,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProgressEvent:
    analysis_id: Optional[str]
    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "analysisId": self.analysis_id,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


def started(analysis_id: str, url: str) -> ProgressEvent:
    return ProgressEvent(analysis_id, EventType.STARTED, {"status": "analyzing", "url": url})


def progress(analysis_id: str, stage: str, message: str = "") -> ProgressEvent:
    return ProgressEvent(
        analysis_id,
        EventType.PROGRESS,
        {"status": "analyzing", "stage": stage, "percent": STAGES[stage], "message": message},
    )


def completed(analysis_id: str, summary: dict[str, Any]) -> ProgressEvent:
    return ProgressEvent(
        analysis_id, EventType.COMPLETED, {"status": "completed", "percent": 100, "summary": summary}
    )


def failed(analysis_id: str, error: str) -> ProgressEvent:
    return ProgressEvent(analysis_id, EventType.FAILED, {"status": "failed", "error": error})


def error_message(message: str, analysis_id: str | None = None) -> dict[str, Any]:
    return ProgressEvent(analysis_id, EventType.ERROR, {"error": message}).to_dict()


# --- Client messages ---

class SubscribeMessage(CamelModel):
    type: Literal["subscribe"]
    analysis_id: str = Field(min_length=1)


class UnsubscribeMessage(CamelModel):
    type: Literal["unsubscribe"]
    analysis_id: Optional[str] = None


class PingMessage(CamelModel):
    type: Literal["ping"]


ClientMessage = Annotated[
    Union[SubscribeMessage, UnsubscribeMessage, PingMessage],
    Field(discriminator="type"),
]

_client_message = TypeAdapter(ClientMessage)


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """Parse one JSON client frame. Raises pydantic.ValidationError."""
    return _client_message.validate_json(raw)


# --- Per-connection state machine ---

class ConnectionState(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBED = "subscribed"
    RECEIVING = "receiving"
    CLOSED = "closed"


CONNECTION_TRANSITIONS = {
    ConnectionState.UNSUBSCRIBED: {ConnectionState.SUBSCRIBED, ConnectionState.CLOSED},
    ConnectionState.SUBSCRIBED: {ConnectionState.RECEIVING, ConnectionState.UNSUBSCRIBED, ConnectionState.CLOSED},
    ConnectionState.RECEIVING: {ConnectionState.UNSUBSCRIBED, ConnectionState.CLOSED},
    ConnectionState.CLOSED: set(),
}


class ProtocolError(Exception):
    """A client message is not allowed in the connection's current state."""


class ProgressSession:
    """Tracks what one progress-channel connection is allowed to do next."""

    def __init__(self):
        self.state = ConnectionState.UNSUBSCRIBED
        self.analysis_id: Optional[str] = None

    def _move(self, target: ConnectionState) -> None:
        if target not in CONNECTION_TRANSITIONS[self.state]:
            raise ProtocolError(f"Cannot go from {self.state.value} to {target.value}")
        self.state = target

    def subscribe(self, analysis_id: str) -> None:
        if self.state != ConnectionState.UNSUBSCRIBED:
            raise ProtocolError(f"Already subscribed to {self.analysis_id}")
        self._move(ConnectionState.SUBSCRIBED)
        self.analysis_id = analysis_id

    def receiving(self) -> None:
        """First event after the snapshot has been delivered."""
        if self.state == ConnectionState.SUBSCRIBED:
            self._move(ConnectionState.RECEIVING)

    def unsubscribe(self) -> None:
        if self.state not in (ConnectionState.SUBSCRIBED, ConnectionState.RECEIVING):
            raise ProtocolError("Not subscribed")
        self._move(ConnectionState.UNSUBSCRIBED)
        self.analysis_id = None

    def close(self) -> None:
        if self.state != ConnectionState.CLOSED:
            self._move(ConnectionState.CLOSED)
