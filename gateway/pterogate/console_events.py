"""Console websocket event envelope: ``{"event": str, "args": list}``.

Inbound frames are decoded into a closed set of event types by
:func:`parse_frame`. Unknown event names decode to ``None``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union

from .errors import ProtocolError

# Outbound event names
AUTH = "auth"
SEND_LOGS = "send logs"
SEND_COMMAND = "send command"
SET_STATE = "set state"


@dataclass(frozen=True)
class ConsoleOutput:
    line: str


@dataclass(frozen=True)
class LogBacklog:
    lines: tuple[str, ...]


@dataclass(frozen=True)
class StatsUpdate:
    payload: Any


@dataclass(frozen=True)
class StatusChanged:
    state: str

    @property
    def annotation(self) -> str:
        return f"[Server status: {self.state}]"


@dataclass(frozen=True)
class TokenExpiring:
    pass


@dataclass(frozen=True)
class TokenExpired:
    pass


@dataclass(frozen=True)
class AuthSuccess:
    pass


ConsoleEvent = Union[
    ConsoleOutput, LogBacklog, StatsUpdate, StatusChanged, TokenExpiring, TokenExpired, AuthSuccess
]


def _first_string(args: list) -> str | None:
    if args and isinstance(args[0], str):
        return args[0]
    return None


def _decode_logs(args: list) -> LogBacklog | None:
    if not args:
        return None
    first = args[0]
    if isinstance(first, list):
        return LogBacklog(tuple(item for item in first if isinstance(item, str)))
    if isinstance(first, str):
        return LogBacklog((first,))
    return None


def parse_frame(raw: str | bytes) -> ConsoleEvent | None:
    """Decode one inbound frame.

    Raises ProtocolError when the frame is not a JSON envelope. Returns None
    for unrecognized events and for recognized events whose arguments are
    not the expected shape.
    """
    try:
        message = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Malformed console frame: {e}") from e
    if not isinstance(message, dict) or not isinstance(message.get("event"), str):
        raise ProtocolError("Console frame is missing an event name")

    event = message["event"]
    args = message.get("args")
    if not isinstance(args, list):
        args = []

    if event == "console output":
        line = _first_string(args)
        return ConsoleOutput(line) if line is not None else None
    if event == "logs":
        return _decode_logs(args)
    if event == "stats":
        return StatsUpdate(args[0] if args else None)
    if event == "status":
        state = _first_string(args)
        return StatusChanged(state) if state is not None else None
    if event == "token expiring":
        return TokenExpiring()
    if event == "token expired":
        return TokenExpired()
    if event == "auth success":
        return AuthSuccess()
    return None


def encode_event(event: str, *args: Any) -> str:
    return json.dumps({"event": event, "args": list(args)}, separators=(",", ":"))
