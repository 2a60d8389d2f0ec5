"""Session event feed with bounded history and non-blocking fanout queues.

Stands in for a desktop event bus: the session publishes named events
(``connected``, ``panel-changed``, ``server-changed``, ``console-connected``,
``console-output``, ``console-error``) and the gateway streams them as SSE.
Every record carries a monotonically increasing ``id`` so a reconnecting
SSE client can resume with ``Last-Event-ID``.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any


class SessionFeed:
    """In-process event feed; slow subscribers lose their oldest records."""

    def __init__(self, *, buffer_size: int, subscriber_queue_size: int):
        self._history: deque[dict] = deque(maxlen=max(10, buffer_size))
        self._queues: set[asyncio.Queue[dict]] = set()
        self._queue_size = max(10, subscriber_queue_size)
        self._ids = itertools.count(1)
        self._dropped = 0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: int | None = None

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._loop_thread = threading.get_ident()

    def stop(self) -> None:
        self._queues.clear()
        self._loop = None
        self._loop_thread = None

    def publish(self, event: str, data: Any = None) -> None:
        """Record an event; callable from the loop thread or any other thread."""
        record = {
            "id": next(self._ids),
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "data": data,
        }
        loop = self._loop
        if loop is None or not loop.is_running():
            self._history.append(record)
        elif threading.get_ident() == self._loop_thread:
            self._fan_out(record)
        else:
            loop.call_soon_threadsafe(self._fan_out, record)

    def subscribe(self) -> asyncio.Queue[dict]:
        queue: asyncio.Queue[dict] = asyncio.Queue(maxsize=self._queue_size)
        self._queues.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[dict]) -> None:
        self._queues.discard(queue)

    def backlog(self, *, limit: int, events: set[str] | None = None, after_id: int | None = None) -> list[dict]:
        """Most recent ``limit`` records, oldest first, optionally newer than ``after_id``."""
        selected = [
            record
            for record in self._history
            if (not events or record["event"] in events)
            and (after_id is None or record["id"] > after_id)
        ]
        return selected[-max(1, limit):]

    def stats(self) -> dict:
        return {
            "buffer_size": len(self._history),
            "subscriber_count": len(self._queues),
            "dropped_events": self._dropped,
        }

    def _fan_out(self, record: dict) -> None:
        self._history.append(record)
        for queue in self._queues:
            while queue.full():
                queue.get_nowait()
                self._dropped += 1
            queue.put_nowait(record)


def parse_event_filter(raw_events: str | None) -> set[str] | None:
    if not raw_events:
        return None
    values = {item.strip() for item in raw_events.split(",") if item.strip()}
    return values or None


def parse_last_event_id(raw: str | None) -> int | None:
    try:
        return int(raw) if raw else None
    except ValueError:
        return None


def as_sse(record: dict) -> str:
    payload = json.dumps(record, separators=(",", ":"))
    return f"id: {record['id']}\nevent: {record['event']}\ndata: {payload}\n\n"
