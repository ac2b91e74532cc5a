"""Wire protocol — decouples sessions and the worktree manager from the UI.

Producers (PTY readers, UI actions) put events on the wire; the UI
subscribes and redraws. Each subscriber gets its own bounded queue so a
slow consumer can never make a reader task block or grow memory without
limit: when a queue is full, new events for it are dropped.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256


class EventType(enum.Enum):
    SESSION_OUTPUT = "session_output"
    SESSION_EXIT = "session_exit"
    AGENT_STATUS = "agent_status"
    ERROR = "error"
    STATUS = "status"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)


class Wire:
    """Async message bus: producers -> UI subscribers.

    Multi-producer, multi-consumer broadcast. Must be used from the
    event loop thread.
    """

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        self._maxsize = maxsize
        self._subscribers: list[asyncio.Queue[WireEvent | None]] = []
        self._closed: bool = False
        self._dropped: int = 0

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called, and for
        any subscriber whose queue is full.
        """
        if self._closed:
            return
        for q in self._subscribers:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                self._dropped += 1
                logger.debug("Subscriber queue full, dropped %s event", event.type.value)

    def send_output(self, session_id: str) -> None:
        """New output is ready on ``session_id``; the payload stays in the session."""
        self.send(WireEvent(type=EventType.SESSION_OUTPUT, data={"session_id": session_id}))

    def send_status(self, message: str) -> None:
        self.send(WireEvent(type=EventType.STATUS, data={"message": message}))

    def send_error(self, error: str) -> None:
        self.send(WireEvent(type=EventType.ERROR, data={"error": error}))

    def send_agent_status(self, agent_id: str, status: str) -> None:
        self.send(
            WireEvent(
                type=EventType.AGENT_STATUS,
                data={"agent_id": agent_id, "status": status},
            )
        )

    def send_session_exit(
        self,
        session_id: str,
        title: str,
        exit_code: int | None,
        last_output: str = "",
    ) -> None:
        """Notify subscribers that a session's child exited on its own."""
        self.send(
            WireEvent(
                type=EventType.SESSION_EXIT,
                data={
                    "session_id": session_id,
                    "title": title,
                    "exit_code": exit_code,
                    "last_output": last_output[:500],
                },
            )
        )

    @property
    def dropped(self) -> int:
        """Events discarded because a subscriber's queue was full."""
        return self._dropped

    def subscribe(self) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from."""
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        if q in self._subscribers:
            self._subscribers.remove(q)

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        self._closed = True
        for q in self._subscribers:
            if q.full():
                # Make room so the sentinel always arrives.
                q.get_nowait()
            q.put_nowait(None)
