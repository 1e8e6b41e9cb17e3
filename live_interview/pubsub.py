"""
Real-time Pub/Sub for session updates.

Provides an in-memory pub/sub system for streaming observable session state
(transcript, connection, partial evaluation, presented questions, final
evaluation, phase, errors) to UI subscribers in real time.

Uses asyncio queues; every subscriber gets the retained history first.

Example usage:
    publisher = SessionEventPublisher()
    queue = await publisher.subscribe()
    await publisher.publish_update(UpdateType.PHASE, {"phase": "live"})
    update = await queue.get()
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class UpdateType(str, Enum):
    """
    Kinds of session updates published to the stream.

    Attributes:
        TRANSCRIPT: Transcript text and ordered turns changed.
        CONNECTION: Streaming connection state changed.
        PARTIAL_EVALUATION: A new partial evaluation replaced the previous one.
        QUESTIONS: The presented question list changed.
        FINAL_EVALUATION: The final evaluation completed.
        PHASE: Session phase changed.
        ERROR: A failure the user must act on.
        WARNING: A transient problem; the session carries on.
    """

    TRANSCRIPT = "transcript"
    CONNECTION = "connection"
    PARTIAL_EVALUATION = "partial_evaluation"
    QUESTIONS = "questions"
    FINAL_EVALUATION = "final_evaluation"
    PHASE = "phase"
    ERROR = "error"
    WARNING = "warning"


def _get_utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class SessionUpdate:
    """
    One observable change in session state.

    Attributes:
        update_type: What changed.
        payload: JSON-serializable snapshot of the new value.
        timestamp: UTC timestamp when the update was created.
    """

    update_type: UpdateType
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_get_utc_timestamp)

    def to_dict(self) -> dict[str, Any]:
        return {
            "update_type": self.update_type.value,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class SessionEventPublisher:
    """
    Publisher for session updates.

    Manages multiple subscriber queues and broadcasts updates to all.
    Async-safe through lock usage.

    Every update carries the full new value of what changed, so a subscriber
    that falls ``max_backlog`` updates behind loses its oldest pending
    updates rather than growing without bound.

    Attributes:
        max_history: Maximum number of updates retained for late subscribers.
        max_backlog: Pending updates a subscriber may hold beyond the history.
    """

    def __init__(self, max_history: int = 200, max_backlog: int = 500) -> None:
        self._subscribers: list[asyncio.Queue[SessionUpdate]] = []
        self._history: list[SessionUpdate] = []
        self._max_history = max_history
        self._max_backlog = max_backlog
        self._lock = asyncio.Lock()
        self.dropped_updates = 0
        logger.info("SessionEventPublisher initialized with max_history=%d", max_history)

    async def subscribe(self) -> asyncio.Queue[SessionUpdate]:
        """
        Subscribe to session updates.

        Returns an asyncio.Queue pre-filled with the retained history.
        Caller is responsible for calling unsubscribe when done.
        """
        queue: asyncio.Queue[SessionUpdate] = asyncio.Queue(
            maxsize=self._max_history + self._max_backlog
        )
        async with self._lock:
            self._subscribers.append(queue)
            for update in self._history:
                queue.put_nowait(update)
        logger.debug("New subscriber added. Total: %d", len(self._subscribers))
        return queue

    async def unsubscribe(self, queue: asyncio.Queue[SessionUpdate]) -> None:
        async with self._lock:
            if queue in self._subscribers:
                self._subscribers.remove(queue)
        logger.debug("Subscriber removed. Total: %d", len(self._subscribers))

    async def publish(self, update: SessionUpdate) -> None:
        """
        Publish an update to all subscribers.

        Also stores it in history for new subscribers.
        """
        async with self._lock:
            self._history.append(update)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history :]

            for queue in self._subscribers:
                self._offer(queue, update)

        logger.debug("Published update: %s", update.update_type.value)

    def _offer(self, queue: asyncio.Queue[SessionUpdate], update: SessionUpdate) -> None:
        if queue.full():
            queue.get_nowait()
            self.dropped_updates += 1
            if self.dropped_updates == 1 or self.dropped_updates % 100 == 0:
                logger.warning(
                    "Slow subscriber; dropped %d oldest update(s) so far", self.dropped_updates
                )
        queue.put_nowait(update)

    async def publish_update(self, update_type: UpdateType, payload: dict[str, Any]) -> None:
        await self.publish(SessionUpdate(update_type=update_type, payload=payload))

    async def publish_error(self, message: str, *, transcript_safe: bool = True) -> None:
        """Publish a user-facing error message."""
        await self.publish_update(
            UpdateType.ERROR,
            {"message": message, "transcript_safe": transcript_safe},
        )

    async def publish_warning(self, message: str) -> None:
        await self.publish_update(UpdateType.WARNING, {"message": message})

    async def get_history(self) -> list[SessionUpdate]:
        """Copy of the retained history (async-safe)."""
        async with self._lock:
            return list(self._history)

    async def clear_history(self) -> None:
        async with self._lock:
            self._history.clear()
        logger.debug("History cleared")

    @property
    def subscriber_count(self) -> int:
        """Approximate number of active subscribers (not lock-protected)."""
        return len(self._subscribers)
