"""
Delivery tasks and their status machine.

One task exists per (event, channel) pair. Status only moves forward:
nothing leaves DELIVERED or ABANDONED, and FAILED may only go back to
IN_FLIGHT for a retry.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .errors import InvalidTransition
from .models import ClassifiedEvent, ImpactTier
from .util import utc_now


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    FAILED = "failed"
    ABANDONED = "abandoned"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.DELIVERED, TaskStatus.ABANDONED)


_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_FLIGHT, TaskStatus.ABANDONED}),
    TaskStatus.IN_FLIGHT: frozenset({TaskStatus.DELIVERED, TaskStatus.FAILED, TaskStatus.ABANDONED}),
    TaskStatus.FAILED: frozenset({TaskStatus.IN_FLIGHT, TaskStatus.ABANDONED}),
    TaskStatus.DELIVERED: frozenset(),
    TaskStatus.ABANDONED: frozenset(),
}


def task_id_for(event_id: str, channel: str) -> str:
    """Deterministic task id, which doubles as the channel idempotency key."""
    return f"{event_id}:{channel}"


@dataclass(frozen=True)
class Notification:
    """Rendered message handed to a channel transport."""

    subject: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryTask:
    """
    Delivery of one event (or digest) through one channel.

    ``details`` is copied into the ledger record when the task ends.
    """

    task_id: str
    event_id: str
    channel: str
    tier: ImpactTier | None
    content_hash: str
    notification: Notification
    details: dict[str, Any] = field(default_factory=dict)

    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime = field(default_factory=utc_now)

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def idempotency_key(self) -> str:
        return self.task_id

    def transition(self, new_status: TaskStatus, *, error: str | None = None) -> None:
        """Move to ``new_status`` or raise InvalidTransition."""
        with self._lock:
            if new_status not in _TRANSITIONS[self.status]:
                raise InvalidTransition(
                    f"{self.task_id}: {self.status.value} -> {new_status.value} not allowed"
                )
            if new_status == TaskStatus.IN_FLIGHT:
                self.attempts += 1
            if error is not None:
                self.last_error = error
            self.status = new_status

    def try_cancel(self) -> bool:
        """Abandon the task if no attempt has started yet."""
        with self._lock:
            if self.status != TaskStatus.PENDING:
                return False
            self.status = TaskStatus.ABANDONED
            self.last_error = "cancelled"
            return True

    @classmethod
    def for_event(
        cls,
        classified: ClassifiedEvent,
        channel: str,
        notification: Notification,
    ) -> "DeliveryTask":
        event = classified.event
        return cls(
            task_id=task_id_for(event.event_id, channel),
            event_id=event.event_id,
            channel=channel,
            tier=classified.tier,
            content_hash=classified.content_hash,
            notification=notification,
            details={
                "policy": event.policy,
                "change": event.change.value,
                "actor": event.actor,
                "event_timestamp": event.timestamp.isoformat(),
                "ingest_seq": event.ingest_seq,
            },
        )
