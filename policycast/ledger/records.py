"""
Ledger record type.

A LedgerRecord captures the terminal state of one delivery task. Records
are written once and never modified.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from ..models import ImpactTier
from ..tasks import TaskStatus
from ..util import parse_timestamp

if TYPE_CHECKING:
    from ..tasks import DeliveryTask


@dataclass(frozen=True)
class LedgerRecord:
    """
    Terminal outcome of a delivery task.

    ``sequence`` and ``recorded_at`` are assigned by the ledger on append;
    a record built by ``from_task`` carries placeholders until then.
    """

    # Identity
    task_id: str
    event_id: str
    channel: str

    # Outcome
    status: TaskStatus
    tier: ImpactTier | None
    content_hash: str
    attempts: int = 0
    reason: str | None = None

    # Context copied from the task (policy/change/actor or digest window)
    details: dict[str, Any] = field(default_factory=dict)

    # Assigned by the ledger
    sequence: int = 0
    recorded_at: datetime | None = None

    def __post_init__(self) -> None:
        if not self.status.terminal:
            raise ValueError(f"ledger records hold terminal states only, got {self.status.value}")

    @classmethod
    def from_task(cls, task: "DeliveryTask", *, status: TaskStatus | None = None) -> "LedgerRecord":
        """Build an unsequenced record from a task, optionally overriding its status."""
        status = status or task.status
        return cls(
            task_id=task.task_id,
            event_id=task.event_id,
            channel=task.channel,
            status=status,
            tier=task.tier,
            content_hash=task.content_hash,
            attempts=task.attempts,
            reason=task.last_error if status == TaskStatus.ABANDONED else None,
            details=dict(task.details),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        result: dict[str, Any] = {
            "sequence": self.sequence,
            "recorded_at": self.recorded_at.isoformat() if self.recorded_at else None,
            "task_id": self.task_id,
            "event_id": self.event_id,
            "channel": self.channel,
            "status": self.status.value,
            "tier": self.tier.value if self.tier else None,
            "content_hash": self.content_hash,
            "attempts": self.attempts,
        }
        if self.reason is not None:
            result["reason"] = self.reason
        if self.details:
            result["details"] = self.details
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LedgerRecord":
        """Reconstruct from JSON dict."""
        tier = data.get("tier")
        recorded_at = data.get("recorded_at")
        return cls(
            task_id=data["task_id"],
            event_id=data["event_id"],
            channel=data["channel"],
            status=TaskStatus(data["status"]),
            tier=ImpactTier(tier) if tier else None,
            content_hash=data.get("content_hash", ""),
            attempts=int(data.get("attempts", 0)),
            reason=data.get("reason"),
            details=dict(data.get("details") or {}),
            sequence=int(data.get("sequence", 0)),
            recorded_at=parse_timestamp(recorded_at) if recorded_at else None,
        )

    @classmethod
    def from_json(cls, line: str) -> "LedgerRecord":
        return cls.from_dict(json.loads(line))
