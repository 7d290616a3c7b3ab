"""
Canonical event types for the notification pipeline.

A PolicyChangeEvent is what the upstream policy engine reports; a
ClassifiedEvent is the same event with its impact tier fixed once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .util import content_hash, parse_timestamp


class ChangeKind(str, Enum):
    """What happened to the policy."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class ImpactTier(str, Enum):
    """Severity tier, ordered LOW < MEDIUM < HIGH."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK = {ImpactTier.LOW: 0, ImpactTier.MEDIUM: 1, ImpactTier.HIGH: 2}


def max_tier(*tiers: ImpactTier) -> ImpactTier:
    """Return the most severe of the given tiers."""
    return max(tiers, key=lambda t: t.rank)


@dataclass(frozen=True)
class PolicyChangeEvent:
    """
    A single policy change reported by the policy engine.

    Immutable once ingested. ``ingest_seq`` is assigned by the ingestor and
    breaks ties between events with equal timestamps.
    """

    # Identity
    event_id: str
    policy: str
    change: ChangeKind
    timestamp: datetime

    # Attribution
    actor: str = "unknown"

    # Payload
    diff: dict[str, Any] = field(default_factory=dict)
    severity_hint: ImpactTier | None = None

    ingest_seq: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "event_id": self.event_id,
            "policy": self.policy,
            "change": self.change.value,
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor,
            "diff": self.diff,
            "severity_hint": self.severity_hint.value if self.severity_hint else None,
            "ingest_seq": self.ingest_seq,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PolicyChangeEvent":
        """Reconstruct from JSON dict."""
        hint = data.get("severity_hint")
        return cls(
            event_id=data["event_id"],
            policy=data["policy"],
            change=ChangeKind(data["change"]),
            timestamp=parse_timestamp(data["timestamp"]),
            actor=data.get("actor", "unknown"),
            diff=dict(data.get("diff") or {}),
            severity_hint=ImpactTier(hint) if hint else None,
            ingest_seq=int(data.get("ingest_seq", 0)),
        )

    def content_hash(self) -> str:
        """Hash of the event content; excludes ingest_seq, which is local state."""
        data = self.to_dict()
        data.pop("ingest_seq")
        return content_hash(data)


@dataclass(frozen=True)
class ClassifiedEvent:
    """A PolicyChangeEvent with its impact tier computed."""

    event: PolicyChangeEvent
    tier: ImpactTier
    content_hash: str

    @property
    def event_id(self) -> str:
        return self.event.event_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event.to_dict(),
            "tier": self.tier.value,
            "content_hash": self.content_hash,
        }
