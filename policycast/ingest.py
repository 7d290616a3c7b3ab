"""
Event ingestor: validation, sequencing and deduplication of inbound events.

Rejection has no side effects: a rejected payload consumes no sequence
number and its id is not remembered.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Mapping

from .errors import ValidationError
from .models import ChangeKind, ImpactTier, PolicyChangeEvent
from .util import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

# Accepted aliases for inbound field names.
_ALIASES = {
    "id": ("id", "event_id"),
    "policy": ("policy", "policy_name"),
    "change": ("change", "change_type"),
    "actor": ("actor",),
    "timestamp": ("timestamp",),
    "diff": ("diff",),
    "hint": ("hint", "severity_hint"),
}


def _field(raw: Mapping[str, Any], name: str) -> Any:
    for key in _ALIASES[name]:
        if key in raw:
            return raw[key]
    return None


def _required_str(raw: Mapping[str, Any], name: str) -> str:
    value = _field(raw, name)
    if value is None:
        raise ValidationError(name, "required field is missing", reason="missing")
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(name, "must be a non-empty string")
    return value.strip()


def parse_event(
    raw: Mapping[str, Any],
    *,
    now: datetime,
    clock_skew: timedelta,
) -> PolicyChangeEvent:
    """
    Validate a raw payload and build a PolicyChangeEvent (ingest_seq = 0).

    Raises ValidationError naming the offending field.
    """
    if not isinstance(raw, Mapping):
        raise ValidationError("payload", "event payload must be an object")

    event_id = _required_str(raw, "id")
    policy = _required_str(raw, "policy")

    change_raw = _required_str(raw, "change").lower()
    try:
        change = ChangeKind(change_raw)
    except ValueError:
        raise ValidationError("change", f"unknown change type {change_raw!r}") from None

    ts_raw = _field(raw, "timestamp")
    if ts_raw is None:
        raise ValidationError("timestamp", "required field is missing", reason="missing")
    try:
        timestamp = parse_timestamp(ts_raw)
    except ValueError:
        raise ValidationError("timestamp", f"not an ISO-8601 timestamp: {ts_raw!r}") from None
    if timestamp > now + clock_skew:
        raise ValidationError(
            "timestamp",
            f"{timestamp.isoformat()} is in the future (now {now.isoformat()})",
            reason="future",
        )

    hint_raw = _field(raw, "hint")
    hint: ImpactTier | None = None
    if hint_raw is not None and hint_raw != "":
        try:
            hint = ImpactTier(str(hint_raw).strip().lower())
        except ValueError:
            raise ValidationError("hint", f"unknown severity hint {hint_raw!r}") from None

    diff = _field(raw, "diff")
    if diff is None:
        diff = {}
    if not isinstance(diff, Mapping):
        raise ValidationError("diff", "must be an object")

    actor = _field(raw, "actor")
    if actor is not None and not isinstance(actor, str):
        raise ValidationError("actor", "must be a string")

    return PolicyChangeEvent(
        event_id=event_id,
        policy=policy,
        change=change,
        timestamp=timestamp,
        actor=(actor or "").strip() or "unknown",
        diff=dict(diff),
        severity_hint=hint,
    )


class EventIngestor:
    """
    Validates inbound payloads and assigns ingestion sequence numbers.

    Thread-safe: concurrent ingest() calls get distinct, increasing sequence
    numbers and a duplicate id is accepted at most once.
    """

    def __init__(
        self,
        *,
        clock_skew_seconds: float = 60.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.clock_skew = timedelta(seconds=clock_skew_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._seen: set[str] = set()
        self._next_seq = 1

    def seed(self, event_ids: Iterable[str], last_seq: int = 0) -> None:
        """Restore dedup state and the sequence counter after a restart."""
        with self._lock:
            self._seen.update(event_ids)
            self._next_seq = max(self._next_seq, last_seq + 1)

    def seen(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._seen

    def ingest(self, raw: Mapping[str, Any]) -> PolicyChangeEvent:
        """Validate, deduplicate and sequence one payload."""
        event = parse_event(raw, now=self._clock(), clock_skew=self.clock_skew)

        with self._lock:
            if event.event_id in self._seen:
                logger.warning("Dropping duplicate event %s (policy %s)", event.event_id, event.policy)
                raise ValidationError("id", f"duplicate event {event.event_id!r}", reason="duplicate")
            self._seen.add(event.event_id)
            seq = self._next_seq
            self._next_seq += 1

        logger.debug("Ingested event %s as seq %d", event.event_id, seq)
        return replace(event, ingest_seq=seq)
