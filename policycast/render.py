"""Message rendering for event and digest notifications."""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

from .models import ClassifiedEvent
from .tasks import Notification

if TYPE_CHECKING:
    from .digest import DigestWindow
    from .ledger.records import LedgerRecord


def render_event(classified: ClassifiedEvent) -> Notification:
    event = classified.event
    subject = f"[{classified.tier.value.upper()}] policy {event.policy} {event.change.value}"
    lines = [
        f"Policy: {event.policy}",
        f"Change: {event.change.value}",
        f"Impact: {classified.tier.value}",
        f"Actor: {event.actor}",
        f"At: {event.timestamp.isoformat()}",
        f"Event: {event.event_id}",
    ]
    if event.diff:
        lines.append("")
        lines.append("Changed keys: " + ", ".join(sorted(str(k) for k in event.diff)))
    return Notification(
        subject=subject,
        body="\n".join(lines) + "\n",
        data={
            "event_id": event.event_id,
            "policy": event.policy,
            "change": event.change.value,
            "tier": classified.tier.value,
            "actor": event.actor,
            "timestamp": event.timestamp.isoformat(),
            "content_hash": classified.content_hash,
            "diff": event.diff,
        },
    )


def render_digest(window: "DigestWindow", records: Sequence["LedgerRecord"]) -> Notification:
    start = window.start.isoformat()
    end = window.end.isoformat()
    subject = f"Policy change digest: {len(records)} change(s) {start} to {end}"
    lines = [
        f"Policy changes recorded from {start} (inclusive) to {end} (exclusive).",
        "",
    ]
    for r in records:
        tier = r.tier.value if r.tier else "-"
        lines.append(
            f"- [{tier}] {r.details.get('policy', '?')} {r.details.get('change', '?')}"
            f" by {r.details.get('actor', 'unknown')} ({r.event_id})"
        )
    return Notification(
        subject=subject,
        body="\n".join(lines) + "\n",
        data={
            "window_id": window.window_id,
            "start": start,
            "end": end,
            "event_ids": list(window.event_ids),
        },
    )
