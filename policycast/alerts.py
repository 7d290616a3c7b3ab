"""
Operator alerts.

Abandoned deliveries and ledger faults are reported here, on a channel
that is separate from the user-facing notification channels.

This module provides:
- Append-only alert log (<state_dir>/alerts.jsonl)
- Once-only reporting of abandoned tasks, also across restarts
- Human-readable formatting for the CLI
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .util import new_ulid, utc_now

logger = logging.getLogger(__name__)

TASK_ABANDONED = "task_abandoned"
LEDGER_WRITE_FAULT = "ledger_write_fault"


@dataclass
class OperatorAlert:
    """A single operator alert."""

    alert_id: str
    timestamp: str
    kind: str
    subject: str  # task id or ledger path
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "timestamp": self.timestamp,
            "kind": self.kind,
            "subject": self.subject,
            "message": self.message,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OperatorAlert":
        return cls(
            alert_id=data["alert_id"],
            timestamp=data["timestamp"],
            kind=data["kind"],
            subject=data["subject"],
            message=data.get("message", ""),
            metadata=data.get("metadata", {}),
        )


def get_alerts_path(state_dir: Path) -> Path:
    return state_dir / "alerts.jsonl"


def read_alerts(state_dir: Path, last_n: int | None = None) -> list[OperatorAlert]:
    """
    Read alerts from the alert log.

    Args:
        state_dir: Pipeline state directory
        last_n: If specified, return only the last N alerts

    Returns:
        List of alerts (oldest first)
    """
    path = get_alerts_path(state_dir)
    if not path.exists():
        return []

    alerts = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    alerts.append(OperatorAlert.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError):
                    continue  # Skip malformed lines

    if last_n is not None:
        return alerts[-last_n:]
    return alerts


def format_alert(alert: OperatorAlert) -> str:
    """Format an alert for human-readable display."""
    lines = [f"[{alert.timestamp}] {alert.kind} {alert.subject}", f"  {alert.message}"]
    for key, value in alert.metadata.items():
        lines.append(f"  {key}: {value}")
    return "\n".join(lines)


class OperatorAlerts:
    """Writes operator alerts; each abandoned task is reported once."""

    def __init__(self, state_dir: Path):
        self.state_dir = state_dir
        self.path = get_alerts_path(state_dir)
        self._lock = threading.Lock()
        self._reported: set[tuple[str, str]] = {
            (a.kind, a.subject) for a in read_alerts(state_dir)
        }

    def _write(self, alert: OperatorAlert) -> None:
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(alert.to_dict()) + "\n")
        except OSError:
            # The log line below is then the only trace of the alert.
            logger.exception("Could not write operator alert %s", alert.alert_id)

    def raise_alert(
        self,
        kind: str,
        subject: str,
        message: str,
        *,
        metadata: dict[str, Any] | None = None,
        once: bool = True,
    ) -> OperatorAlert | None:
        """Record an alert. With ``once``, repeats for the same kind/subject are dropped."""
        with self._lock:
            key = (kind, subject)
            if once and key in self._reported:
                return None
            self._reported.add(key)
            alert = OperatorAlert(
                alert_id=new_ulid(),
                timestamp=utc_now().isoformat(),
                kind=kind,
                subject=subject,
                message=message,
                metadata=metadata or {},
            )
            self._write(alert)

        logger.error("OPERATOR ALERT %s %s: %s", kind, subject, message)
        return alert

    def task_abandoned(self, task_id: str, channel: str, reason: str | None, attempts: int) -> OperatorAlert | None:
        return self.raise_alert(
            TASK_ABANDONED,
            task_id,
            f"delivery via {channel} abandoned after {attempts} attempt(s): {reason or 'unknown'}",
            metadata={"channel": channel, "attempts": attempts, "reason": reason},
        )

    def ledger_write_fault(self, ledger_path: Path, error: str) -> OperatorAlert | None:
        return self.raise_alert(
            LEDGER_WRITE_FAULT,
            str(ledger_path),
            f"ledger write failed, pipeline halted: {error}",
            once=False,
        )

    def alerts(self, last_n: int | None = None) -> list[OperatorAlert]:
        return read_alerts(self.state_dir, last_n=last_n)
