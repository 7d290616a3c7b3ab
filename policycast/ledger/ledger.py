"""
Append-only delivery ledger.

Stores terminal delivery outcomes in <state_dir>/ledger.jsonl.
Key property: append-only, never rewritten.

Every append is a single write of one JSON line followed by flush and
fsync, done under one lock, so concurrent callers are linearized here and
readers never see half a record.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Collection, Iterator

from ..errors import LedgerWriteFault
from ..models import ImpactTier
from ..tasks import TaskStatus
from ..util import utc_now
from .records import LedgerRecord

logger = logging.getLogger(__name__)


class DeliveryLedger:
    """Append-only ledger of delivery task outcomes.

    Storage format: JSON Lines (.jsonl) - one record per line
    Location: ledger.jsonl inside the pipeline state directory

    INVARIANT: at most one record per task_id. A second append for the same
    task returns the first record and writes nothing.
    """

    FILENAME = "ledger.jsonl"

    def __init__(self, state_dir: Path, *, clock: Callable[[], datetime] = utc_now):
        """Initialize ledger for a state directory.

        Args:
            state_dir: Directory holding pipeline state
            clock: Source of append timestamps (UTC)
        """
        self.state_dir = state_dir
        self.ledger_path = state_dir / self.FILENAME
        self._clock = clock
        self._lock = threading.Lock()

        self._records: list[LedgerRecord] = []
        self._by_task: dict[str, int] = {}
        self._by_event: dict[str, list[int]] = {}
        self._needs_newline = False
        # No record appended from now on is stamped earlier than this.
        self._floor: datetime | None = None
        self._load()

    # --- Loading ---

    def _load(self) -> None:
        """Read existing records, skipping malformed lines and a torn tail."""
        if not self.ledger_path.exists():
            return

        raw = self.ledger_path.read_text(encoding="utf-8")
        lines = raw.split("\n")
        # A file that does not end in a newline has a partial final record.
        tail = lines.pop()
        if tail.strip():
            logger.warning("Ignoring partial trailing record in %s", self.ledger_path)
            self._needs_newline = True

        for lineno, line in enumerate(lines, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                record = LedgerRecord.from_json(line)
            except (ValueError, KeyError, TypeError):
                logger.warning("Skipping malformed ledger line %d in %s", lineno, self.ledger_path)
                continue
            if record.task_id in self._by_task:
                continue
            self._index(record)

    def _index(self, record: LedgerRecord) -> None:
        idx = len(self._records)
        self._records.append(record)
        self._by_task[record.task_id] = idx
        self._by_event.setdefault(record.event_id, []).append(idx)

    # --- Mutation ---

    def append(self, record: LedgerRecord) -> LedgerRecord:
        """
        Append a terminal record and return it with sequence and timestamp set.

        This is the only write operation. Records are never modified or
        deleted. Raises LedgerWriteFault if the record could not be made
        durable; in that case nothing is added.
        """
        with self._lock:
            existing = self._by_task.get(record.task_id)
            if existing is not None:
                logger.debug("Ledger already holds a record for task %s", record.task_id)
                return self._records[existing]

            last = self._records[-1] if self._records else None
            recorded_at = self._clock()
            if last is not None and last.recorded_at is not None and recorded_at < last.recorded_at:
                recorded_at = last.recorded_at
            if self._floor is not None and recorded_at < self._floor:
                recorded_at = self._floor
            stored = replace(
                record,
                sequence=(last.sequence + 1) if last else 1,
                recorded_at=recorded_at,
            )

            line = stored.to_json() + "\n"
            if self._needs_newline:
                line = "\n" + line
            try:
                self.state_dir.mkdir(parents=True, exist_ok=True)
                with self.ledger_path.open("a", encoding="utf-8") as f:
                    f.write(line)
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                # Part of the line may have reached the file.
                self._needs_newline = True
                raise LedgerWriteFault(f"cannot append to {self.ledger_path}: {e}") from e

            self._needs_newline = False
            self._index(stored)
            return stored

    def advance_floor(self, when: datetime) -> None:
        """
        Guarantee every later append is stamped at or after ``when``.

        The digest scheduler calls this before reading a window so that no
        record can land inside a window after it has been sealed.
        """
        with self._lock:
            if self._floor is None or when > self._floor:
                self._floor = when

    # --- Query methods ---

    def query(self, event_id: str) -> list[LedgerRecord]:
        """All records for an event, in append order."""
        with self._lock:
            return [self._records[i] for i in self._by_event.get(event_id, [])]

    def record_for_task(self, task_id: str) -> LedgerRecord | None:
        with self._lock:
            idx = self._by_task.get(task_id)
            return self._records[idx] if idx is not None else None

    def has_terminal(self, task_id: str) -> bool:
        return self.record_for_task(task_id) is not None

    def iter_records(self) -> Iterator[LedgerRecord]:
        """Iterate over a snapshot of all records in append order."""
        with self._lock:
            snapshot = list(self._records)
        yield from snapshot

    def records_between(
        self,
        start: datetime,
        end: datetime,
        *,
        channel: str | None = None,
        tiers: Collection[ImpactTier] | None = None,
        status: TaskStatus | None = None,
    ) -> list[LedgerRecord]:
        """Records with start <= recorded_at < end, optionally filtered."""
        out = []
        for r in self.iter_records():
            if r.recorded_at is None or not (start <= r.recorded_at < end):
                continue
            if channel is not None and r.channel != channel:
                continue
            if tiers is not None and r.tier not in tiers:
                continue
            if status is not None and r.status != status:
                continue
            out.append(r)
        return out

    def event_ids(self) -> set[str]:
        with self._lock:
            return set(self._by_event)

    def last_sequence(self) -> int:
        with self._lock:
            return self._records[-1].sequence if self._records else 0

    def last_ingest_seq(self) -> int:
        """Highest ingestion sequence number seen in recorded event tasks."""
        best = 0
        for r in self.iter_records():
            seq = r.details.get("ingest_seq")
            if isinstance(seq, int) and seq > best:
                best = seq
        return best

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    # --- Summary methods ---

    def summary(self) -> dict:
        """Generate a summary of the ledger."""
        records = list(self.iter_records())
        if not records:
            return {"total_records": 0}

        by_channel: dict[str, dict[str, int]] = {}
        by_tier: dict[str, int] = {}
        for r in records:
            counts = by_channel.setdefault(r.channel, {})
            counts[r.status.value] = counts.get(r.status.value, 0) + 1
            tier = r.tier.value if r.tier else "none"
            by_tier[tier] = by_tier.get(tier, 0) + 1

        return {
            "total_records": len(records),
            "events": len({r.event_id for r in records}),
            "by_channel": by_channel,
            "by_tier": by_tier,
            "abandoned": [r.task_id for r in records if r.status == TaskStatus.ABANDONED],
            "time_range": {
                "earliest": records[0].recorded_at.isoformat() if records[0].recorded_at else None,
                "latest": records[-1].recorded_at.isoformat() if records[-1].recorded_at else None,
            },
        }

    def format_summary(self) -> str:
        """Format summary as markdown."""
        s = self.summary()
        if s["total_records"] == 0:
            return "No delivery records."

        lines = [
            "# Delivery Ledger Summary",
            "",
            f"- Total records: {s['total_records']}",
            f"- Events: {s['events']}",
            f"- Time range: {s['time_range']['earliest']} to {s['time_range']['latest']}",
            "",
            "## Channels",
            "",
            "| Channel | Delivered | Abandoned |",
            "|---------|----------:|----------:|",
        ]
        for channel, counts in sorted(s["by_channel"].items()):
            lines.append(
                f"| {channel} | {counts.get('delivered', 0)} | {counts.get('abandoned', 0)} |"
            )

        lines.extend([
            "",
            "## Tiers",
            "",
            "| Tier | Records |",
            "|------|--------:|",
        ])
        for tier, count in sorted(s["by_tier"].items()):
            lines.append(f"| {tier} | {count} |")

        if s["abandoned"]:
            lines.extend(["", "## Abandoned Tasks", ""])
            for task_id in s["abandoned"]:
                lines.append(f"- {task_id}")

        return "\n".join(lines) + "\n"
