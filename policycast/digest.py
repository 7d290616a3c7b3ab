"""
Digest scheduler.

Periodically gathers LOW/MEDIUM events from the delivery ledger into one
summary and sends it through the email channel as a single task.

Windows are [start, end), contiguous, and sealed in
<state_dir>/digest_windows.jsonl before anything is sent. A restart resumes
from the last sealed end and re-sends any sealed window whose digest task
has no ledger record yet, so there is no gap and no duplicate window.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from .config.schema import EMAIL, LEDGER, RoutingTable
from .dispatch import Dispatcher
from .errors import LedgerWriteFault, PipelineHalted
from .ledger import DeliveryLedger, LedgerRecord
from .render import render_digest
from .tasks import DeliveryTask, TaskStatus, task_id_for
from .util import EPOCH, content_hash, ensure_utc, parse_timestamp, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DigestWindow:
    """A sealed digest window; never reopened."""

    window_id: str
    start: datetime
    end: datetime
    event_ids: tuple[str, ...]
    sealed_at: datetime

    @property
    def digest_event_id(self) -> str:
        return f"digest:{self.window_id}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "window_id": self.window_id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "event_ids": list(self.event_ids),
            "sealed_at": self.sealed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DigestWindow":
        return cls(
            window_id=data["window_id"],
            start=parse_timestamp(data["start"]),
            end=parse_timestamp(data["end"]),
            event_ids=tuple(data.get("event_ids", [])),
            sealed_at=parse_timestamp(data["sealed_at"]),
        )


def window_id_for(start: datetime) -> str:
    return start.strftime("%Y%m%dT%H%M%S%fZ")


class DigestWindowStore:
    """Append-only log of sealed windows."""

    FILENAME = "digest_windows.jsonl"

    def __init__(self, state_dir: Path):
        self.state_dir = state_dir
        self.path = state_dir / self.FILENAME

    def windows(self) -> list[DigestWindow]:
        if not self.path.exists():
            return []
        windows = []
        with self.path.open("r", encoding="utf-8") as f:
            for line in f:
                if not line.endswith("\n"):
                    # Torn final write: the window was never sealed.
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    windows.append(DigestWindow.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError):
                    logger.warning("Skipping malformed digest window in %s", self.path)
        return windows

    def last_end(self) -> datetime | None:
        windows = self.windows()
        return windows[-1].end if windows else None

    def _torn_tail(self) -> bool:
        """True if the file ends in a partial line left by an interrupted seal."""
        try:
            with self.path.open("rb") as f:
                f.seek(0, os.SEEK_END)
                if f.tell() == 0:
                    return False
                f.seek(-1, os.SEEK_END)
                return f.read(1) != b"\n"
        except FileNotFoundError:
            return False

    def seal(self, window: DigestWindow) -> None:
        """
        Durably append a window. Raises LedgerWriteFault on I/O failure.

        A partial line left by an earlier interrupted seal is terminated
        first, so the new window starts on a line of its own.
        """
        line = json.dumps(window.to_dict(), separators=(",", ":")) + "\n"
        try:
            if self._torn_tail():
                logger.warning("Terminating partial digest window line in %s", self.path)
                line = "\n" + line
            self.state_dir.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise LedgerWriteFault(f"cannot seal digest window in {self.path}: {e}") from e


class DigestScheduler:
    """
    Periodic digest of deferred (LOW/MEDIUM) events.

    tick() is mutually exclusive with itself; it is independent of the live
    delivery path apart from sharing the ledger and dispatcher.
    """

    def __init__(
        self,
        ledger: DeliveryLedger,
        dispatcher: Dispatcher,
        routing: RoutingTable,
        *,
        state_dir: Path,
        period_seconds: float = 86400.0,
        origin: datetime = EPOCH,
        clock: Callable[[], datetime] = utc_now,
        channel: str = EMAIL,
        on_fault: Callable[[LedgerWriteFault], None] | None = None,
        halted: Callable[[], bool] | None = None,
    ):
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.digest_tiers = routing.digest_tiers()
        self.store = DigestWindowStore(state_dir)
        self.period_seconds = period_seconds
        self.origin = ensure_utc(origin)
        self.channel = channel
        self._clock = clock
        self._on_fault = on_fault
        self._halted = halted or (lambda: False)
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

        last_end = self.store.last_end()
        if last_end is not None:
            self.ledger.advance_floor(last_end)

    # -------------------------------------------------------------------------
    # Windows
    # -------------------------------------------------------------------------

    def _check_running(self) -> None:
        if self._halted():
            raise PipelineHalted("digest scheduler stopped: pipeline halted")

    def _window_records(self, start: datetime, end: datetime) -> list[LedgerRecord]:
        return self.ledger.records_between(
            start,
            end,
            channel=LEDGER,
            tiers=self.digest_tiers,
            status=TaskStatus.DELIVERED,
        )

    def _task_for(self, window: DigestWindow, records: list[LedgerRecord]) -> DeliveryTask:
        return DeliveryTask(
            task_id=task_id_for(window.digest_event_id, self.channel),
            event_id=window.digest_event_id,
            channel=self.channel,
            tier=None,
            content_hash=content_hash(
                {"window": window.to_dict(), "events": [r.content_hash for r in records]}
            ),
            notification=render_digest(window, records),
            details={
                "kind": "digest",
                "window_id": window.window_id,
                "window_start": window.start.isoformat(),
                "window_end": window.end.isoformat(),
                "event_ids": list(window.event_ids),
            },
        )

    def _send(self, window: DigestWindow, records: list[LedgerRecord]) -> TaskStatus:
        task = self._task_for(window, records)
        status = self.dispatcher.run(task)
        logger.info(
            "Digest %s (%d event(s)) finished as %s", window.window_id, len(records), status.value
        )
        return status

    def resume(self) -> list[str]:
        """
        Re-send sealed windows whose digest never reached the ledger.

        Returns the window ids that were re-sent.
        """
        resent = []
        with self._lock:
            self._check_running()
            for window in self.store.windows():
                if not window.event_ids:
                    continue
                task_id = task_id_for(window.digest_event_id, self.channel)
                if self.ledger.has_terminal(task_id):
                    continue
                wanted = set(window.event_ids)
                records = [
                    r for r in self._window_records(window.start, window.end) if r.event_id in wanted
                ]
                logger.warning("Re-sending digest for sealed window %s", window.window_id)
                self._send(window, records)
                resent.append(window.window_id)
        return resent

    def tick(self, now: datetime | None = None) -> DigestWindow | None:
        """
        Seal the window [last_end, now) and send its digest.

        Returns the sealed window, or None when ``now`` does not move past
        the last window end.
        """
        with self._lock:
            self._check_running()
            end = ensure_utc(now) if now is not None else self._clock()
            start = self.store.last_end() or self.origin
            if end <= start:
                return None

            # From here on nothing can be stamped inside [start, end).
            self.ledger.advance_floor(end)
            records = self._window_records(start, end)
            window = DigestWindow(
                window_id=window_id_for(start),
                start=start,
                end=end,
                event_ids=tuple(r.event_id for r in records),
                sealed_at=self._clock(),
            )
            try:
                self.store.seal(window)
            except LedgerWriteFault as e:
                logger.critical("Could not seal digest window %s: %s", window.window_id, e)
                if self._on_fault is not None:
                    self._on_fault(e)
                raise
            logger.info(
                "Sealed digest window %s [%s, %s) with %d event(s)",
                window.window_id, start.isoformat(), end.isoformat(), len(records),
            )

            if records:
                self._send(window, records)
            return window

    # -------------------------------------------------------------------------
    # Timer
    # -------------------------------------------------------------------------

    def run(self, stop: threading.Event | None = None) -> None:
        """Tick, then wait one period, until ``stop`` is set. Blocking."""
        stop = stop or self._stop
        try:
            self.resume()
            while not stop.is_set() and not self._halted():
                self.tick()
                if stop.wait(self.period_seconds):
                    break
        except PipelineHalted:
            logger.warning("Digest scheduler stopping: pipeline halted")
        except LedgerWriteFault:
            logger.critical("Digest scheduler stopping after ledger write fault")
            raise

    def start(self) -> threading.Thread:
        """Run the timer loop on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="policycast-digest", daemon=True)
        self._thread.start()
        return self._thread

    def request_stop(self) -> None:
        """Wake the timer loop and let it exit; safe from any thread."""
        self._stop.set()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
