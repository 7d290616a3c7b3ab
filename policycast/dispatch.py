"""
Dispatcher: runs delivery tasks on a worker pool with retry and recording.

Orchestrates: [ledger check] -> deliver() -> retry/backoff -> terminal record

Key invariants:
- One task's attempts run serially in one worker; a task id already in
  flight is never submitted twice
- Different channels of one event run concurrently
- Every task ends in exactly one ledger record (DELIVERED or ABANDONED)
- A task is only cancelled before its first attempt; running attempts finish
- LedgerWriteFault is never swallowed: it is reported to the fault handler
  and re-raised from the task's future
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Iterable

from .alerts import OperatorAlerts
from .channels.base import DeliveryOutcome
from .channels.registry import ChannelRegistry
from .errors import InvalidTransition, LedgerWriteFault
from .ledger import DeliveryLedger, LedgerRecord
from .retry import RetryPolicy
from .tasks import DeliveryTask, TaskStatus

logger = logging.getLogger(__name__)


class Dispatcher:
    """
    Concurrent delivery of tasks through their channel adapters.

    submit() returns futures at once; callers never wait on adapters unless
    they choose to (drain() or future.result()).
    """

    def __init__(
        self,
        registry: ChannelRegistry,
        ledger: DeliveryLedger,
        alerts: OperatorAlerts,
        retry: RetryPolicy,
        *,
        max_workers: int = 8,
        sleep: Callable[[float], None] = time.sleep,
        on_fault: Callable[[LedgerWriteFault], None] | None = None,
    ):
        self.registry = registry
        self.ledger = ledger
        self.alerts = alerts
        self.retry = retry
        self._sleep = sleep
        self._on_fault = on_fault
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="policycast-dispatch")
        # Re-entrant: Future.cancel() and add_done_callback() may run _forget
        # synchronously in a thread that already holds the lock.
        self._lock = threading.RLock()
        self._pending: dict[str, tuple[DeliveryTask, Future]] = {}
        self._closed = False

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def submit(self, tasks: Iterable[DeliveryTask]) -> list[Future]:
        """Queue tasks for delivery; each future resolves to the final TaskStatus."""
        futures: list[Future] = []
        with self._lock:
            if self._closed:
                raise RuntimeError("dispatcher is shut down")
            for task in tasks:
                existing = self._pending.get(task.task_id)
                if existing is not None:
                    futures.append(existing[1])
                    continue
                future = self._executor.submit(self.run, task)
                self._pending[task.task_id] = (task, future)
                future.add_done_callback(lambda _f, tid=task.task_id: self._forget(tid))
                futures.append(future)
        return futures

    def _forget(self, task_id: str) -> None:
        with self._lock:
            self._pending.pop(task_id, None)

    def in_flight(self) -> list[str]:
        with self._lock:
            return sorted(self._pending)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def run(self, task: DeliveryTask) -> TaskStatus:
        """
        Deliver one task in the calling thread, retrying per the policy.

        Returns the final status. Raises LedgerWriteFault if the outcome
        could not be recorded.
        """
        try:
            return self._run(task)
        except LedgerWriteFault as e:
            logger.critical("Ledger write fault while delivering %s: %s", task.task_id, e)
            if self._on_fault is not None:
                self._on_fault(e)
            raise

    def _run(self, task: DeliveryTask) -> TaskStatus:
        existing = self.ledger.record_for_task(task.task_id)
        if existing is not None:
            logger.info("Task %s already recorded as %s, not resending", task.task_id, existing.status.value)
            return existing.status

        adapter = self.registry.get(task.channel)
        if adapter is None:
            try:
                task.transition(TaskStatus.ABANDONED, error=f"no adapter for channel {task.channel!r}")
            except InvalidTransition:
                # Cancelled by shutdown(), which records it.
                return task.status
            self._record_abandoned(task)
            return task.status

        while True:
            try:
                task.transition(TaskStatus.IN_FLIGHT)
            except InvalidTransition:
                # Cancelled before the first attempt began.
                logger.debug("Task %s cancelled before delivery", task.task_id)
                return task.status

            try:
                outcome = adapter.deliver(task)
            except LedgerWriteFault:
                raise
            except Exception as e:
                logger.exception("Adapter %s raised unexpectedly for %s", adapter.channel, task.task_id)
                outcome = DeliveryOutcome.failed(f"{type(e).__name__}: {e}", retryable=False)

            if outcome.delivered:
                task.transition(TaskStatus.DELIVERED)
                if not adapter.metadata.records_outcome:
                    self.ledger.append(LedgerRecord.from_task(task))
                logger.info("Delivered %s after %d attempt(s)", task.task_id, task.attempts)
                return task.status

            if not outcome.retryable or self.retry.exhausted(task.attempts):
                task.transition(TaskStatus.ABANDONED, error=outcome.reason)
                self._record_abandoned(task)
                return task.status

            task.transition(TaskStatus.FAILED, error=outcome.reason)
            delay = self.retry.delay_after(task.attempts)
            logger.info(
                "Retrying %s in %.1fs (attempt %d/%d failed: %s)",
                task.task_id, delay, task.attempts, self.retry.max_attempts, outcome.reason,
            )
            self._sleep(delay)

    def _record_abandoned(self, task: DeliveryTask) -> None:
        self.ledger.append(LedgerRecord.from_task(task))
        self.alerts.task_abandoned(task.task_id, task.channel, task.last_error, task.attempts)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def drain(self, timeout: float | None = None) -> bool:
        """Wait for queued and running tasks. Returns True if all finished."""
        with self._lock:
            futures = [f for _, f in self._pending.values()]
        if not futures:
            return True
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    def shutdown(self, *, cancel_pending: bool = True, wait_for_running: bool = True) -> list[str]:
        """
        Stop accepting tasks.

        With ``cancel_pending``, tasks whose first attempt has not started
        are abandoned (reason ``cancelled``), recorded and alerted. Attempts
        already running finish. Returns the cancelled task ids.
        """
        cancelled: list[DeliveryTask] = []
        with self._lock:
            self._closed = True
            if cancel_pending:
                for task, future in list(self._pending.values()):
                    if task.try_cancel():
                        future.cancel()
                        cancelled.append(task)

        try:
            for task in cancelled:
                self._record_abandoned(task)
        except LedgerWriteFault as e:
            if self._on_fault is not None:
                self._on_fault(e)
            raise
        finally:
            self._executor.shutdown(wait=wait_for_running)

        return [t.task_id for t in cancelled]
