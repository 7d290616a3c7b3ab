"""Tests for retry policy and the dispatcher."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from conftest import FakeAdapter, FakeClock, no_sleep
from policycast.alerts import TASK_ABANDONED, OperatorAlerts
from policycast.channels import ChannelAdapter, ChannelMetadata, ChannelRegistry, LedgerChannel
from policycast.dispatch import Dispatcher
from policycast.errors import LedgerWriteFault
from policycast.ledger import DeliveryLedger
from policycast.models import ImpactTier
from policycast.retry import RetryPolicy
from policycast.tasks import DeliveryTask, Notification, TaskStatus, task_id_for


def _task(channel: str, event_id: str = "evt-1") -> DeliveryTask:
    return DeliveryTask(
        task_id=task_id_for(event_id, channel),
        event_id=event_id,
        channel=channel,
        tier=ImpactTier.HIGH,
        content_hash="sha256:abc",
        notification=Notification(subject="[HIGH] policy p updated", body="body\n"),
        details={"policy": "p", "change": "updated", "actor": "alice", "ingest_seq": 1},
    )


class TestRetryPolicy:
    def test_schedule_doubles_up_to_cap(self):
        policy = RetryPolicy(initial_delay=1.0, max_delay=5.0, multiplier=2.0, max_attempts=5)
        assert policy.schedule() == [1.0, 2.0, 4.0, 5.0]

    def test_exhausted(self):
        policy = RetryPolicy(max_attempts=3)
        assert not policy.exhausted(2)
        assert policy.exhausted(3)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"initial_delay": -1},
            {"initial_delay": 10, "max_delay": 1},
            {"multiplier": 0.5},
            {"max_attempts": 0},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class Harness:
    def __init__(self, state_dir: Path, *adapters: ChannelAdapter, max_attempts: int = 5):
        self.ledger = DeliveryLedger(state_dir, clock=FakeClock())
        self.alerts = OperatorAlerts(state_dir)
        self.sleeps: list[float] = []
        self.faults: list[LedgerWriteFault] = []
        registry = ChannelRegistry(adapters)
        registry.register(LedgerChannel(self.ledger))
        self.dispatcher = Dispatcher(
            registry,
            self.ledger,
            self.alerts,
            RetryPolicy(initial_delay=1.0, max_delay=8.0, multiplier=2.0, max_attempts=max_attempts),
            max_workers=4,
            sleep=self.sleeps.append,
            on_fault=self.faults.append,
        )


class TestDispatcher:
    def test_delivered_first_try(self, tmp_path: Path):
        webhook = FakeAdapter("webhook")
        h = Harness(tmp_path, webhook)
        assert h.dispatcher.run(_task("webhook")) == TaskStatus.DELIVERED
        record = h.ledger.record_for_task("evt-1:webhook")
        assert record is not None and record.attempts == 1
        assert h.sleeps == []

    def test_transient_failures_are_retried_with_backoff(self, tmp_path: Path):
        webhook = FakeAdapter("webhook", failures=3)
        h = Harness(tmp_path, webhook)
        assert h.dispatcher.run(_task("webhook")) == TaskStatus.DELIVERED
        assert h.sleeps == [1.0, 2.0, 4.0]
        assert h.ledger.record_for_task("evt-1:webhook").attempts == 4

    def test_exhausted_retries_abandon_and_alert(self, tmp_path: Path):
        webhook = FakeAdapter("webhook", failures=-1)
        h = Harness(tmp_path, webhook)
        assert h.dispatcher.run(_task("webhook")) == TaskStatus.ABANDONED
        assert len(webhook.attempts) == 5
        record = h.ledger.record_for_task("evt-1:webhook")
        assert record.status == TaskStatus.ABANDONED
        assert record.reason == "webhook unavailable"
        alerts = h.alerts.alerts()
        assert [(a.kind, a.subject) for a in alerts] == [(TASK_ABANDONED, "evt-1:webhook")]

    def test_permanent_failure_abandons_at_once(self, tmp_path: Path):
        sms = FakeAdapter("sms", failures=-1, permanent=True)
        h = Harness(tmp_path, sms)
        assert h.dispatcher.run(_task("sms")) == TaskStatus.ABANDONED
        assert len(sms.attempts) == 1
        assert h.sleeps == []

    def test_unexpected_exception_abandons(self, tmp_path: Path):
        class Broken(FakeAdapter):
            def send(self, task):
                raise RuntimeError("boom")

        h = Harness(tmp_path, Broken("email"))
        assert h.dispatcher.run(_task("email")) == TaskStatus.ABANDONED
        assert "RuntimeError: boom" in h.ledger.record_for_task("evt-1:email").reason

    def test_missing_adapter_abandons(self, tmp_path: Path):
        h = Harness(tmp_path)
        assert h.dispatcher.run(_task("sms")) == TaskStatus.ABANDONED
        assert "no adapter" in h.ledger.record_for_task("evt-1:sms").reason

    def test_cancelled_task_without_adapter(self, tmp_path: Path):
        # shutdown() cancelled the task just as a worker picked it up.
        h = Harness(tmp_path)
        task = _task("sms")
        assert task.try_cancel()
        assert h.dispatcher.run(task) == TaskStatus.ABANDONED
        assert h.ledger.count() == 0
        assert h.alerts.alerts() == []

    def test_recorded_task_is_not_resent(self, tmp_path: Path):
        webhook = FakeAdapter("webhook")
        h = Harness(tmp_path, webhook)
        h.dispatcher.run(_task("webhook"))
        assert h.dispatcher.run(_task("webhook")) == TaskStatus.DELIVERED
        assert len(webhook.attempts) == 1

    def test_ledger_channel_writes_single_record(self, tmp_path: Path):
        h = Harness(tmp_path)
        assert h.dispatcher.run(_task("ledger")) == TaskStatus.DELIVERED
        assert h.ledger.count() == 1

    def test_submit_runs_channels_concurrently(self, tmp_path: Path):
        barrier = threading.Barrier(3, timeout=5)

        class Rendezvous(FakeAdapter):
            def send(self, task):
                barrier.wait()
                super().send(task)

        adapters = [Rendezvous(c) for c in ("webhook", "sms", "email")]
        h = Harness(tmp_path, *adapters)
        futures = h.dispatcher.submit([_task(c) for c in ("webhook", "sms", "email")])
        assert [f.result(timeout=10) for f in futures] == [TaskStatus.DELIVERED] * 3
        h.dispatcher.shutdown()

    def test_duplicate_submit_shares_future(self, tmp_path: Path):
        release = threading.Event()

        class Slow(FakeAdapter):
            def send(self, task):
                release.wait(5)
                super().send(task)

        slow = Slow("webhook")
        h = Harness(tmp_path, slow)
        first = h.dispatcher.submit([_task("webhook")])
        second = h.dispatcher.submit([_task("webhook")])
        assert first[0] is second[0]
        release.set()
        assert first[0].result(timeout=10) == TaskStatus.DELIVERED
        assert len(slow.attempts) == 1
        h.dispatcher.shutdown()

    def test_shutdown_cancels_tasks_not_started(self, tmp_path: Path):
        started = threading.Event()
        release = threading.Event()

        class Blocking(FakeAdapter):
            def send(self, task):
                started.set()
                release.wait(5)
                super().send(task)

        ledger = DeliveryLedger(tmp_path, clock=FakeClock())
        alerts = OperatorAlerts(tmp_path)
        dispatcher = Dispatcher(
            ChannelRegistry([Blocking("webhook")]),
            ledger,
            alerts,
            RetryPolicy(),
            max_workers=1,
            sleep=no_sleep,
        )
        running, queued = dispatcher.submit([_task("webhook", "a"), _task("webhook", "b")])
        assert started.wait(5)

        threading.Timer(0.2, release.set).start()
        cancelled = dispatcher.shutdown(cancel_pending=True, wait_for_running=True)

        assert cancelled == ["b:webhook"]
        assert running.result(timeout=5) == TaskStatus.DELIVERED
        assert queued.cancelled()
        record = ledger.record_for_task("b:webhook")
        assert record.status == TaskStatus.ABANDONED
        assert record.reason == "cancelled"
        assert record.attempts == 0

    def test_submit_after_shutdown_fails(self, tmp_path: Path):
        h = Harness(tmp_path)
        h.dispatcher.shutdown()
        with pytest.raises(RuntimeError):
            h.dispatcher.submit([_task("ledger")])

    def test_ledger_fault_reported_and_raised(self, tmp_path: Path):
        class FailingLedger(ChannelAdapter):
            @property
            def metadata(self):
                return ChannelMetadata(channel="ledger", transport="broken", records_outcome=True)

            def send(self, task):
                raise LedgerWriteFault("disk full")

        h = Harness(tmp_path)
        h.dispatcher.registry.register(FailingLedger())
        with pytest.raises(LedgerWriteFault):
            h.dispatcher.run(_task("ledger"))
        assert len(h.faults) == 1
        assert h.ledger.count() == 0
