"""
End-to-end tests for the notification pipeline.

Key scenarios:
1. A HIGH event fans out to every immediate channel and is recorded once per task
2. A channel failing every attempt is abandoned with one operator alert
   while the other channels still deliver
3. Duplicates and invalid payloads are rejected without side effects
4. A ledger write fault halts the pipeline
"""

from __future__ import annotations

from dataclasses import replace

import pytest

from conftest import FakeAdapter, event_payload, no_sleep
from policycast.alerts import LEDGER_WRITE_FAULT, TASK_ABANDONED
from policycast.config import EMAIL, LEDGER, SMS, WEBHOOK, ChannelsConfig, PipelineConfig, WebhookConfig
from policycast.errors import ConfigError, LedgerWriteFault, PipelineHalted, StateLocked
from policycast.models import ImpactTier
from policycast.pipeline import Accepted, Rejected, build_adapters, build_pipeline
from policycast.tasks import TaskStatus


def test_high_event_fans_out(pipeline, adapters):
    result = pipeline.submit_event(event_payload("p1", hint="high"))

    assert isinstance(result, Accepted)
    assert result.classified.tier == ImpactTier.HIGH
    statuses = result.wait(timeout=10)
    assert statuses == {f"p1:{c}": TaskStatus.DELIVERED for c in (WEBHOOK, SMS, EMAIL, LEDGER)}

    records = pipeline.ledger.query("p1")
    assert sorted(r.channel for r in records) == sorted([WEBHOOK, SMS, EMAIL, LEDGER])
    assert all(r.status == TaskStatus.DELIVERED for r in records)
    assert len({r.task_id for r in records}) == 4
    for name in (WEBHOOK, SMS, EMAIL):
        assert [t.task_id for t in adapters[name].sent] == [f"p1:{name}"]


def test_failing_webhook_is_abandoned_others_delivered(pipeline, adapters):
    adapters[WEBHOOK].failures = -1

    result = pipeline.submit_event(event_payload("p1", hint="high"))
    statuses = result.wait(timeout=10)

    assert statuses["p1:webhook"] == TaskStatus.ABANDONED
    assert len(adapters[WEBHOOK].attempts) == 5
    for channel in (SMS, EMAIL, LEDGER):
        assert statuses[f"p1:{channel}"] == TaskStatus.DELIVERED

    webhook_record = pipeline.ledger.record_for_task("p1:webhook")
    assert webhook_record.status == TaskStatus.ABANDONED
    assert webhook_record.attempts == 5

    alerts = pipeline.alerts.alerts()
    assert [(a.kind, a.subject) for a in alerts] == [(TASK_ABANDONED, "p1:webhook")]


def test_duplicate_event_creates_no_second_task_set(pipeline, adapters):
    first = pipeline.submit_event(event_payload("dup", hint="high"))
    first.wait(timeout=10)
    second = pipeline.submit_event(event_payload("dup", hint="high"))

    assert isinstance(second, Rejected)
    assert second.reason == "duplicate"
    assert len(pipeline.ledger.query("dup")) == 4
    assert len(adapters[WEBHOOK].attempts) == 1


def test_duplicate_after_restart(config, clock):
    adapters = {c: FakeAdapter(c) for c in (WEBHOOK, SMS, EMAIL)}
    with build_pipeline(config, adapters.values(), sleep=no_sleep, clock=clock) as first:
        first.submit_event(event_payload("dup", hint="high")).wait(timeout=10)

    with build_pipeline(config, adapters.values(), sleep=no_sleep, clock=clock) as second:
        result = second.submit_event(event_payload("dup", hint="high"))
        assert isinstance(result, Rejected)
        accepted = second.submit_event(event_payload("next", hint="low", change="deleted", policy="x"))
        assert accepted.classified.event.ingest_seq == 2


def test_invalid_event_rejected(pipeline, adapters):
    result = pipeline.submit_event(event_payload("bad", change="renamed"))
    assert isinstance(result, Rejected)
    assert result.error.field == "change"
    assert pipeline.ledger.count() == 0
    # Not remembered: a corrected payload with the same id is accepted.
    assert pipeline.submit_event(event_payload("bad")).accepted


def test_low_event_only_reaches_ledger(pipeline, adapters):
    result = pipeline.submit_event(event_payload("low", policy="naming", change="deleted"))
    statuses = result.wait(timeout=10)
    assert statuses == {"low:ledger": TaskStatus.DELIVERED}
    assert result.plan.deferred
    assert all(a.sent == [] for a in adapters.values())


def test_ledger_fault_halts_pipeline(pipeline, adapters):
    def broken_append(record):
        raise LedgerWriteFault("disk full")

    pipeline.ledger.append = broken_append  # type: ignore[method-assign]

    result = pipeline.submit_event(event_payload("p1", hint="high"))
    with pytest.raises(LedgerWriteFault):
        result.wait(timeout=10)

    assert pipeline.halted
    with pytest.raises(PipelineHalted):
        pipeline.submit_event(event_payload("p2", hint="high"))
    pipeline.drain(timeout=10)
    kinds = [a.kind for a in pipeline.alerts.alerts()]
    assert kinds.count(LEDGER_WRITE_FAULT) == 1


def test_submit_after_close(pipeline):
    pipeline.close()
    with pytest.raises(PipelineHalted):
        pipeline.submit_event(event_payload("late"))


class TestBuildPipeline:
    def test_missing_adapter_is_config_error(self, config):
        with pytest.raises(ConfigError, match="email, sms"):
            build_pipeline(config, [FakeAdapter(WEBHOOK)])

    def test_digest_needs_email(self, config: PipelineConfig):
        from policycast.config import RoutingTable, TierRoute

        routing = RoutingTable(
            routes={
                ImpactTier.HIGH: TierRoute(immediate=(WEBHOOK, LEDGER)),
                ImpactTier.MEDIUM: TierRoute(immediate=(LEDGER,), digest=True),
                ImpactTier.LOW: TierRoute(immediate=(LEDGER,), digest=True),
            }
        )
        with pytest.raises(ConfigError, match="email"):
            build_pipeline(replace(config, routing=routing), [FakeAdapter(WEBHOOK)])

    def test_build_adapters_from_config(self):
        channels = ChannelsConfig(webhook=WebhookConfig(url="https://hooks.example.com"))
        adapters = build_adapters(channels)
        assert [a.channel for a in adapters] == [WEBHOOK]

    def test_state_is_created_lazily(self, config: PipelineConfig):
        p = build_pipeline(config, [FakeAdapter(c) for c in (WEBHOOK, SMS, EMAIL)], sleep=no_sleep)
        p.close()
        assert not (config.state_dir / "ledger.jsonl").exists()


class TestStateDirLock:
    def test_second_pipeline_on_same_state_dir_is_refused(self, pipeline, config, adapters):
        with pytest.raises(StateLocked, match="in use"):
            build_pipeline(config, adapters.values(), sleep=no_sleep)

        # The running pipeline is untouched and still delivers exactly once.
        pipeline.submit_event(event_payload("p1", hint="high")).wait(timeout=10)
        assert len(adapters[WEBHOOK].sent) == 1
        assert [r.sequence for r in pipeline.ledger.iter_records()] == [1, 2, 3, 4]

    def test_lock_released_on_close(self, config, clock):
        adapters = [FakeAdapter(c) for c in (WEBHOOK, SMS, EMAIL)]
        first = build_pipeline(config, adapters, sleep=no_sleep, clock=clock)
        first.close()
        with build_pipeline(config, adapters, sleep=no_sleep, clock=clock) as second:
            assert second.state_lock.held

    def test_config_error_does_not_take_lock(self, config):
        with pytest.raises(ConfigError):
            build_pipeline(config, [FakeAdapter(WEBHOOK)])
        with build_pipeline(config, [FakeAdapter(c) for c in (WEBHOOK, SMS, EMAIL)], sleep=no_sleep):
            pass
