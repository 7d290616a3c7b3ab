"""Tests for routing, task ids and the task status machine."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import NOW, event_payload
from policycast.classifier import classify
from policycast.config import EMAIL, LEDGER, SMS, WEBHOOK, RoutingTable, TierRoute
from policycast.errors import ConfigError, InvalidTransition
from policycast.ingest import parse_event
from policycast.models import ImpactTier
from policycast.routing import DeliveryRouter
from policycast.tasks import TaskStatus, task_id_for


def _classified(**overrides):
    event = parse_event(event_payload(**overrides), now=NOW, clock_skew=timedelta(seconds=60))
    return classify(event)


class TestRouter:
    def test_high_event_gets_every_immediate_channel(self):
        router = DeliveryRouter(RoutingTable.default())
        plan = router.route(_classified(hint="high"))
        assert set(plan.channels) == {WEBHOOK, SMS, EMAIL, LEDGER}
        assert not plan.deferred
        assert {t.task_id for t in plan.tasks} == {f"evt-1:{c}" for c in plan.channels}

    @pytest.mark.parametrize("hint", ["low", "medium"])
    def test_low_and_medium_only_reach_ledger(self, hint):
        router = DeliveryRouter(RoutingTable.default())
        plan = router.route(_classified(policy="other", hint=hint))
        assert plan.channels == (LEDGER,)
        assert plan.deferred

    def test_tasks_share_one_rendered_notification(self):
        plan = DeliveryRouter(RoutingTable.default()).route(_classified(hint="high"))
        subjects = {t.notification.subject for t in plan.tasks}
        assert subjects == {"[HIGH] policy access-control updated"}

    def test_task_ids_are_deterministic(self):
        router = DeliveryRouter(RoutingTable.default())
        a = router.route(_classified(hint="high"))
        b = router.route(_classified(hint="high"))
        assert [t.task_id for t in a.tasks] == [t.task_id for t in b.tasks]

    def test_invalid_table_rejected(self):
        table = RoutingTable(
            routes={
                ImpactTier.HIGH: TierRoute(immediate=(WEBHOOK, LEDGER)),
                ImpactTier.MEDIUM: TierRoute(immediate=(LEDGER, EMAIL), digest=True),
                ImpactTier.LOW: TierRoute(immediate=(LEDGER,), digest=True),
            }
        )
        with pytest.raises(ConfigError, match="digest tiers"):
            DeliveryRouter(table)


class TestRoutingTableValidation:
    def test_default_is_valid(self):
        assert RoutingTable.default().validate() == []

    def test_missing_tier_and_ledger(self):
        table = RoutingTable(routes={ImpactTier.HIGH: TierRoute(immediate=(WEBHOOK,))})
        errors = table.validate()
        assert "routing.medium: missing" in errors
        assert any("must include the 'ledger'" in e for e in errors)

    def test_high_cannot_be_digest(self):
        table = RoutingTable(
            routes={
                ImpactTier.HIGH: TierRoute(immediate=(LEDGER,), digest=True),
                ImpactTier.MEDIUM: TierRoute(immediate=(LEDGER,), digest=True),
                ImpactTier.LOW: TierRoute(immediate=(LEDGER,), digest=True),
            }
        )
        assert any("high tier cannot" in e for e in table.validate())

    def test_unknown_channel(self):
        table = RoutingTable(
            routes={
                ImpactTier.HIGH: TierRoute(immediate=("pager", LEDGER)),
                ImpactTier.MEDIUM: TierRoute(immediate=(LEDGER,), digest=True),
                ImpactTier.LOW: TierRoute(immediate=(LEDGER,), digest=True),
            }
        )
        assert any("unknown channels" in e for e in table.validate())


class TestTaskStatus:
    def _task(self):
        plan = DeliveryRouter(RoutingTable.default()).route(_classified(hint="high"))
        return plan.tasks[0]

    def test_task_id_for(self):
        assert task_id_for("evt-1", "sms") == "evt-1:sms"

    def test_happy_path_counts_attempts(self):
        task = self._task()
        task.transition(TaskStatus.IN_FLIGHT)
        task.transition(TaskStatus.FAILED, error="timeout")
        task.transition(TaskStatus.IN_FLIGHT)
        task.transition(TaskStatus.DELIVERED)
        assert task.attempts == 2
        assert task.status.terminal

    @pytest.mark.parametrize(
        "path",
        [
            (TaskStatus.DELIVERED,),
            (TaskStatus.FAILED,),
            (TaskStatus.IN_FLIGHT, TaskStatus.DELIVERED, TaskStatus.IN_FLIGHT),
            (TaskStatus.ABANDONED, TaskStatus.IN_FLIGHT),
            (TaskStatus.IN_FLIGHT, TaskStatus.FAILED, TaskStatus.DELIVERED),
        ],
    )
    def test_invalid_transitions(self, path):
        task = self._task()
        with pytest.raises(InvalidTransition):
            for status in path:
                task.transition(status)

    def test_cancel_only_before_first_attempt(self):
        task = self._task()
        assert task.try_cancel()
        assert task.status == TaskStatus.ABANDONED
        assert task.last_error == "cancelled"

        running = self._task()
        running.transition(TaskStatus.IN_FLIGHT)
        assert not running.try_cancel()
        assert running.status == TaskStatus.IN_FLIGHT
