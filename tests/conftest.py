"""Pytest configuration and fixtures."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator

import pytest

from policycast.channels import ChannelAdapter, ChannelMetadata
from policycast.config import EMAIL, SMS, WEBHOOK, PipelineConfig
from policycast.errors import AdapterPermanentError, AdapterTransientError
from policycast.pipeline import Pipeline, build_pipeline
from policycast.retry import RetryPolicy
from policycast.tasks import DeliveryTask


NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now: datetime = NOW):
        self.now = now
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, **kwargs: float) -> datetime:
        with self._lock:
            self.now = self.now + timedelta(**kwargs)
            return self.now


class FakeAdapter(ChannelAdapter):
    """
    In-memory channel adapter.

    Fails the first ``failures`` attempts (transient unless ``permanent``).
    ``failures=-1`` fails every attempt.
    """

    def __init__(self, channel: str, *, failures: int = 0, permanent: bool = False):
        self._metadata = ChannelMetadata(channel=channel, transport=f"fake:{channel}")
        self.failures = failures
        self.permanent = permanent
        self.attempts: list[str] = []
        self.sent: list[DeliveryTask] = []
        self._lock = threading.Lock()

    @property
    def metadata(self) -> ChannelMetadata:
        return self._metadata

    def send(self, task: DeliveryTask) -> None:
        with self._lock:
            self.attempts.append(task.task_id)
            n = len([a for a in self.attempts if a == task.task_id])
            if self.failures < 0 or n <= self.failures:
                if self.permanent:
                    raise AdapterPermanentError(f"{self.channel} rejected {task.task_id}")
                raise AdapterTransientError(f"{self.channel} unavailable")
            self.sent.append(task)


def event_payload(event_id: str = "evt-1", **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": event_id,
        "policy": "access-control",
        "change": "updated",
        "actor": "alice",
        "timestamp": "2026-03-01T11:59:00Z",
        "diff": {"rules": {"added": ["deny *"]}},
    }
    payload.update(overrides)
    return payload


def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def config(state_dir: Path) -> PipelineConfig:
    return PipelineConfig(
        state_dir=state_dir,
        max_workers=4,
        retry=RetryPolicy(initial_delay=0.0, max_delay=0.0, multiplier=1.0, max_attempts=5),
    )


@pytest.fixture
def adapters() -> dict[str, FakeAdapter]:
    return {name: FakeAdapter(name) for name in (WEBHOOK, SMS, EMAIL)}


@pytest.fixture
def pipeline(config: PipelineConfig, adapters: dict[str, FakeAdapter], clock: FakeClock) -> Iterator[Pipeline]:
    p = build_pipeline(config, adapters.values(), sleep=no_sleep, clock=clock)
    yield p
    p.close(cancel_pending=False)
