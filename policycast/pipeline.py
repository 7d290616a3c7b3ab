"""
Pipeline: the single entry point for inbound policy-change events.

Orchestrates: ingest() -> classify() -> route() -> dispatch

Key invariants:
- Classification completes before routing, routing before dispatch
- submit_event() never waits on a channel adapter
- After a LedgerWriteFault the pipeline is halted: one operator alarm is
  recorded and every later submission raises PipelineHalted
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import CancelledError, Future
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, ClassVar, Iterable, Mapping

from .alerts import OperatorAlerts
from .channels import (
    ChannelAdapter,
    ChannelRegistry,
    EmailChannel,
    LedgerChannel,
    SmsChannel,
    WebhookChannel,
)
from .classifier import classify
from .config.schema import EMAIL, LEDGER, ChannelsConfig, PipelineConfig
from .digest import DigestScheduler, DigestWindow
from .dispatch import Dispatcher
from .errors import ConfigError, LedgerWriteFault, PipelineHalted, ValidationError
from .ingest import EventIngestor
from .ledger import DeliveryLedger
from .models import ClassifiedEvent
from .routing import DeliveryRouter, RoutePlan
from .secrets import SecretsProvider
from .statelock import StateDirLock
from .tasks import TaskStatus
from .util import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Accepted:
    """An event that passed ingestion; its tasks are running in the dispatcher."""

    accepted: ClassVar[bool] = True

    classified: ClassifiedEvent
    plan: RoutePlan
    futures: tuple[Future, ...]

    @property
    def event_id(self) -> str:
        return self.classified.event_id

    def wait(self, timeout: float | None = None) -> dict[str, TaskStatus]:
        """
        Block until every task of the event has finished.

        Returns task id -> final status. A task cancelled at shutdown is
        reported as ABANDONED. LedgerWriteFault propagates.
        """
        statuses: dict[str, TaskStatus] = {}
        for task, future in zip(self.plan.tasks, self.futures):
            try:
                statuses[task.task_id] = future.result(timeout=timeout)
            except CancelledError:
                statuses[task.task_id] = TaskStatus.ABANDONED
        return statuses


@dataclass(frozen=True)
class Rejected:
    """An event refused at ingestion. No task was created for it."""

    accepted: ClassVar[bool] = False

    error: ValidationError

    @property
    def reason(self) -> str:
        return self.error.reason


SubmitResult = Accepted | Rejected


class Pipeline:
    """
    One running notification pipeline.

    Built by build_pipeline(); components are also available as attributes
    for the CLI and tests.
    """

    def __init__(
        self,
        config: PipelineConfig,
        registry: ChannelRegistry,
        ledger: DeliveryLedger,
        alerts: OperatorAlerts,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
        state_lock: StateDirLock | None = None,
    ):
        self.config = config
        self.registry = registry
        self.ledger = ledger
        self.alerts = alerts
        self.state_lock = state_lock

        self._lock = threading.Lock()
        self._halted: LedgerWriteFault | None = None
        self._closed = False

        self.ingestor = EventIngestor(clock_skew_seconds=config.clock_skew_seconds, clock=clock)
        self.ingestor.seed(ledger.event_ids(), ledger.last_ingest_seq())
        self.router = DeliveryRouter(config.routing)
        self.dispatcher = Dispatcher(
            registry,
            ledger,
            alerts,
            config.retry,
            max_workers=config.max_workers,
            sleep=sleep,
            on_fault=self._halt,
        )
        self.digest = DigestScheduler(
            ledger,
            self.dispatcher,
            config.routing,
            state_dir=config.state_dir,
            period_seconds=config.digest.period_seconds,
            origin=config.digest.origin,
            clock=clock,
            on_fault=self._halt,
            halted=lambda: self.halted,
        )

    # -------------------------------------------------------------------------
    # Halt state
    # -------------------------------------------------------------------------

    @property
    def halted(self) -> bool:
        return self._halted is not None

    def _halt(self, fault: LedgerWriteFault) -> None:
        with self._lock:
            if self._halted is not None:
                return
            self._halted = fault
        logger.critical("Pipeline halted: %s", fault)
        self.digest.request_stop()
        self.alerts.ledger_write_fault(self.ledger.ledger_path, str(fault))

    def _check_open(self) -> None:
        if self._halted is not None:
            raise PipelineHalted(f"pipeline halted after ledger write fault: {self._halted}")
        if self._closed:
            raise PipelineHalted("pipeline is closed")

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def submit_event(self, raw: Mapping[str, Any]) -> SubmitResult:
        """
        Ingest, classify, route and dispatch one raw event.

        Returns Rejected for an invalid or duplicate payload. Raises
        PipelineHalted once a ledger write fault has been seen.
        """
        self._check_open()

        try:
            event = self.ingestor.ingest(raw)
        except ValidationError as e:
            logger.info("Rejected event: %s", e)
            return Rejected(error=e)

        classified = classify(event, self.config.weights)
        plan = self.router.route(classified)
        futures = self.dispatcher.submit(plan.tasks)
        logger.info(
            "Accepted %s (policy %s, %s) as %s -> %s%s",
            event.event_id,
            event.policy,
            event.change.value,
            classified.tier.value,
            ", ".join(plan.channels),
            " + digest" if plan.deferred else "",
        )
        return Accepted(classified=classified, plan=plan, futures=tuple(futures))

    def submit_many(self, raws: Iterable[Mapping[str, Any]]) -> list[SubmitResult]:
        return [self.submit_event(raw) for raw in raws]

    # -------------------------------------------------------------------------
    # Digest
    # -------------------------------------------------------------------------

    def tick_digest(self, now: datetime | None = None) -> DigestWindow | None:
        """Seal and send one digest window now."""
        self._check_open()
        return self.digest.tick(now)

    def start_digest(self) -> None:
        self._check_open()
        self.digest.start()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def drain(self, timeout: float | None = None) -> bool:
        """Wait for in-flight deliveries. Returns True if all finished."""
        return self.dispatcher.drain(timeout)

    def close(self, *, cancel_pending: bool = True) -> list[str]:
        """
        Stop the digest scheduler and the dispatcher.

        Returns the ids of tasks cancelled before their first attempt.
        """
        with self._lock:
            if self._closed:
                return []
            self._closed = True
        self.digest.stop()
        try:
            return self.dispatcher.shutdown(cancel_pending=cancel_pending)
        finally:
            if self.state_lock is not None:
                self.state_lock.release()

    def __enter__(self) -> "Pipeline":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close(cancel_pending=False)


def build_adapters(
    channels: ChannelsConfig,
    *,
    secrets: SecretsProvider | None = None,
) -> list[ChannelAdapter]:
    """Adapters for every configured external channel."""
    adapters: list[ChannelAdapter] = []
    if channels.webhook is not None:
        adapters.append(WebhookChannel(channels.webhook, secrets=secrets))
    if channels.sms is not None:
        adapters.append(SmsChannel(channels.sms, secrets=secrets))
    if channels.email is not None:
        adapters.append(EmailChannel(channels.email, secrets=secrets))
    return adapters


def build_pipeline(
    config: PipelineConfig,
    adapters: Iterable[ChannelAdapter] | None = None,
    *,
    secrets: SecretsProvider | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], datetime] = utc_now,
) -> Pipeline:
    """
    Wire a pipeline from configuration.

    ``adapters`` replaces the adapters built from ``config.channels``; the
    ledger channel is always backed by the pipeline's own ledger. Raises
    ConfigError if a routed channel (or the digest email channel) has no
    adapter, and StateLocked if another pipeline owns ``config.state_dir``.
    The lock is held until close().
    """
    if adapters is None:
        adapters = build_adapters(config.channels, secrets=secrets)
    registry = ChannelRegistry(adapters)

    required = set(config.routing.channels()) - {LEDGER}
    if config.routing.digest_tiers():
        required.add(EMAIL)
    missing = registry.missing(required)
    if missing:
        raise ConfigError(f"no adapter configured for routed channel(s): {', '.join(missing)}")

    # State is read only after the directory is ours.
    state_lock = StateDirLock(config.state_dir)
    state_lock.acquire()
    try:
        ledger = DeliveryLedger(config.state_dir, clock=clock)
        alerts = OperatorAlerts(config.state_dir)
        registry.register(LedgerChannel(ledger))
        pipeline = Pipeline(
            config, registry, ledger, alerts, sleep=sleep, clock=clock, state_lock=state_lock
        )
    except Exception:
        state_lock.release()
        raise
    logger.debug(
        "Pipeline ready: state=%s channels=%s ledger records=%d",
        config.state_dir, ", ".join(registry.names()), ledger.count(),
    )
    return pipeline
