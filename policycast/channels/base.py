"""
Channel adapter protocol.

Each adapter wraps exactly one transport and exposes deliver(task). The
transport raises AdapterTransientError or AdapterPermanentError; deliver()
turns those into a DeliveryOutcome so the dispatcher can decide between
retrying and abandoning.

Key design decisions:
- The task id is the idempotency key; adapters must tolerate repeats
- LedgerWriteFault is never converted into an outcome
- Timeouts belong to the transport, so an attempt is never interrupted
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from ..errors import AdapterPermanentError, AdapterTransientError
from ..tasks import DeliveryTask

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelMetadata:
    """Static metadata about an adapter."""

    channel: str  # e.g., "webhook"
    transport: str  # e.g., "http:https://hooks.example.com/policy"
    timeout_seconds: float = 10.0
    # The adapter's own success already writes the task's ledger record.
    records_outcome: bool = False


@dataclass(frozen=True)
class DeliveryOutcome:
    """Delivered, or Failed(reason) with a retry verdict."""

    delivered: bool
    reason: str | None = None
    retryable: bool = False

    @classmethod
    def ok(cls) -> "DeliveryOutcome":
        return cls(delivered=True)

    @classmethod
    def failed(cls, reason: str, *, retryable: bool) -> "DeliveryOutcome":
        return cls(delivered=False, reason=reason, retryable=retryable)


class ChannelAdapter(ABC):
    """Base class for channel adapters."""

    @property
    @abstractmethod
    def metadata(self) -> ChannelMetadata:
        """Return static adapter metadata."""
        ...

    @property
    def channel(self) -> str:
        return self.metadata.channel

    @abstractmethod
    def send(self, task: DeliveryTask) -> None:
        """
        Perform one delivery attempt through the transport.

        Must be safe to call again with the same task (idempotency key =
        task.task_id). Raises AdapterTransientError or AdapterPermanentError.
        """
        ...

    def deliver(self, task: DeliveryTask) -> DeliveryOutcome:
        """One attempt, reported as an outcome instead of an exception."""
        try:
            self.send(task)
        except AdapterTransientError as e:
            logger.info("%s: transient failure for %s: %s", self.channel, task.task_id, e)
            return DeliveryOutcome.failed(str(e), retryable=True)
        except AdapterPermanentError as e:
            logger.warning("%s: permanent failure for %s: %s", self.channel, task.task_id, e)
            return DeliveryOutcome.failed(str(e), retryable=False)
        return DeliveryOutcome.ok()
