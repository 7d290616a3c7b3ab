"""Ledger channel: the audit write for an event, behind the adapter contract."""

from __future__ import annotations

from ..config.schema import LEDGER
from ..ledger import DeliveryLedger, LedgerRecord
from ..tasks import DeliveryTask, TaskStatus
from .base import ChannelAdapter, ChannelMetadata


class LedgerChannel(ChannelAdapter):
    """
    Appends the task's DELIVERED record to the delivery ledger.

    The append is the delivery, so the dispatcher does not write a second
    record for this channel. Repeated calls are idempotent by task id.
    A failed append raises LedgerWriteFault, which is never turned into an
    ordinary delivery failure.
    """

    def __init__(self, ledger: DeliveryLedger):
        self._ledger = ledger
        self._metadata = ChannelMetadata(
            channel=LEDGER,
            transport=f"file:{ledger.ledger_path}",
            records_outcome=True,
        )

    @property
    def metadata(self) -> ChannelMetadata:
        return self._metadata

    def send(self, task: DeliveryTask) -> None:
        self._ledger.append(LedgerRecord.from_task(task, status=TaskStatus.DELIVERED))
