"""
Delivery ledger for the notification pipeline.

Every delivery task ends in exactly one ledger record. The ledger is the
audit trail and the source the digest scheduler reads from.

Components:
- records: LedgerRecord, the terminal outcome of one delivery task
- ledger: Append-only JSONL storage with per-event queries

Design principles:
- Append-only: records are never rewritten
- Idempotent: one record per task id
- Durable: append returns only after fsync
"""

from .ledger import DeliveryLedger
from .records import LedgerRecord

__all__ = [
    "DeliveryLedger",
    "LedgerRecord",
]
