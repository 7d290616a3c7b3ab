"""
Channel adapters: one external transport each, one deliver(task) contract.
"""

from __future__ import annotations

from .base import ChannelAdapter, ChannelMetadata, DeliveryOutcome
from .email import EmailChannel
from .ledger_channel import LedgerChannel
from .registry import ChannelRegistry
from .sms import SmsChannel
from .webhook import WebhookChannel

__all__ = [
    "ChannelAdapter",
    "ChannelMetadata",
    "ChannelRegistry",
    "DeliveryOutcome",
    "EmailChannel",
    "LedgerChannel",
    "SmsChannel",
    "WebhookChannel",
]
