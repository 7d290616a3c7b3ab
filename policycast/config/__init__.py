from .load import load_config, parse_config
from .schema import (
    EMAIL,
    LEDGER,
    SMS,
    WEBHOOK,
    ChannelsConfig,
    DigestConfig,
    EmailConfig,
    PipelineConfig,
    RoutingTable,
    SmsConfig,
    TierRoute,
    WebhookConfig,
    WeightTable,
)

__all__ = [
    "EMAIL",
    "LEDGER",
    "SMS",
    "WEBHOOK",
    "ChannelsConfig",
    "DigestConfig",
    "EmailConfig",
    "PipelineConfig",
    "RoutingTable",
    "SmsConfig",
    "TierRoute",
    "WebhookConfig",
    "WeightTable",
    "load_config",
    "parse_config",
]
