from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Mapping

from ..models import ChangeKind, ImpactTier
from ..retry import RetryPolicy
from ..util import EPOCH


WEBHOOK = "webhook"
SMS = "sms"
EMAIL = "email"
LEDGER = "ledger"

KNOWN_CHANNELS = frozenset({WEBHOOK, SMS, EMAIL, LEDGER})

WILDCARD = "*"


@dataclass(frozen=True)
class TierRoute:
    """Channels a tier is sent to at once, and whether it joins the digest."""

    immediate: tuple[str, ...]
    digest: bool = False


@dataclass(frozen=True)
class RoutingTable:
    """
    Tier -> channel routing, fixed for the lifetime of a process.

    Loaded once at startup and passed explicitly; a change needs a new
    process so a single event is never split across two table versions.
    """

    routes: Mapping[ImpactTier, TierRoute]

    def route_for(self, tier: ImpactTier) -> TierRoute:
        return self.routes[tier]

    def digest_tiers(self) -> frozenset[ImpactTier]:
        return frozenset(t for t, r in self.routes.items() if r.digest)

    def channels(self) -> frozenset[str]:
        names: set[str] = set()
        for route in self.routes.values():
            names.update(route.immediate)
        return frozenset(names)

    def validate(self) -> list[str]:
        """Return routing errors (empty = valid)."""
        errors: list[str] = []
        for tier in ImpactTier:
            route = self.routes.get(tier)
            if route is None:
                errors.append(f"routing.{tier.value}: missing")
                continue
            if len(set(route.immediate)) != len(route.immediate):
                errors.append(f"routing.{tier.value}: duplicate channel")
            if LEDGER not in route.immediate:
                errors.append(f"routing.{tier.value}: must include the '{LEDGER}' channel")
            unknown = sorted(set(route.immediate) - KNOWN_CHANNELS)
            if unknown:
                errors.append(f"routing.{tier.value}: unknown channels {unknown}")
            if route.digest and set(route.immediate) - {LEDGER}:
                errors.append(
                    f"routing.{tier.value}: digest tiers may only route to '{LEDGER}' immediately"
                )
        if ImpactTier.HIGH in self.routes and self.routes[ImpactTier.HIGH].digest:
            errors.append("routing.high: high tier cannot be deferred to digest")
        return errors

    @classmethod
    def default(cls) -> "RoutingTable":
        return cls(
            routes={
                ImpactTier.HIGH: TierRoute(immediate=(WEBHOOK, SMS, EMAIL, LEDGER)),
                ImpactTier.MEDIUM: TierRoute(immediate=(LEDGER,), digest=True),
                ImpactTier.LOW: TierRoute(immediate=(LEDGER,), digest=True),
            }
        )


@dataclass(frozen=True)
class WeightTable:
    """
    Declared rule weights keyed by (policy, change).

    A ``"*"`` change matches every change kind of that policy.
    """

    weights: Mapping[tuple[str, str], ImpactTier] = field(default_factory=dict)

    def lookup(self, policy: str, change: ChangeKind) -> ImpactTier | None:
        tier = self.weights.get((policy, change.value))
        if tier is None:
            tier = self.weights.get((policy, WILDCARD))
        return tier


@dataclass(frozen=True)
class DigestConfig:
    period_seconds: float = 86400.0
    origin: datetime = EPOCH


@dataclass(frozen=True)
class WebhookConfig:
    url: str
    timeout_seconds: float = 10.0
    signing_secret_ref: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SmsConfig:
    gateway_url: str
    recipients: tuple[str, ...]
    token_ref: str | None = None
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class EmailConfig:
    host: str
    sender: str
    recipients: tuple[str, ...]
    port: int = 25
    username: str | None = None
    password_ref: str | None = None
    starttls: bool = False
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class ChannelsConfig:
    webhook: WebhookConfig | None = None
    sms: SmsConfig | None = None
    email: EmailConfig | None = None


@dataclass(frozen=True)
class PipelineConfig:
    state_dir: Path = Path(".policycast")
    clock_skew_seconds: float = 60.0
    max_workers: int = 8
    log_level: str = "INFO"
    routing: RoutingTable = field(default_factory=RoutingTable.default)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    digest: DigestConfig = field(default_factory=DigestConfig)
    weights: WeightTable = field(default_factory=WeightTable)
    channels: ChannelsConfig = field(default_factory=ChannelsConfig)
