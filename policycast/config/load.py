from __future__ import annotations

from pathlib import Path
from typing import Any

from ..errors import ConfigError
from ..models import ImpactTier
from ..retry import RetryPolicy
from ..util import parse_timestamp
from .schema import (
    ChannelsConfig,
    DigestConfig,
    EmailConfig,
    PipelineConfig,
    RoutingTable,
    SmsConfig,
    TierRoute,
    WebhookConfig,
    WeightTable,
    WILDCARD,
)


def _coerce_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _str_list(value: Any, key: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{key} must be a list of strings")
    return tuple(v.strip() for v in value if v.strip())


def _number(data: dict[str, Any], key: str, default: float, *, prefix: str) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{prefix}{key} must be a number")
    return float(value)


def _required_str(data: dict[str, Any], key: str, *, prefix: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{prefix}{key} is required")
    return value.strip()


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _tier(value: Any, key: str) -> ImpactTier:
    try:
        return ImpactTier(str(value).strip().lower())
    except ValueError:
        raise ConfigError(f"{key} must be one of low, medium, high (got {value!r})") from None


def _parse_routing(data: dict[str, Any]) -> RoutingTable:
    if not data:
        return RoutingTable.default()

    unknown = sorted(set(data) - {t.value for t in ImpactTier})
    if unknown:
        raise ConfigError(f"routing: unknown tiers {unknown}")

    default = RoutingTable.default()
    routes: dict[ImpactTier, TierRoute] = {}
    for tier in ImpactTier:
        raw = data.get(tier.value)
        if raw is None:
            routes[tier] = default.route_for(tier)
            continue
        raw = _coerce_dict(raw)
        routes[tier] = TierRoute(
            immediate=_str_list(raw.get("immediate"), f"routing.{tier.value}.immediate"),
            digest=bool(raw.get("digest", False)),
        )

    table = RoutingTable(routes=routes)
    errors = table.validate()
    if errors:
        raise ConfigError("; ".join(errors))
    return table


def _parse_weights(entries: Any) -> WeightTable:
    if entries is None:
        return WeightTable()
    if not isinstance(entries, list):
        raise ConfigError("weights must be an array of tables")

    weights: dict[tuple[str, str], ImpactTier] = {}
    for i, raw in enumerate(entries):
        raw = _coerce_dict(raw)
        prefix = f"weights[{i}]."
        policy = _required_str(raw, "policy", prefix=prefix)
        change = str(raw.get("change", WILDCARD)).strip().lower() or WILDCARD
        if change not in {WILDCARD, "created", "updated", "deleted"}:
            raise ConfigError(f"{prefix}change must be created, updated, deleted or '*'")
        weights[(policy, change)] = _tier(raw.get("tier"), f"{prefix}tier")
    return WeightTable(weights=weights)


def _parse_retry(data: dict[str, Any]) -> RetryPolicy:
    prefix = "retry."
    max_attempts = data.get("max_attempts", 5)
    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int):
        raise ConfigError("retry.max_attempts must be an integer")
    try:
        return RetryPolicy(
            initial_delay=_number(data, "initial_delay_seconds", 1.0, prefix=prefix),
            max_delay=_number(data, "max_delay_seconds", 60.0, prefix=prefix),
            multiplier=_number(data, "multiplier", 2.0, prefix=prefix),
            max_attempts=max_attempts,
        )
    except ValueError as e:
        raise ConfigError(f"retry: {e}") from e


def _parse_digest(data: dict[str, Any]) -> DigestConfig:
    period = _number(data, "period_seconds", 86400.0, prefix="digest.")
    if period <= 0:
        raise ConfigError("digest.period_seconds must be positive")
    origin = DigestConfig().origin
    if "origin" in data:
        try:
            origin = parse_timestamp(data["origin"])
        except ValueError as e:
            raise ConfigError(f"digest.origin: {e}") from e
    return DigestConfig(period_seconds=period, origin=origin)


def _parse_channels(data: dict[str, Any]) -> ChannelsConfig:
    webhook = sms = email = None

    raw = _coerce_dict(data.get("webhook"))
    if raw:
        prefix = "channels.webhook."
        headers = _coerce_dict(raw.get("headers"))
        webhook = WebhookConfig(
            url=_required_str(raw, "url", prefix=prefix),
            timeout_seconds=_number(raw, "timeout_seconds", 10.0, prefix=prefix),
            signing_secret_ref=_optional_str(raw, "signing_secret_ref"),
            headers={str(k): str(v) for k, v in headers.items()},
        )

    raw = _coerce_dict(data.get("sms"))
    if raw:
        prefix = "channels.sms."
        recipients = _str_list(raw.get("recipients"), f"{prefix}recipients")
        if not recipients:
            raise ConfigError(f"{prefix}recipients is required")
        sms = SmsConfig(
            gateway_url=_required_str(raw, "gateway_url", prefix=prefix),
            recipients=recipients,
            token_ref=_optional_str(raw, "token_ref"),
            timeout_seconds=_number(raw, "timeout_seconds", 10.0, prefix=prefix),
        )

    raw = _coerce_dict(data.get("email"))
    if raw:
        prefix = "channels.email."
        recipients = _str_list(raw.get("recipients"), f"{prefix}recipients")
        if not recipients:
            raise ConfigError(f"{prefix}recipients is required")
        port = raw.get("port", 25)
        if isinstance(port, bool) or not isinstance(port, int):
            raise ConfigError(f"{prefix}port must be an integer")
        email = EmailConfig(
            host=_required_str(raw, "host", prefix=prefix),
            sender=_required_str(raw, "sender", prefix=prefix),
            recipients=recipients,
            port=port,
            username=_optional_str(raw, "username"),
            password_ref=_optional_str(raw, "password_ref"),
            starttls=bool(raw.get("starttls", False)),
            timeout_seconds=_number(raw, "timeout_seconds", 10.0, prefix=prefix),
        )

    return ChannelsConfig(webhook=webhook, sms=sms, email=email)


def parse_config(data: dict[str, Any], *, base_dir: Path | None = None) -> PipelineConfig:
    """
    Build a PipelineConfig from already-decoded TOML data.

    Relative ``state_dir`` values are resolved against ``base_dir``.
    """
    state_dir = Path(str(data.get("state_dir", ".policycast")))
    if not state_dir.is_absolute() and base_dir is not None:
        state_dir = base_dir / state_dir

    max_workers = data.get("max_workers", 8)
    if isinstance(max_workers, bool) or not isinstance(max_workers, int) or max_workers < 1:
        raise ConfigError("max_workers must be a positive integer")

    skew = _number(data, "clock_skew_seconds", 60.0, prefix="")
    if skew < 0:
        raise ConfigError("clock_skew_seconds must be >= 0")

    log_level = str(data.get("log_level", "INFO")).strip().upper() or "INFO"

    return PipelineConfig(
        state_dir=state_dir,
        clock_skew_seconds=skew,
        max_workers=max_workers,
        log_level=log_level,
        routing=_parse_routing(_coerce_dict(data.get("routing"))),
        retry=_parse_retry(_coerce_dict(data.get("retry"))),
        digest=_parse_digest(_coerce_dict(data.get("digest"))),
        weights=_parse_weights(data.get("weights")),
        channels=_parse_channels(_coerce_dict(data.get("channels"))),
    )


def load_config(path: Path | None) -> PipelineConfig:
    """
    Load pipeline configuration from TOML.

    The configuration is static: it is read once at process start.
    With no path, built-in defaults are used.
    """
    if path is None:
        return PipelineConfig()

    import tomllib

    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigError(f"config file not found: {path}") from None
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{path}: {e}") from e

    return parse_config(data, base_dir=path.resolve().parent)
