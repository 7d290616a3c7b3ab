"""SMS channel: posts a short text per recipient to an SMS gateway."""

from __future__ import annotations

from ..config.schema import SMS, SmsConfig
from ..errors import ConfigError
from ..secrets import SecretsProvider, resolve_secret
from ..tasks import DeliveryTask
from .base import ChannelAdapter, ChannelMetadata
from .http import encode_json, post_json

MAX_SMS_CHARS = 160


def sms_text(task: DeliveryTask) -> str:
    text = task.notification.subject
    if len(text) > MAX_SMS_CHARS:
        text = text[: MAX_SMS_CHARS - 1] + "…"
    return text


class SmsChannel(ChannelAdapter):
    """
    Sends the notification subject as an SMS to every configured recipient.

    Each recipient gets its own idempotency key (``<task_id>:<recipient>``)
    so a retry after a partial send does not text anyone twice, provided the
    gateway honours the key.
    """

    def __init__(self, cfg: SmsConfig, *, secrets: SecretsProvider | None = None):
        if not cfg.recipients:
            raise ConfigError("sms channel has no recipients")
        self._cfg = cfg
        self._token = resolve_secret(cfg.token_ref, secrets)
        self._metadata = ChannelMetadata(
            channel=SMS,
            transport=f"http:{cfg.gateway_url}",
            timeout_seconds=cfg.timeout_seconds,
        )

    @property
    def metadata(self) -> ChannelMetadata:
        return self._metadata

    def send(self, task: DeliveryTask) -> None:
        text = sms_text(task)
        for recipient in self._cfg.recipients:
            headers = {"Idempotency-Key": f"{task.idempotency_key}:{recipient}"}
            if self._token is not None:
                headers["Authorization"] = f"Bearer {self._token}"
            body = encode_json({"to": recipient, "body": text, "reference": task.task_id})
            post_json(
                self._cfg.gateway_url,
                body,
                headers=headers,
                timeout_s=self._cfg.timeout_seconds,
            )
