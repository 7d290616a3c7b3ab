"""Webhook channel: one JSON POST per task."""

from __future__ import annotations

import hashlib
import hmac

from ..config.schema import WEBHOOK, WebhookConfig
from ..secrets import SecretsProvider, resolve_secret
from ..tasks import DeliveryTask
from .base import ChannelAdapter, ChannelMetadata
from .http import encode_json, post_json

SIGNATURE_HEADER = "X-Policycast-Signature"


def sign(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookChannel(ChannelAdapter):
    """
    POSTs the rendered notification as JSON.

    The receiver deduplicates on the Idempotency-Key header. When a signing
    secret is configured the body is signed with HMAC-SHA256.
    """

    def __init__(self, cfg: WebhookConfig, *, secrets: SecretsProvider | None = None):
        self._cfg = cfg
        self._secret = resolve_secret(cfg.signing_secret_ref, secrets)
        self._metadata = ChannelMetadata(
            channel=WEBHOOK,
            transport=f"http:{cfg.url}",
            timeout_seconds=cfg.timeout_seconds,
        )

    @property
    def metadata(self) -> ChannelMetadata:
        return self._metadata

    def build_body(self, task: DeliveryTask) -> bytes:
        return encode_json(
            {
                "task_id": task.task_id,
                "event_id": task.event_id,
                "tier": task.tier.value if task.tier else None,
                "subject": task.notification.subject,
                "body": task.notification.body,
                "data": task.notification.data,
            }
        )

    def send(self, task: DeliveryTask) -> None:
        body = self.build_body(task)
        headers = dict(self._cfg.headers)
        headers["Idempotency-Key"] = task.idempotency_key
        if self._secret is not None:
            headers[SIGNATURE_HEADER] = sign(self._secret, body)
        post_json(self._cfg.url, body, headers=headers, timeout_s=self._cfg.timeout_seconds)
