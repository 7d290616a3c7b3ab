"""Email channel: SMTP delivery of the rendered notification."""

from __future__ import annotations

import smtplib
import socket
from email.message import EmailMessage

from ..config.schema import EMAIL, EmailConfig
from ..errors import AdapterPermanentError, AdapterTransientError, ConfigError
from ..secrets import SecretsProvider, resolve_secret
from ..tasks import DeliveryTask
from .base import ChannelAdapter, ChannelMetadata


def message_id(task: DeliveryTask, sender: str) -> str:
    """Stable Message-ID so receiving systems can drop redelivered copies."""
    domain = sender.rpartition("@")[2] or "policycast.local"
    return f"<{task.task_id.replace(':', '.')}@{domain}>"


class EmailChannel(ChannelAdapter):
    """
    Sends one message per task to all configured recipients.

    SMTP 4xx replies and connection problems are transient; 5xx replies and
    refused recipients are permanent.
    """

    def __init__(self, cfg: EmailConfig, *, secrets: SecretsProvider | None = None):
        if not cfg.recipients:
            raise ConfigError("email channel has no recipients")
        self._cfg = cfg
        self._password = resolve_secret(cfg.password_ref, secrets)
        self._metadata = ChannelMetadata(
            channel=EMAIL,
            transport=f"smtp:{cfg.host}:{cfg.port}",
            timeout_seconds=cfg.timeout_seconds,
        )

    @property
    def metadata(self) -> ChannelMetadata:
        return self._metadata

    def build_message(self, task: DeliveryTask) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self._cfg.sender
        msg["To"] = ", ".join(self._cfg.recipients)
        msg["Subject"] = task.notification.subject
        msg["Message-ID"] = message_id(task, self._cfg.sender)
        msg["X-Policycast-Task"] = task.task_id
        msg.set_content(task.notification.body)
        return msg

    def send(self, task: DeliveryTask) -> None:
        msg = self.build_message(task)
        try:
            with smtplib.SMTP(self._cfg.host, self._cfg.port, timeout=self._cfg.timeout_seconds) as smtp:
                if self._cfg.starttls:
                    smtp.starttls()
                if self._cfg.username and self._password is not None:
                    smtp.login(self._cfg.username, self._password)
                smtp.send_message(msg)
        except smtplib.SMTPRecipientsRefused as e:
            raise AdapterPermanentError(f"recipients refused: {sorted(e.recipients)}") from e
        except smtplib.SMTPAuthenticationError as e:
            raise AdapterPermanentError(f"SMTP authentication failed ({e.smtp_code})") from e
        except smtplib.SMTPResponseException as e:
            if 400 <= e.smtp_code < 500:
                raise AdapterTransientError(f"SMTP {e.smtp_code}: {e.smtp_error!r}") from e
            raise AdapterPermanentError(f"SMTP {e.smtp_code}: {e.smtp_error!r}") from e
        except (smtplib.SMTPException, socket.timeout, OSError) as e:
            raise AdapterTransientError(f"SMTP error via {self._cfg.host}: {e}") from e
