"""Notification delivery channels.

Each channel sends one payload and raises ``NotificationDeliveryError`` on
failure so the alerting engine can queue a retry. Channels that are not
configured (no SMTP host, no webhook URL) skip quietly.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

import aiosmtplib
import httpx

from src.core.constants import COLLECTION_ORGANIZATIONS
from src.core.exceptions import NotificationDeliveryError
from src.core.logging import get_logger
from src.core.types import ChannelType, Recipient, isoformat, utcnow
from src.store.base import DocumentStore

log = get_logger(__name__)

_SEVERITY_COLORS: dict[str, str] = {
    "critical": "danger",
    "warning": "warning",
    "info": "good",
}


@dataclass
class NotificationPayload:
    """Everything a channel needs to deliver one notification."""

    org_id: str
    event: str  # "usage_alert" | "plan_change"
    subject: str
    message: str
    severity: str = "info"
    data: dict[str, Any] = field(default_factory=dict)
    recipients: list[Recipient] = field(default_factory=list)
    webhook_url: str | None = None
    chat_webhook_url: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "organization_id": self.org_id,
            "event": self.event,
            "subject": self.subject,
            "message": self.message,
            "severity": self.severity,
            "data": self.data,
            "sent_at": isoformat(utcnow()),
        }


class NotificationChannel(ABC):
    """One delivery mechanism."""

    channel_type: ChannelType

    @abstractmethod
    async def send(self, payload: NotificationPayload) -> None:
        ...


class EmailChannel(NotificationChannel):
    """SMTP delivery to every recipient with an email address."""

    channel_type = ChannelType.EMAIL

    def __init__(
        self,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str | None = None,
        smtp_password: str | None = None,
        from_email: str = "noreply@quotagate.local",
        use_tls: bool = True,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user or None
        self.smtp_password = smtp_password or None
        self.from_email = from_email
        self.use_tls = use_tls

    def _build_message(self, payload: NotificationPayload, to: list[str]) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = payload.subject
        msg["From"] = self.from_email
        msg["To"] = ", ".join(to)
        msg.attach(MIMEText(payload.message, "plain", "utf-8"))
        return msg

    async def send(self, payload: NotificationPayload) -> None:
        if not self.smtp_host:
            log.debug("email_skipped_no_smtp", org_id=payload.org_id)
            return
        to = [r.email for r in payload.recipients if r.email]
        if not to:
            log.debug("email_skipped_no_recipients", org_id=payload.org_id)
            return

        try:
            await aiosmtplib.send(
                self._build_message(payload, to),
                hostname=self.smtp_host,
                port=self.smtp_port,
                username=self.smtp_user,
                password=self.smtp_password,
                start_tls=self.use_tls,
            )
        except (aiosmtplib.SMTPException, OSError) as exc:
            raise NotificationDeliveryError(
                "Email delivery failed",
                context={"org_id": payload.org_id, "channel": self.channel_type.value},
            ) from exc
        log.info("email_notification_sent", org_id=payload.org_id, recipients=len(to))


class _HttpChannel(NotificationChannel):
    def __init__(self, timeout: float = 10.0, client: httpx.AsyncClient | None = None) -> None:
        self.timeout = timeout
        self._client = client

    async def _post(self, url: str, body: dict[str, Any], headers: dict[str, str], org_id: str) -> None:
        try:
            if self._client is not None:
                response = await self._client.post(url, json=body, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise NotificationDeliveryError(
                f"{self.channel_type.value} delivery failed",
                context={"org_id": org_id, "channel": self.channel_type.value},
            ) from exc

        if response.status_code >= 400:
            raise NotificationDeliveryError(
                f"{self.channel_type.value} returned HTTP {response.status_code}",
                context={"org_id": org_id, "channel": self.channel_type.value, "status": response.status_code},
            )


class ChatChannel(_HttpChannel):
    """Slack-compatible incoming webhook."""

    channel_type = ChannelType.CHAT

    @staticmethod
    def build_body(payload: NotificationPayload) -> dict[str, Any]:
        fields = [
            {"title": key, "value": str(payload.data[key]), "short": True}
            for key in ("current", "limit", "percentage")
            if payload.data.get(key) is not None
        ]
        return {
            "text": payload.subject,
            "attachments": [
                {
                    "color": _SEVERITY_COLORS.get(payload.severity, "#808080"),
                    "title": payload.subject,
                    "text": payload.message,
                    "fields": fields,
                    "footer": "QuotaGate",
                    "ts": int(utcnow().timestamp()),
                }
            ],
        }

    async def send(self, payload: NotificationPayload) -> None:
        if not payload.chat_webhook_url:
            log.warning("chat_skipped_no_url", org_id=payload.org_id)
            return
        await self._post(payload.chat_webhook_url, self.build_body(payload), {}, payload.org_id)
        log.info("chat_notification_sent", org_id=payload.org_id)


class WebhookChannel(_HttpChannel):
    """Generic JSON POST."""

    channel_type = ChannelType.WEBHOOK

    async def send(self, payload: NotificationPayload) -> None:
        if not payload.webhook_url:
            log.warning("webhook_skipped_no_url", org_id=payload.org_id)
            return
        await self._post(
            payload.webhook_url,
            payload.to_json(),
            {"X-Notification-Type": "usage-alert"},
            payload.org_id,
        )
        log.info("webhook_notification_sent", org_id=payload.org_id)


class InAppChannel(NotificationChannel):
    """Appends to the org's ``notifications`` feed."""

    channel_type = ChannelType.IN_APP

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def send(self, payload: NotificationPayload) -> None:
        doc = payload.to_json()
        doc["read"] = False
        try:
            await self._store.add(f"{COLLECTION_ORGANIZATIONS}/{payload.org_id}/notifications", doc)
        except Exception as exc:
            raise NotificationDeliveryError(
                "In-app delivery failed",
                context={"org_id": payload.org_id, "channel": self.channel_type.value},
            ) from exc
        log.debug("in_app_notification_stored", org_id=payload.org_id)
