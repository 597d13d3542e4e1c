"""Outbound email and SMS delivery used by notification jobs.

Email goes through SMTP (STARTTLS when enabled); the blocking smtplib calls
run in a worker thread. SMS goes through the clinic's HTTP SMS gateway.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.text import MIMEText
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from clinicsync.core.config import MessagingSettings

logger = logging.getLogger(__name__)


class MessagingError(Exception):
    """Base exception for outbound message delivery."""


class EmailDeliveryError(MessagingError):
    """Raised when the SMTP server rejects or cannot take a message."""


class SMSDeliveryError(MessagingError):
    """Raised when the SMS gateway rejects or cannot take a message."""


@dataclass(frozen=True, slots=True)
class DeliveryReceipt:
    """Identifier the transport assigned to a sent message."""

    channel: str
    recipient: str
    message_id: str | None


class EmailSender:
    """Send plain-text email over SMTP."""

    def __init__(self, settings: MessagingSettings) -> None:
        self._settings = settings

    async def send(self, to_email: str, subject: str, body: str) -> DeliveryReceipt:
        """Send an email.

        Raises:
            EmailDeliveryError: If the message cannot be sent.
        """
        message_id = await asyncio.to_thread(self._send_sync, to_email, subject, body)
        logger.info("Email sent: to=%s, message_id=%s", to_email, message_id)
        return DeliveryReceipt(channel="email", recipient=to_email, message_id=message_id)

    def _send_sync(self, to_email: str, subject: str, body: str) -> str:
        settings = self._settings
        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = settings.from_address
        msg["To"] = to_email
        domain = settings.from_address.rsplit("@", 1)[-1]
        message_id = f"<{secrets.token_hex(16)}@{domain}>"
        msg["Message-ID"] = message_id

        try:
            server = smtplib.SMTP(
                settings.smtp_host,
                settings.smtp_port,
                timeout=settings.smtp_timeout,
            )
            try:
                if settings.smtp_use_tls:
                    server.starttls(context=ssl.create_default_context())
                if settings.smtp_username and settings.smtp_password:
                    server.login(
                        settings.smtp_username,
                        settings.smtp_password.get_secret_value(),
                    )
                server.sendmail(settings.from_address, [to_email], msg.as_string())
            finally:
                server.quit()
        except (smtplib.SMTPException, OSError) as e:
            logger.error("SMTP delivery to %s failed: %s", to_email, e)
            raise EmailDeliveryError(f"Failed to send email: {e}") from e

        return message_id


class SMSGateway:
    """Send SMS through an HTTP gateway that accepts JSON posts."""

    def __init__(
        self,
        settings: MessagingSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport

    async def send(self, phone_number: str, message: str) -> DeliveryReceipt:
        """Send an SMS.

        Raises:
            SMSDeliveryError: If no gateway is configured or the gateway fails.
        """
        if not self._settings.sms_gateway_url:
            raise SMSDeliveryError("SMS gateway URL is not configured")

        payload = {
            "to": phone_number,
            "message": message,
            "sender_id": self._settings.sms_sender_id,
        }
        headers = {"Authorization": f"Bearer {self._settings.sms_api_key.get_secret_value()}"}
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.smtp_timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    self._settings.sms_gateway_url, json=payload, headers=headers
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SMSDeliveryError(
                f"SMS gateway returned {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            raise SMSDeliveryError(f"Cannot reach SMS gateway: {e}") from e

        data: dict[str, Any] = response.json() if response.content else {}
        message_id = data.get("message_id") or data.get("id")
        logger.info("SMS sent: to=%s, message_id=%s", phone_number, message_id)
        return DeliveryReceipt(channel="sms", recipient=phone_number, message_id=message_id)
