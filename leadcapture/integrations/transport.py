import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from leadcapture.integrations import sendgrid, twilio

logger = logging.getLogger("leadcapture.transport")


@dataclass(frozen=True)
class DeliveryResult:
    status: str  # sent, failed
    error: Optional[str] = None
    provider_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "sent"


class NotificationTransport(Protocol):
    async def send(
        self,
        channel: str,
        recipient: str,
        subject: Optional[str],
        body: str,
        *,
        html_body: Optional[str] = None,
    ) -> DeliveryResult:
        ...


class HttpNotificationTransport:
    """Routes ``sms`` through Twilio and ``email`` through SendGrid; never raises."""

    async def send(
        self,
        channel: str,
        recipient: str,
        subject: Optional[str],
        body: str,
        *,
        html_body: Optional[str] = None,
    ) -> DeliveryResult:
        try:
            if channel == "sms":
                if not twilio.is_configured():
                    return DeliveryResult(status="failed", error="sms transport not configured")
                data = await twilio.send_sms(recipient, body)
                return DeliveryResult(status="sent", provider_id=data.get("sid"))
            if channel == "email":
                if not sendgrid.is_configured():
                    return DeliveryResult(status="failed", error="email transport not configured")
                data = await sendgrid.send_email(recipient, subject or "", body, html_body=html_body)
                return DeliveryResult(status="sent", provider_id=data.get("message_id"))
        except Exception as exc:
            logger.warning("Delivery over %s to %s failed: %s", channel, recipient, exc)
            return DeliveryResult(status="failed", error=str(exc))
        return DeliveryResult(status="failed", error=f"unsupported channel '{channel}'")
