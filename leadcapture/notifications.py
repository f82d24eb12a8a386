"""Notification dispatcher: hot-lead alerts, weekly digests and partner referrals.

Every delivery attempt is written to the ``Notification`` log whether it
succeeded or not. Missing preferences make each entry point a silent no-op.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from leadcapture.agents import alerts, digest
from leadcapture.agents.alerts import HotLeadAlert
from leadcapture.analytics import MetricsAggregator
from leadcapture.db import Customer, Lead, as_utc, utcnow
from leadcapture.integrations.transport import DeliveryResult, NotificationTransport
from leadcapture.llm.gateway import ModelGateway
from leadcapture.settings import DigestSettings
from leadcapture.store import LeadStore

logger = logging.getLogger("leadcapture.notifications")


class NotificationDispatcher:
    def __init__(
        self,
        gateway: ModelGateway,
        store: LeadStore,
        transport: NotificationTransport,
        metrics: MetricsAggregator,
        *,
        digest_settings: Optional[DigestSettings] = None,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.transport = transport
        self.metrics = metrics
        self.digest_settings = digest_settings or DigestSettings()

    async def send_hot_lead_alert(self, alert: HotLeadAlert) -> None:
        customer = await self.store.get_customer(alert.customer_id)
        if customer is None or not customer.alert_on_hot_lead:
            return

        channels: List[Tuple[str, str, str]] = []
        if customer.notification_phone:
            channels.append(("sms", customer.notification_phone, "hot_lead_sms"))
        if customer.notification_email:
            channels.append(("email", customer.notification_email, "hot_lead_email"))

        pending = []
        for channel in channels:
            if await self.store.has_sent_notification(alert.lead_id, channel[2]):
                logger.info("Hot lead %s already alerted via %s", alert.lead_id, channel[0])
                continue
            pending.append(channel)
        if not pending:
            return

        copy = await alerts.compose(self.gateway, alert, customer.company_name)
        for channel, recipient, notification_type in pending:
            if channel == "sms":
                subject, body = None, alerts.truncate_sms(copy.sms_message)
            else:
                subject, body = copy.email_subject, copy.email_body
            result = await self.transport.send(channel, recipient, subject, body)
            await self._log(
                customer,
                notification_type,
                channel,
                recipient,
                subject,
                body,
                result,
                lead_id=alert.lead_id,
            )

    async def send_weekly_digest(self, customer_id: str, now: Optional[datetime] = None) -> None:
        customer = await self.store.get_customer(customer_id)
        if customer is None or not customer.weekly_digest_enabled or not customer.notification_email:
            return

        now = as_utc(now) if now else utcnow()
        report = await self._weekly_report(customer, now)
        copy = await digest.compose(self.gateway, customer.company_name, report)
        result = await self.transport.send(
            "email",
            customer.notification_email,
            copy.subject_line,
            copy.email_body,
            html_body=copy.html_body or None,
        )
        await self._log(
            customer,
            "weekly_digest",
            "email",
            customer.notification_email,
            copy.subject_line,
            copy.email_body,
            result,
        )
        if result.ok:
            await self.store.mark_digest_sent(customer.id, now)

    async def send_partner_referral(self, customer: Customer, lead: Lead) -> DeliveryResult:
        partner = (customer.business_info or {}).get("partner_referral_info") or {}
        partner_name = partner.get("partner_name")
        if partner.get("partner_email"):
            channel, recipient = "email", partner["partner_email"]
        elif partner.get("partner_phone"):
            channel, recipient = "sms", partner["partner_phone"]
        else:
            return DeliveryResult(status="failed", error="partner contact not configured")

        subject, body = alerts.referral_handoff(lead, customer.company_name, partner_name)
        if channel == "sms":
            subject, body = None, alerts.truncate_sms(body)
        result = await self.transport.send(channel, recipient, subject, body)
        await self._log(customer, "partner_referral", channel, recipient, subject, body, result, lead_id=lead.id)
        return result

    async def _weekly_report(self, customer: Customer, now: datetime) -> Dict[str, Any]:
        metrics = await self.metrics.weekly_metrics(customer.id, now=now)
        hot = await self.metrics.hot_leads(customer.id)
        per_hour = self.digest_settings.messages_per_hour_saved
        return {
            "company_name": customer.company_name,
            "leads_captured": metrics["leads_captured"],
            "qualified": metrics["qualified"],
            "quoted": metrics["quoted"],
            "recovered": metrics["recovered"],
            "recovered_revenue": metrics["recovered_revenue"],
            "estimated_revenue": metrics["estimated_revenue"],
            "ai_cost": metrics["ai_cost"],
            "roi": metrics["roi"],
            "top_service": metrics["top_service"],
            "hours_saved": round(metrics["total_messages"] / per_hour, 1) if per_hour else 0,
            "pending_hot_leads": len(hot),
            "hot_leads": hot,
        }

    async def _log(
        self,
        customer: Customer,
        notification_type: str,
        channel: str,
        recipient: str,
        subject: Optional[str],
        body: str,
        result: DeliveryResult,
        *,
        lead_id: Optional[int] = None,
    ) -> None:
        await self.store.log_notification(
            customer_id=customer.id,
            lead_id=lead_id,
            notification_type=notification_type,
            channel=channel,
            recipient=recipient,
            subject=subject,
            content=body,
            status=result.status,
            error_message=result.error,
        )
        logger.info(
            "notification",
            extra={
                "notification": {
                    "customer_id": customer.id,
                    "lead_id": lead_id,
                    "type": notification_type,
                    "channel": channel,
                    "status": result.status,
                }
            },
        )
