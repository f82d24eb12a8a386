"""Hot-lead alert copy and partner referral copy."""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from pydantic import BaseModel, Field

from leadcapture.errors import ModelError
from leadcapture.llm.gateway import ModelGateway, Tier

logger = logging.getLogger("leadcapture.alerts")

SMS_LIMIT = 160
SEVERITY_EMOJI = {"EMERGENCY": "🚨", "URGENT": "🔥", "HOT": "⚡"}


@dataclass
class HotLeadAlert:
    lead_id: int
    customer_id: str
    urgency_level: str
    service_type: str
    visitor_name: Optional[str]
    estimated_value: float
    urgency_score: float
    notes: Optional[str] = None


class AlertCopy(BaseModel):
    sms_message: str = Field(min_length=1)
    email_subject: str = Field(min_length=1)
    email_body: str = Field(min_length=1)


def severity_for(urgency_score: float, *, emergency: float = 0.95, urgent: float = 0.88) -> str:
    if urgency_score >= emergency:
        return "EMERGENCY"
    if urgency_score >= urgent:
        return "URGENT"
    return "HOT"


def truncate_sms(text: str, limit: int = SMS_LIMIT) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _service_label(alert: HotLeadAlert) -> str:
    return (alert.service_type or "service request").replace("_", " ")


def fallback_copy(alert: HotLeadAlert) -> AlertCopy:
    emoji = SEVERITY_EMOJI.get(alert.urgency_level, "⚡")
    name = alert.visitor_name or "A visitor"
    service = _service_label(alert)
    value = f"${alert.estimated_value:,.0f}"
    sms = f"{emoji} {alert.urgency_level}: {service} - {name} ({value}). Check dashboard now."
    body = (
        f"{emoji} {alert.urgency_level} lead captured\n\n"
        f"Service: {service}\n"
        f"Customer: {name}\n"
        f"Estimated value: {value}\n"
        f"Urgency score: {alert.urgency_score:.2f}\n"
    )
    if alert.notes:
        body += f"Notes: {alert.notes}\n"
    body += "\nOpen your dashboard to respond while the lead is hot."
    return AlertCopy(
        sms_message=truncate_sms(sms),
        email_subject=f"{emoji} {alert.urgency_level} Lead: {service}",
        email_body=body,
    )


def build_prompts(alert: HotLeadAlert, company_name: str) -> Tuple[str, str]:
    system_prompt = (
        f"You write urgent lead alerts for {company_name}, a contractor. "
        f"The SMS must be under {SMS_LIMIT} characters and start with the severity. "
        "The email subject is one line; the email body lists service, customer, value and urgency.\n"
        'Return JSON: {"sms_message": string, "email_subject": string, "email_body": string}'
    )
    user_prompt = (
        f"Severity: {alert.urgency_level}\n"
        f"Service: {_service_label(alert)}\n"
        f"Customer: {alert.visitor_name or 'unknown'}\n"
        f"Estimated value: ${alert.estimated_value:,.0f}\n"
        f"Urgency score: {alert.urgency_score:.2f}\n"
        f"Notes: {alert.notes or 'none'}"
    )
    return system_prompt, user_prompt


async def compose(gateway: ModelGateway, alert: HotLeadAlert, company_name: str) -> AlertCopy:
    system_prompt, user_prompt = build_prompts(alert, company_name)
    try:
        copy = await gateway.invoke(Tier.FAST, system_prompt, user_prompt, AlertCopy, max_tokens=400)
    except ModelError as exc:
        logger.warning("Alert copy generation failed for lead %s: %s", alert.lead_id, exc)
        return fallback_copy(alert)
    return copy.model_copy(update={"sms_message": truncate_sms(copy.sms_message)})


def referral_offer(
    *,
    visitor_name: Optional[str],
    location: Optional[str],
    partner_name: Optional[str],
    service_type: Optional[str],
) -> str:
    greeting = f"Hi {visitor_name}! " if visitor_name else "Hi! "
    service = (service_type or "home services").replace("_", " ")
    return (
        f"{greeting}Unfortunately, we don't currently service {location or 'that area'}, "
        f"but I have some good news! Our partner, {partner_name or 'a trusted partner'}, "
        f"provides excellent {service} in your area. Would you like me to send them your contact "
        "information so they can reach out with a quote? They're trusted professionals we work with regularly."
    )


def referral_confirmation(partner_name: Optional[str]) -> str:
    return f"Perfect! I've sent your information to {partner_name or 'our partner'}. They'll reach out to you soon!"


def referral_handoff(lead, company_name: str, partner_name: Optional[str]) -> Tuple[str, str]:
    service = ((lead.classification or {}).get("service_type") or "service request").replace("_", " ")
    subject = f"Referral from {company_name}: {service}"
    body = (
        f"Hi {partner_name or 'there'},\n\n"
        f"{company_name} is referring a customer outside our service area.\n\n"
        f"Service: {service}\n"
        f"Name: {lead.visitor_name or 'not provided'}\n"
        f"Phone: {lead.visitor_phone or 'not provided'}\n"
        f"Email: {lead.visitor_email or 'not provided'}\n"
        f"Address: {lead.visitor_address or 'not provided'}\n"
    )
    return subject, body
