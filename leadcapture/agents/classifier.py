"""Classification prompts and the fallback used when every fast-tier provider fails."""

import json
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field

FALLBACK_REPLY = "Thanks for reaching out! We've received your message and will get back to you shortly."

DEFAULT_SYSTEM_PROMPT = (
    "You are a friendly, professional assistant for a home-services contractor. "
    "Help website visitors describe their project so the team can follow up with an estimate."
)


class Classification(BaseModel):
    service_type: str = "unknown"
    category: Literal["New Lead", "Junk"] = "New Lead"
    urgency: Literal["low", "medium", "high"] = "medium"
    urgency_score: float = Field(default=0.5, ge=0.0, le=1.0)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    is_out_of_area: bool = False
    location: Optional[str] = None
    next_action: str = "ask_info"


class ExtractedContact(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None


class ClassificationResult(BaseModel):
    classification: Classification
    reply_message: str = Field(min_length=1)
    is_qualified: bool = False
    missing_info: List[str] = Field(default_factory=list)
    contact: ExtractedContact = Field(default_factory=ExtractedContact)


def fallback_result() -> ClassificationResult:
    return ClassificationResult(
        classification=Classification(service_type="unknown", urgency="medium", confidence=0.0),
        reply_message=FALLBACK_REPLY,
        is_qualified=False,
        missing_info=[],
    )


def _business(customer) -> Dict[str, Any]:
    return customer.business_info or {}


def _format_history(history: Iterable[Any]) -> str:
    lines = []
    for message in history:
        speaker = "Visitor" if message.sender == "visitor" else "Assistant"
        lines.append(f"{speaker}: {message.content}")
    return "\n".join(lines) or "(no prior messages)"


def _known_fields(lead) -> Dict[str, Optional[str]]:
    return {
        "name": lead.visitor_name,
        "phone": lead.visitor_phone,
        "email": lead.visitor_email,
        "address": lead.visitor_address,
    }


def build_prompts(customer, lead, history: Iterable[Any]) -> Tuple[str, str]:
    business = _business(customer)
    prompts = customer.ai_prompts or {}
    services = business.get("services") or []
    service_area = business.get("service_area") or "our local area"

    system_prompt = (
        f"{prompts.get('system_prompt') or DEFAULT_SYSTEM_PROMPT}\n\n"
        f"Company: {customer.company_name}\n"
        f"Services offered: {', '.join(services) if services else 'general home services'}\n"
        f"Service area: {service_area}\n\n"
        "Classify the visitor's request and write the next reply. A lead is qualified once you know "
        "the service, a phone number and the job address. Ask for at most one missing detail per reply. "
        "Mark category 'Junk' for spam, solicitations or requests unrelated to the services. "
        "Set is_out_of_area when the job address is clearly outside the service area.\n\n"
        "Return JSON with exactly this structure:\n"
        "{\n"
        '  "classification": {"service_type": "snake_case service", "category": "New Lead" | "Junk", '
        '"urgency": "low" | "medium" | "high", "urgency_score": 0.0-1.0, "confidence": 0.0-1.0, '
        '"is_out_of_area": bool, "location": string | null, "next_action": "ask_info" | "generate_quote" | '
        '"emergency_handoff" | "close"},\n'
        '  "reply_message": "next message to the visitor",\n'
        '  "is_qualified": bool,\n'
        '  "missing_info": ["phone" | "address" | "service" | "dimensions" | "name"],\n'
        '  "contact": {"name": string | null, "phone": string | null, "email": string | null, '
        '"address": string | null}\n'
        "}"
    )
    user_prompt = (
        f"Known visitor details: {json.dumps(_known_fields(lead))}\n\n"
        f"Conversation so far:\n{_format_history(history)}"
    )
    return system_prompt, user_prompt
