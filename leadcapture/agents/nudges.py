"""Ghost Buster nudge copy: stop phrases, missing-field priority and the one-line nudge itself."""

import logging
from typing import Iterable, Literal, Optional, Tuple

from pydantic import BaseModel, Field

from leadcapture.errors import ModelError
from leadcapture.llm.gateway import ModelGateway, Tier

logger = logging.getLogger("leadcapture.nudges")

FALLBACK_NUDGE = "Still interested? Let me know!"
FALLBACK_STRATEGY = "phone_nudge"
FALLBACK_DELAY_MINUTES = 15
# model_tier of stored nudges; billed through Followup rows, not as fast-tier messages
NUDGE_TIER = "nudge"

STOP_PHRASES = (
    "nevermind",
    "never mind",
    "no thanks",
    "not interested",
    "stop",
    "cancel",
    "forget it",
    "don't call",
    "don't contact",
    "leave me alone",
    "unsubscribe",
)

STRATEGIES = {
    "phone": "phone_nudge",
    "address": "address_nudge",
    "dimensions": "dimension_request",
}


class NudgeDraft(BaseModel):
    follow_up_message: str = Field(min_length=1)
    strategy: Literal["address_nudge", "phone_nudge", "dimension_request"] = FALLBACK_STRATEGY
    scheduled_delay_minutes: int = Field(default=FALLBACK_DELAY_MINUTES, ge=15, le=1440)


def fallback_nudge() -> NudgeDraft:
    return NudgeDraft(
        follow_up_message=FALLBACK_NUDGE,
        strategy=FALLBACK_STRATEGY,
        scheduled_delay_minutes=FALLBACK_DELAY_MINUTES,
    )


def matches_stop_phrase(text: Optional[str], phrases: Iterable[str] = STOP_PHRASES) -> bool:
    lowered = (text or "").lower()
    return any(phrase in lowered for phrase in phrases)


def word_count(text: str) -> int:
    return len(text.split())


def missing_field(lead, *, needs_dimensions: bool, has_dimensions: bool) -> Optional[str]:
    """Most important missing detail, ``"none"`` when the lead is complete, None when unusable."""
    service = ((lead.classification or {}).get("service_type") or "").strip().lower()
    if not service or service == "unknown":
        return None
    if not lead.visitor_phone:
        return "phone"
    if not lead.visitor_address:
        return "address"
    if needs_dimensions and not has_dimensions:
        return "dimensions"
    return "none"


def build_prompts(lead, field_name: str, max_words: int) -> Tuple[str, str]:
    service = ((lead.classification or {}).get("service_type") or "your project").replace("_", " ")
    system_prompt = (
        "You write one-line follow-up nudges for visitors who went quiet in a contractor's chat widget. "
        f"The nudge must be {max_words} words or fewer, warm, and ask for exactly one detail.\n"
        'Return JSON: {"follow_up_message": string, "strategy": "address_nudge" | "phone_nudge" | '
        '"dimension_request", "scheduled_delay_minutes": 15-1440}'
    )
    user_prompt = (
        f"Visitor name: {lead.visitor_name or 'unknown'}\n"
        f"Service: {service}\n"
        f"Missing detail to ask for: {field_name}"
    )
    return system_prompt, user_prompt


async def compose(gateway: ModelGateway, lead, field_name: str, *, max_words: int = 15) -> Tuple[NudgeDraft, bool]:
    """Generate a nudge; returns ``(draft, used_fallback)``."""
    system_prompt, user_prompt = build_prompts(lead, field_name, max_words)
    try:
        draft = await gateway.invoke(Tier.FAST, system_prompt, user_prompt, NudgeDraft, max_tokens=150)
    except ModelError as exc:
        logger.warning("Nudge generation failed for lead %s: %s", lead.id, exc)
        return fallback_nudge(), True

    message = draft.follow_up_message.strip()
    if word_count(message) > max_words:
        logger.info("Nudge for lead %s exceeded %s words; using fallback", lead.id, max_words)
        return fallback_nudge(), True
    return draft.model_copy(update={"follow_up_message": message}), False
