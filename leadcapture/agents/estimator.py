"""Quote drafting on the capable tier around a deterministic price estimate."""

import json
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from leadcapture.pricing import DimensionCheck, Estimate, PricingRule

DEFAULT_DISCLAIMER = (
    "This is a preliminary estimate based on the details provided. "
    "Final pricing is confirmed after an on-site assessment."
)
CONTACT_US_REPLY = (
    "We don't have pricing information for that service yet. "
    "Please contact us directly and our team will put together a quote for you."
)


class QuoteDraft(BaseModel):
    reply_message: str = Field(min_length=1)
    estimated_range: Optional[str] = None
    factors: List[str] = Field(default_factory=list)
    disclaimer: str = DEFAULT_DISCLAIMER
    next_steps: str = ""


def build_prompts(
    customer,
    lead,
    classification: Dict[str, Any],
    history: Iterable[Any],
    rule: PricingRule,
    estimate: Optional[Estimate],
    dimensions: DimensionCheck,
) -> Tuple[str, str]:
    system_prompt = (
        f"You write short, friendly price estimates for {customer.company_name}. "
        "Never invent prices: when a computed range is given, quote it exactly as written. "
        "Mention that the range includes a 15% complexity buffer. Keep the reply under 120 words.\n\n"
        "Return JSON: {\"reply_message\": string, \"estimated_range\": string | null, "
        "\"factors\": [string], \"disclaimer\": string, \"next_steps\": string}"
    )

    lines = [
        f"Service: {rule.service_type}",
        f"Pricing rule: {rule.unit} at ${rule.min_rate:g}-${rule.max_rate:g}"
        + (f" plus ${rule.fixed_fees:g} in fixed fees" if rule.fixed_fees else ""),
        f"Classification: {json.dumps(classification)}",
        f"Visitor name: {lead.visitor_name or 'unknown'}",
    ]
    if estimate:
        lines.append(f"Computed range: {estimate.estimated_range} for {estimate.unit_value:g} {rule.unit}")
        if not estimate.is_calculated:
            lines.append("The visitor gave no measurements; say the range is for a typical project.")
    else:
        lines.append("No measurements are known; give a cautious typical range and ask for dimensions.")
    if dimensions.has_mismatch:
        lines.append(
            f"The visitor stated {dimensions.stated_area:g} sq ft but {dimensions.width:g}x{dimensions.length:g} "
            f"is {dimensions.calculated_area:g} sq ft. Politely note the corrected area."
        )

    transcript = "\n".join(
        f"{'Visitor' if m.sender == 'visitor' else 'Assistant'}: {m.content}" for m in history
    )
    user_prompt = "\n".join(lines) + f"\n\nConversation:\n{transcript}"
    return system_prompt, user_prompt


def build_quote(draft: QuoteDraft, estimate: Optional[Estimate], rule: PricingRule) -> Dict[str, Any]:
    if estimate:
        estimated_range = estimate.estimated_range
        breakdown = estimate.breakdown()
        unit_value = estimate.unit_value
        is_calculated = estimate.is_calculated
    else:
        estimated_range = draft.estimated_range
        breakdown = None
        unit_value = None
        is_calculated = False
    return {
        "estimated_range": estimated_range,
        "is_calculated": is_calculated,
        "unit": rule.unit,
        "unit_value": unit_value,
        "breakdown": breakdown,
        "factors": draft.factors,
        "disclaimer": draft.disclaimer or DEFAULT_DISCLAIMER,
        "next_steps": draft.next_steps,
    }


def compose_reply(draft: QuoteDraft, estimate: Optional[Estimate], dimensions: DimensionCheck) -> str:
    """Final visitor reply: correction notice first, and the computed range always present."""
    reply = draft.reply_message.strip()
    if estimate and estimate.estimated_range not in reply:
        reply = f"{reply} Estimated range: {estimate.estimated_range}."
    correction = dimensions.correction_message()
    if correction and "just to confirm" not in reply.lower():
        reply = f"{correction}{reply}"
    return reply
