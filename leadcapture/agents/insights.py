"""Morning briefing for the tenant dashboard, written by the fast tier over the last 24 hours of metrics."""

import json
import logging
from typing import Any, Dict, List, Tuple

from pydantic import BaseModel, Field

from leadcapture.analytics import MetricsAggregator
from leadcapture.errors import ModelError
from leadcapture.llm.gateway import ModelGateway, Tier
from leadcapture.pricing import range_high

logger = logging.getLogger("leadcapture.insights")

REPORT_PERIOD = "Past 24 Hours"

SYSTEM_PROMPT = """You are a senior business analyst for a home-services contractor.
Write the owner's morning briefing: encouraging, data-driven, two or three sentences at most.

1. Lead with the money: mention estimated_revenue_pipe first.
2. Say how many leads the automatic follow-ups recovered.
3. If any hot lead has urgency above 0.8, make calling them the first action item.
4. Keep action items specific, ordered by urgency and value, at most four.

Return JSON: {"headline": string, "briefing_text": string, "action_items": [string], "recovery_shoutout": string}"""


class InsightCopy(BaseModel):
    headline: str = Field(min_length=1)
    briefing_text: str = Field(min_length=1)
    action_items: List[str] = Field(min_length=1, max_length=5)
    recovery_shoutout: str = ""


def fallback_insight() -> InsightCopy:
    return InsightCopy(
        headline="Your Business is Growing",
        briefing_text="You've captured new leads. Check your dashboard for details.",
        action_items=["Follow up with pending leads"],
        recovery_shoutout="Keep up the great work!",
    )


def build_prompts(company_name: str, metrics: Dict[str, Any], hot_leads: List[Dict[str, Any]]) -> Tuple[str, str]:
    request = {
        "business_name": company_name or "Your Business",
        "report_period": REPORT_PERIOD,
        "metrics": {
            "total_leads": metrics["leads_captured"],
            "qualified_leads": metrics["qualified"],
            "recovered_leads": metrics["recovered"],
            "estimated_revenue_pipe": metrics["estimated_revenue"],
            "top_service": metrics["top_service"],
            "out_of_area_count": metrics["out_of_area"],
            "emergency_count": metrics["emergency"],
            "junk_count": metrics["junk"],
        },
        "hot_leads": [
            {
                "name": lead.get("visitor_name") or "Anonymous",
                "service": lead.get("service_type"),
                "value": range_high(lead.get("estimated_range")),
                "urgency": lead.get("urgency_score"),
            }
            for lead in hot_leads
        ],
    }
    return SYSTEM_PROMPT, json.dumps(request, indent=2)


async def compose(
    gateway: ModelGateway,
    company_name: str,
    metrics: Dict[str, Any],
    hot_leads: List[Dict[str, Any]],
) -> InsightCopy:
    system_prompt, user_prompt = build_prompts(company_name, metrics, hot_leads)
    try:
        return await gateway.invoke(Tier.FAST, system_prompt, user_prompt, InsightCopy, max_tokens=512)
    except ModelError as exc:
        logger.warning("Briefing generation failed for %s: %s", company_name, exc)
        return fallback_insight()


async def daily_briefing(gateway: ModelGateway, aggregator: MetricsAggregator, customer) -> Dict[str, Any]:
    metrics = await aggregator.daily_metrics(customer.id)
    hot = await aggregator.hot_leads(customer.id, limit=5)
    insight = await compose(gateway, customer.company_name, metrics, hot)
    return {
        "period": REPORT_PERIOD,
        "insights": insight.model_dump(),
        "metrics": metrics,
        "hot_leads": hot,
    }
