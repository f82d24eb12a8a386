import logging
from typing import Any, Dict, Tuple

from pydantic import BaseModel, Field

from leadcapture.errors import ModelError
from leadcapture.llm.gateway import ModelGateway, Tier

logger = logging.getLogger("leadcapture.digest_copy")

FALLBACK_SUBJECT = "Your Weekly Performance Report"
FALLBACK_BODY = "Check your dashboard for this week's performance metrics."


class DigestCopy(BaseModel):
    subject_line: str = Field(min_length=1)
    email_body: str = Field(min_length=1)
    html_body: str = ""


def fallback_copy() -> DigestCopy:
    return DigestCopy(subject_line=FALLBACK_SUBJECT, email_body=FALLBACK_BODY, html_body="")


def build_prompts(company_name: str, report: Dict[str, Any]) -> Tuple[str, str]:
    system_prompt = (
        f"You write the Monday performance digest for {company_name}, a contractor using an AI lead assistant. "
        "Lead with recovered revenue and hours saved, then list hot leads still waiting. Be concise and upbeat.\n"
        'Return JSON: {"subject_line": string, "email_body": string, "html_body": string}'
    )
    lines = [f"{key}: {value}" for key, value in report.items() if key != "hot_leads"]
    for lead in report.get("hot_leads") or []:
        lines.append(
            f"hot lead: {lead.get('visitor_name') or 'unknown'} - {lead.get('service_type')} "
            f"({lead.get('estimated_range') or 'no quote'})"
        )
    return system_prompt, "\n".join(lines)


async def compose(gateway: ModelGateway, company_name: str, report: Dict[str, Any]) -> DigestCopy:
    system_prompt, user_prompt = build_prompts(company_name, report)
    try:
        return await gateway.invoke(Tier.CAPABLE, system_prompt, user_prompt, DigestCopy, max_tokens=1200)
    except ModelError as exc:
        logger.warning("Digest copy generation failed for %s: %s", company_name, exc)
        return fallback_copy()
