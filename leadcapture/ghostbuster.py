"""Ghost Buster: one nudge for visitors who went quiet mid-conversation.

A sweep picks leads last touched 15-30 minutes ago, skips tenants outside
office hours, honours stop phrases, and sends at most one nudge per lead.
The one-shot guarantee is the conditional update on ``follow_up_sent``;
the nudge is only persisted by the sweep that wins it.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

from leadcapture import monitoring
from leadcapture.agents import nudges
from leadcapture.db import Customer, Lead, as_utc, utcnow
from leadcapture.errors import ConfigurationError
from leadcapture.llm.gateway import ModelGateway
from leadcapture.officehours import is_office_hours
from leadcapture.pricing import normalize_service, resolve_pricing_rule, validate_dimensions
from leadcapture.settings import FollowUpSettings
from leadcapture.store import LeadStore

logger = logging.getLogger("leadcapture.ghostbuster")


@dataclass
class SweepReport:
    selected: int = 0
    skipped_office_hours: int = 0
    skipped_unknown_service: int = 0
    stopped: int = 0
    completed: int = 0
    nudged: int = 0
    lost_race: int = 0
    failed: int = 0


class FollowUpScheduler:
    def __init__(
        self,
        gateway: ModelGateway,
        store: LeadStore,
        settings: Optional[FollowUpSettings] = None,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.settings = settings or FollowUpSettings()

    async def run_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = as_utc(now) if now else utcnow()
        report = SweepReport()
        candidates = await self.store.stale_leads(
            now,
            min_stale_minutes=self.settings.min_stale_minutes,
            max_stale_minutes=self.settings.max_stale_minutes,
            limit=self.settings.batch_size,
        )
        report.selected = len(candidates)

        for lead, customer in candidates:
            if not is_office_hours(customer.timezone, self.settings.office_hours, now):
                report.skipped_office_hours += 1
                continue
            try:
                outcome = await self._process(lead, customer, now)
            except Exception as exc:
                report.failed += 1
                logger.error("Follow-up failed for lead %s", lead.id)
                monitoring.capture_exception(exc, customer_id=customer.id, lead_id=lead.id)
                continue
            setattr(report, outcome, getattr(report, outcome) + 1)

        logger.info("ghostbuster_sweep", extra={"sweep": asdict(report)})
        return report

    async def _process(self, lead: Lead, customer: Customer, now: datetime) -> str:
        last = await self.store.last_visitor_message(lead.id)
        if last is not None and nudges.matches_stop_phrase(last.content):
            await self.store.update_lead(lead.id, stopped=True)
            logger.info("Lead %s asked us to stop; no follow-up", lead.id)
            return "stopped"

        field_name = nudges.missing_field(
            lead,
            needs_dimensions=self._needs_dimensions(lead, customer),
            has_dimensions=await self._has_dimensions(lead),
        )
        if field_name is None:
            return "skipped_unknown_service"
        if field_name == "none":
            await self.store.update_lead(lead.id, expected={"is_complete": False}, is_complete=True)
            return "completed"

        draft, used_fallback = await nudges.compose(
            self.gateway, lead, field_name, max_words=self.settings.max_nudge_words
        )
        won = await self.store.update_lead(
            lead.id,
            expected={
                "follow_up_sent": False,
                "stopped": False,
                "is_complete": False,
                "updated_at": lead.updated_at,
            },
            follow_up_sent=True,
        )
        if not won:
            logger.info("Lead %s changed during the sweep; nudge discarded", lead.id)
            return "lost_race"

        strategy = nudges.STRATEGIES.get(field_name, nudges.FALLBACK_STRATEGY) if used_fallback else draft.strategy
        delay = min(
            max(draft.scheduled_delay_minutes, self.settings.min_delay_minutes),
            self.settings.max_delay_minutes,
        )
        await self.store.append_message(
            lead,
            "assistant",
            draft.follow_up_message,
            model_tier=nudges.NUDGE_TIER,
            counted=False,
        )
        await self.store.record_followup(
            lead,
            draft.follow_up_message,
            scheduled_at=now + timedelta(minutes=delay),
            strategy=strategy,
        )
        logger.info("Nudged lead %s asking for %s", lead.id, field_name)
        return "nudged"

    def _needs_dimensions(self, lead: Lead, customer: Customer) -> bool:
        service = normalize_service((lead.classification or {}).get("service_type"))
        if service in self.settings.dimensional_services:
            return True
        try:
            rule = resolve_pricing_rule(customer.pricing_rules, service)
        except ConfigurationError:
            return False
        return rule.is_dimensional

    async def _has_dimensions(self, lead: Lead) -> bool:
        breakdown = (lead.quote or {}).get("breakdown")
        if breakdown:
            return True
        return validate_dimensions(await self.store.visitor_text(lead.id)).has_dimensions
