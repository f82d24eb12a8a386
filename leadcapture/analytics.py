from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlmodel import select

from leadcapture.db import Followup, Lead, Message, Notification, as_utc, utcnow
from leadcapture.pricing import range_high
from leadcapture.store import LeadStore

AI_COST_PER_FAST_CALL = 0.001
AI_COST_PER_CAPABLE_CALL = 0.002
AI_COST_PER_NUDGE = 0.0005
EMERGENCY_SCORE = 0.9


def _classification(lead: Lead) -> Dict[str, Any]:
    return lead.classification or {}


def _quote_high(lead: Lead) -> float:
    return range_high((lead.quote or {}).get("estimated_range"))


class MetricsAggregator:
    """Read-only figures for dashboards and digests. Never writes lead state."""

    def __init__(self, store: LeadStore, *, hot_lead_threshold: float = 0.8):
        self.store = store
        self.hot_lead_threshold = hot_lead_threshold

    async def fetch_metrics(self, customer_id: str, *, start: datetime, end: datetime) -> Dict[str, Any]:
        async with self.store.session() as session:
            leads = (
                await session.exec(
                    select(Lead).where(
                        Lead.customer_id == customer_id,
                        Lead.deleted_at.is_(None),
                        Lead.created_at >= start,
                        Lead.created_at <= end,
                    )
                )
            ).all()

            tier_rows = (
                await session.execute(
                    select(Message.sender, Message.model_tier, func.count())
                    .where(
                        Message.customer_id == customer_id,
                        Message.created_at >= start,
                        Message.created_at <= end,
                    )
                    .group_by(Message.sender, Message.model_tier)
                )
            ).all()

            nudges = int(
                await session.scalar(
                    select(func.count())
                    .select_from(Followup)
                    .where(
                        Followup.customer_id == customer_id,
                        Followup.created_at >= start,
                        Followup.created_at <= end,
                    )
                )
                or 0
            )

            notification_rows = (
                await session.execute(
                    select(Notification.status, func.count())
                    .where(
                        Notification.customer_id == customer_id,
                        Notification.created_at >= start,
                        Notification.created_at <= end,
                    )
                    .group_by(Notification.status)
                )
            ).all()

        total_messages = 0
        fast_calls = 0
        capable_calls = 0
        for sender, tier, count in tier_rows:
            total_messages += count
            if sender != "assistant":
                continue
            if tier == "fast":
                fast_calls += count
            elif tier == "capable":
                capable_calls += count

        status_breakdown: Dict[str, int] = {}
        services: Counter = Counter()
        estimated_revenue = 0.0
        recovered_revenue = 0.0
        actual_revenue = 0.0
        qualified = quoted = completed = recovered = 0
        out_of_area = emergency = junk = needs_review = 0
        for lead in leads:
            status_breakdown[lead.status] = status_breakdown.get(lead.status, 0) + 1
            classification = _classification(lead)
            service = classification.get("service_type")
            if service and service != "unknown":
                services[service] += 1
            if lead.is_qualified:
                qualified += 1
            if lead.is_complete:
                completed += 1
            if lead.quote:
                quoted += 1
                estimated_revenue += _quote_high(lead)
            if lead.follow_up_sent and lead.is_complete:
                recovered += 1
                recovered_revenue += _quote_high(lead)
            if lead.status == "won" and lead.value:
                actual_revenue += float(lead.value)
            if lead.is_out_of_area:
                out_of_area += 1
            if float(classification.get("urgency_score") or 0.0) >= EMERGENCY_SCORE:
                emergency += 1
            if classification.get("category") == "Junk":
                junk += 1
            if lead.needs_review:
                needs_review += 1

        ai_cost = round(
            fast_calls * AI_COST_PER_FAST_CALL
            + capable_calls * AI_COST_PER_CAPABLE_CALL
            + nudges * AI_COST_PER_NUDGE,
            4,
        )
        roi = 0
        if recovered_revenue > 0 and ai_cost > 0:
            roi = round((recovered_revenue - ai_cost) / ai_cost * 100)

        notifications = {status: count for status, count in notification_rows}
        top_service = services.most_common(1)[0][0] if services else None

        return {
            "window": {"start": start.isoformat(), "end": end.isoformat()},
            "leads_captured": len(leads),
            "qualified": qualified,
            "quoted": quoted,
            "completed": completed,
            "recovered": recovered,
            "needs_review": needs_review,
            "estimated_revenue": round(estimated_revenue, 2),
            "recovered_revenue": round(recovered_revenue, 2),
            "actual_revenue": round(actual_revenue, 2),
            "ai_cost": ai_cost,
            "roi": roi,
            "top_service": top_service,
            "out_of_area": out_of_area,
            "emergency": emergency,
            "junk": junk,
            "total_messages": total_messages,
            "nudges_sent": nudges,
            "alerts_sent": notifications.get("sent", 0),
            "alerts_failed": notifications.get("failed", 0),
            "status_breakdown": status_breakdown,
        }

    async def daily_metrics(self, customer_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        end = as_utc(now) if now else utcnow()
        return await self.fetch_metrics(customer_id, start=end - timedelta(hours=24), end=end)

    async def weekly_metrics(self, customer_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        end = as_utc(now) if now else utcnow()
        return await self.fetch_metrics(customer_id, start=end - timedelta(days=7), end=end)

    async def hot_leads(self, customer_id: str, *, limit: int = 5) -> List[Dict[str, Any]]:
        async with self.store.session() as session:
            leads = (
                await session.exec(
                    select(Lead)
                    .where(
                        Lead.customer_id == customer_id,
                        Lead.deleted_at.is_(None),
                        Lead.is_complete == True,  # noqa: E712
                        Lead.status.not_in(["won", "lost", "junk"]),
                    )
                    .order_by(Lead.updated_at.desc())
                )
            ).all()

        hot: List[Dict[str, Any]] = []
        for lead in leads:
            classification = _classification(lead)
            urgency = float(classification.get("urgency_score") or 0.0)
            if urgency < self.hot_lead_threshold and not lead.quote:
                continue
            hot.append(
                {
                    "lead_id": lead.id,
                    "visitor_name": lead.visitor_name,
                    "visitor_phone": lead.visitor_phone,
                    "service_type": classification.get("service_type"),
                    "urgency_score": urgency,
                    "estimated_range": (lead.quote or {}).get("estimated_range"),
                    "updated_at": lead.updated_at.isoformat() if lead.updated_at else None,
                }
            )
            if len(hot) >= limit:
                break
        return hot
