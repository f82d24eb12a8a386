import json

import pytest

from leadcapture.agents import insights

pytestmark = pytest.mark.asyncio


async def quoted_hot_lead(store, customer):
    lead = await store.get_or_create_lead(customer.id, "hot")
    await store.update_lead(
        lead.id,
        visitor_name="Dana",
        classification={"service_type": "deck_staining", "category": "New Lead", "urgency_score": 0.9},
        quote={"estimated_range": "$700 - $1,265"},
        is_qualified=True,
        is_complete=True,
        status="qualified",
    )
    return lead


async def test_briefing_is_built_from_daily_metrics_and_hot_leads(gateway, metrics, store, customer, providers, replies):
    await quoted_hot_lead(store, customer)
    providers["groq"].push(replies.insight())

    summary = await insights.daily_briefing(gateway, metrics, customer)

    assert summary["period"] == "Past 24 Hours"
    assert summary["insights"]["headline"] == "Strong Monday: $1,265 pipeline"
    assert summary["metrics"]["leads_captured"] == 1
    assert summary["hot_leads"][0]["visitor_name"] == "Dana"

    sent = json.loads(providers["groq"].calls[0]["user"])
    assert sent["business_name"] == "Acme Decks"
    assert sent["metrics"]["estimated_revenue_pipe"] == 1265.0
    assert sent["hot_leads"] == [{"name": "Dana", "service": "deck_staining", "value": 1265.0, "urgency": 0.9}]


async def test_briefing_falls_back_when_the_fast_tier_is_down(gateway, metrics, customer, providers):
    summary = await insights.daily_briefing(gateway, metrics, customer)

    assert summary["insights"] == insights.fallback_insight().model_dump()
    assert summary["hot_leads"] == []


async def test_briefing_without_action_items_is_rejected(gateway, metrics, customer, providers, replies):
    bad = replies.insight()
    bad["action_items"] = []
    providers["groq"].push(bad, bad)

    summary = await insights.daily_briefing(gateway, metrics, customer)

    assert summary["insights"]["headline"] == "Your Business is Growing"
