import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from leadcapture.agents import nudges
from leadcapture.agents.nudges import FALLBACK_NUDGE, NudgeDraft
from leadcapture.ghostbuster import FollowUpScheduler

pytestmark = pytest.mark.asyncio

# Monday 2026-10-19: 17:00 UTC is noon in Chicago, 07:00 UTC is 2am
NOON_CHICAGO = datetime(2026, 10, 19, 17, 0, tzinfo=timezone.utc)
TWO_AM_CHICAGO = datetime(2026, 10, 19, 7, 0, tzinfo=timezone.utc)


async def stale_lead(
    store,
    customer,
    now,
    *,
    minutes=20,
    session_id="session-1",
    visitor_text="I need my deck stained",
    service_type="deck_staining",
    assistant_reply="Happy to help! What's the best number to reach you?",
    **fields,
):
    lead = await store.get_or_create_lead(customer.id, session_id)
    await store.append_message(lead, "visitor", visitor_text)
    if assistant_reply:
        await store.append_message(lead, "assistant", assistant_reply, model_tier="fast")
    await store.update_lead(
        lead.id,
        classification={"service_type": service_type, "confidence": 0.8},
        updated_at=now - timedelta(minutes=minutes),
        **fields,
    )
    return await store.get_lead(lead.id)


async def test_abandoned_lead_gets_exactly_one_nudge(followups, store, customer, providers, replies):
    lead = await stale_lead(store, customer, NOON_CHICAGO)
    providers["groq"].push(replies.nudge("What's the best number to reach you?", delay=30))

    report = await followups.run_sweep(now=NOON_CHICAGO)

    assert report.selected == 1
    assert report.nudged == 1
    refreshed = await store.get_lead(lead.id)
    assert refreshed.follow_up_sent
    assert refreshed.message_count == lead.message_count

    records = await store.followups_for(lead.id)
    assert len(records) == 1
    assert records[0].strategy == "phone_nudge"
    assert records[0].status == "sent"
    assert records[0].scheduled_at == NOON_CHICAGO + timedelta(minutes=30)

    history = await store.history(lead.id)
    assert history[-1].sender == "assistant"
    assert history[-1].content == "What's the best number to reach you?"
    assert "Missing detail to ask for: phone" in providers["groq"].calls[0]["user"]

    again = await followups.run_sweep(now=NOON_CHICAGO + timedelta(minutes=5))
    assert again.selected == 0
    assert len(await store.followups_for(lead.id)) == 1


async def test_outside_office_hours_nothing_is_sent(followups, store, customer, providers):
    lead = await stale_lead(store, customer, TWO_AM_CHICAGO)

    report = await followups.run_sweep(now=TWO_AM_CHICAGO)

    assert report.skipped_office_hours == 1
    assert not providers["groq"].calls
    refreshed = await store.get_lead(lead.id)
    assert not refreshed.follow_up_sent


async def test_only_the_stale_window_is_selected(followups, store, customer, providers, replies):
    await stale_lead(store, customer, NOON_CHICAGO, minutes=5, session_id="fresh")
    await stale_lead(store, customer, NOON_CHICAGO, minutes=45, session_id="old")

    report = await followups.run_sweep(now=NOON_CHICAGO)

    assert report.selected == 0


async def test_stop_phrase_stops_the_lead(followups, store, customer, providers):
    lead = await stale_lead(store, customer, NOON_CHICAGO, visitor_text="Never mind, we found someone")

    report = await followups.run_sweep(now=NOON_CHICAGO)

    assert report.stopped == 1
    assert not providers["groq"].calls
    refreshed = await store.get_lead(lead.id)
    assert refreshed.stopped
    assert not refreshed.follow_up_sent


async def test_lead_with_everything_is_marked_complete(followups, store, customer, providers):
    lead = await stale_lead(
        store,
        customer,
        NOON_CHICAGO,
        visitor_text="The deck is 12x16",
        visitor_phone="512-555-0101",
        visitor_address="1 Main St",
    )

    report = await followups.run_sweep(now=NOON_CHICAGO)

    assert report.completed == 1
    refreshed = await store.get_lead(lead.id)
    assert refreshed.is_complete
    assert not refreshed.follow_up_sent


async def test_unknown_service_is_skipped(followups, store, customer, providers):
    await stale_lead(store, customer, NOON_CHICAGO, service_type="unknown")

    report = await followups.run_sweep(now=NOON_CHICAGO)

    assert report.skipped_unknown_service == 1
    assert not providers["groq"].calls


async def test_dimensions_requested_for_area_priced_services(followups, store, customer, providers, replies):
    await stale_lead(store, customer, NOON_CHICAGO, visitor_phone="512-555-0101", visitor_address="1 Main St")
    providers["groq"].push(replies.nudge("How big is the deck?", strategy="dimension_request"))

    report = await followups.run_sweep(now=NOON_CHICAGO)

    assert report.nudged == 1
    assert "Missing detail to ask for: dimensions" in providers["groq"].calls[0]["user"]


async def test_wordy_nudge_is_replaced_by_fallback(followups, store, customer, providers, replies):
    lead = await stale_lead(store, customer, NOON_CHICAGO, visitor_phone="512-555-0101")
    providers["groq"].push(replies.nudge(" ".join(["please"] * 20), strategy="address_nudge"))

    await followups.run_sweep(now=NOON_CHICAGO)

    records = await store.followups_for(lead.id)
    assert records[0].content == FALLBACK_NUDGE
    assert records[0].strategy == "address_nudge"
    assert records[0].scheduled_at == NOON_CHICAGO + timedelta(minutes=15)


async def test_visitor_reply_during_sweep_wins(followups, store, customer, monkeypatch):
    lead = await stale_lead(store, customer, NOON_CHICAGO)

    async def visitor_replies_meanwhile(gateway, target, field_name, *, max_words):
        await store.update_lead(target.id, visitor_phone="512-555-0177")
        return NudgeDraft(follow_up_message="Still there?"), False

    monkeypatch.setattr(nudges, "compose", visitor_replies_meanwhile)

    report = await followups.run_sweep(now=NOON_CHICAGO)

    assert report.lost_race == 1
    refreshed = await store.get_lead(lead.id)
    assert not refreshed.follow_up_sent
    assert await store.followups_for(lead.id) == []


async def test_overlapping_sweeps_nudge_once(gateway, store, customer, providers, replies):
    lead = await stale_lead(store, customer, NOON_CHICAGO)
    providers["groq"].push(replies.nudge(), replies.nudge())
    first, second = FollowUpScheduler(gateway, store), FollowUpScheduler(gateway, store)

    reports = await asyncio.gather(first.run_sweep(now=NOON_CHICAGO), second.run_sweep(now=NOON_CHICAGO))

    assert sum(report.nudged for report in reports) == 1
    assert len(await store.followups_for(lead.id)) == 1


async def test_inactive_tenants_are_ignored(followups, store, customer_factory, providers):
    dormant = await customer_factory(api_key="dormant-key", is_active=False)
    await stale_lead(store, dormant, NOON_CHICAGO)

    report = await followups.run_sweep(now=NOON_CHICAGO)

    assert report.selected == 0


async def test_stop_words_in_our_own_reply_do_not_stop_the_lead(followups, store, customer, providers, replies):
    lead = await stale_lead(
        store,
        customer,
        NOON_CHICAGO,
        assistant_reply="What's the best number to reach you? Reply stop to opt out.",
    )
    providers["groq"].push(replies.nudge("What's the best number to reach you?"))

    report = await followups.run_sweep(now=NOON_CHICAGO)

    assert report.stopped == 0
    assert report.nudged == 1
    refreshed = await store.get_lead(lead.id)
    assert not refreshed.stopped
    assert refreshed.follow_up_sent


async def test_nudge_is_stored_under_the_nudge_tier(followups, store, customer, providers, replies):
    lead = await stale_lead(store, customer, NOON_CHICAGO)
    providers["groq"].push(replies.nudge("What's the best number to reach you?"))

    await followups.run_sweep(now=NOON_CHICAGO)

    history = await store.history(lead.id)
    assert history[-1].model_tier == nudges.NUDGE_TIER
