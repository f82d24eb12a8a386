from datetime import datetime, timezone

import pytest

from leadcapture.agents.alerts import HotLeadAlert, severity_for, truncate_sms
from leadcapture.agents.digest import FALLBACK_SUBJECT
from leadcapture.digest import DigestWorker

# Monday 2026-10-19: 15:00 UTC is 10am in Chicago, 03:00 UTC is 10pm Sunday
MONDAY_10AM_CHICAGO = datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc)
SUNDAY_10PM_CHICAGO = datetime(2026, 10, 19, 3, 0, tzinfo=timezone.utc)


def hot_alert(customer, lead_id=1, score=0.9) -> HotLeadAlert:
    return HotLeadAlert(
        lead_id=lead_id,
        customer_id=customer.id,
        urgency_level=severity_for(score),
        service_type="deck_staining",
        visitor_name="Riley",
        estimated_value=1265.0,
        urgency_score=score,
    )


def test_severity_bands():
    assert severity_for(0.95) == "EMERGENCY"
    assert severity_for(0.9) == "URGENT"
    assert severity_for(0.88) == "URGENT"
    assert severity_for(0.8) == "HOT"


def test_sms_truncation():
    assert truncate_sms("short") == "short"
    long = truncate_sms("x" * 300)
    assert len(long) == 160
    assert long.endswith("...")


@pytest.mark.asyncio
async def test_model_sms_is_truncated_and_every_attempt_logged(dispatcher, store, customer, providers, transport):
    providers["groq"].push(
        {"sms_message": "🔥 URGENT " + "details " * 40, "email_subject": "Urgent lead", "email_body": "Call Riley."}
    )

    await dispatcher.send_hot_lead_alert(hot_alert(customer))

    sms = next(entry for entry in transport.sent if entry["channel"] == "sms")
    assert len(sms["body"]) <= 160
    assert sms["body"].endswith("...")
    email = next(entry for entry in transport.sent if entry["channel"] == "email")
    assert email["subject"] == "Urgent lead"

    logged = await store.notifications_for(customer.id)
    assert {n.notification_type for n in logged} == {"hot_lead_sms", "hot_lead_email"}


@pytest.mark.asyncio
async def test_alert_is_not_resent_once_delivered(dispatcher, store, customer, transport):
    await dispatcher.send_hot_lead_alert(hot_alert(customer))
    await dispatcher.send_hot_lead_alert(hot_alert(customer))

    assert len(transport.sent) == 2
    assert len(await store.notifications_for(customer.id)) == 2


@pytest.mark.asyncio
async def test_failed_delivery_is_logged_and_retried_next_time(dispatcher, store, customer, transport):
    transport.status, transport.error = "failed", "carrier rejected"

    await dispatcher.send_hot_lead_alert(hot_alert(customer))
    await dispatcher.send_hot_lead_alert(hot_alert(customer))

    logged = await store.notifications_for(customer.id)
    assert len(logged) == 4
    assert all(n.status == "failed" and n.error_message == "carrier rejected" for n in logged)


@pytest.mark.asyncio
async def test_alerts_respect_preferences(dispatcher, customer_factory, transport):
    muted = await customer_factory(api_key="muted", alert_on_hot_lead=False)
    no_channels = await customer_factory(api_key="quiet", notification_email=None, notification_phone=None)

    await dispatcher.send_hot_lead_alert(hot_alert(muted))
    await dispatcher.send_hot_lead_alert(hot_alert(no_channels))

    assert transport.sent == []


@pytest.mark.asyncio
async def test_weekly_digest_uses_fallback_copy_and_marks_sent(dispatcher, store, customer, transport):
    await dispatcher.send_weekly_digest(customer.id, now=MONDAY_10AM_CHICAGO)

    assert len(transport.sent) == 1
    assert transport.sent[0]["recipient"] == "alerts@acmedecks.test"
    assert transport.sent[0]["subject"] == FALLBACK_SUBJECT
    refreshed = await store.get_customer(customer.id)
    assert refreshed.last_digest_sent_at == MONDAY_10AM_CHICAGO
    logged = await store.notifications_for(customer.id)
    assert [n.notification_type for n in logged] == ["weekly_digest"]


@pytest.mark.asyncio
async def test_digest_worker_sends_once_per_week_in_office_hours(dispatcher, store, customer, transport):
    worker = DigestWorker(dispatcher, store)

    night = await worker.run(now=SUNDAY_10PM_CHICAGO)
    assert night.skipped_office_hours == 1
    assert transport.sent == []

    morning = await worker.run(now=MONDAY_10AM_CHICAGO)
    assert morning.sent == 1

    later = await worker.run(now=MONDAY_10AM_CHICAGO.replace(hour=17))
    assert later.already_sent == 1
    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_digest_skips_tenants_who_opted_out(dispatcher, store, customer_factory, transport):
    await customer_factory(weekly_digest_enabled=False)
    worker = DigestWorker(dispatcher, store)

    report = await worker.run(now=MONDAY_10AM_CHICAGO)

    assert report.eligible == 0
    assert transport.sent == []
