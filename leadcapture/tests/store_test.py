from datetime import datetime, timedelta, timezone

import pytest

from leadcapture.db import as_utc, utcnow

pytestmark = pytest.mark.asyncio


async def test_timestamps_are_stored_and_read_as_aware_utc(store, customer):
    lead = await store.get_or_create_lead(customer.id, "session-1")

    assert customer.created_at.tzinfo is not None
    assert lead.updated_at.tzinfo is not None
    assert lead.updated_at.utcoffset() == timedelta(0)

    reloaded = await store.get_lead(lead.id)
    assert reloaded.updated_at == lead.updated_at


async def test_conditional_update_matches_the_observed_timestamp(store, customer):
    lead = await store.get_or_create_lead(customer.id, "session-1")
    observed = (await store.get_lead(lead.id)).updated_at

    assert await store.update_lead(lead.id, expected={"updated_at": observed}, follow_up_sent=True)
    assert not await store.update_lead(lead.id, expected={"updated_at": observed}, stopped=True)


async def test_other_offsets_are_normalised_to_utc(store, customer):
    lead = await store.get_or_create_lead(customer.id, "session-1")
    chicago_noon = datetime(2026, 10, 19, 12, 0, tzinfo=timezone(timedelta(hours=-5)))

    await store.update_lead(lead.id, updated_at=chicago_noon)

    refreshed = await store.get_lead(lead.id)
    assert refreshed.updated_at == datetime(2026, 10, 19, 17, 0, tzinfo=timezone.utc)
    assert refreshed.updated_at.utcoffset() == timedelta(0)


def test_as_utc_treats_naive_values_as_utc():
    naive = datetime(2026, 10, 19, 17, 0)

    assert as_utc(naive) == datetime(2026, 10, 19, 17, 0, tzinfo=timezone.utc)
    assert utcnow().tzinfo is not None
