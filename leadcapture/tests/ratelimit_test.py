import asyncio

import pytest
import pytest_asyncio
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

from leadcapture.ratelimit import DatabaseSessionCounter, RedisSessionCounter, SessionLocks
from leadcapture.settings import SessionSettings

pytestmark = pytest.mark.asyncio


@pytest_asyncio.fixture
async def redis():
    client = FakeRedis(server=FakeServer())
    yield client
    await client.aclose()


async def test_session_budget_counts_turns(store):
    counter = DatabaseSessionCounter(store, SessionSettings(ttl_seconds=3600))

    decisions = [await counter.hit("tenant", "s1", limit=2) for _ in range(3)]

    assert [d.allowed for d in decisions] == [True, True, False]
    assert decisions[-1].count == 3
    other = await counter.hit("tenant", "s2", limit=2)
    assert other.allowed and other.count == 1


async def test_expired_window_starts_over(store):
    counter = DatabaseSessionCounter(store, SessionSettings(ttl_seconds=-1))

    await counter.hit("tenant", "s1", limit=1)
    second = await counter.hit("tenant", "s1", limit=1)

    assert second.allowed
    assert second.count == 1


async def test_session_lock_serializes_one_session_only():
    locks = SessionLocks()
    order = []

    async def turn(session_id, label, delay):
        async with locks.hold("tenant", session_id):
            order.append(f"{label}-start")
            await asyncio.sleep(delay)
            order.append(f"{label}-end")

    await asyncio.gather(turn("s1", "a", 0.05), turn("s1", "b", 0), turn("s2", "c", 0))

    assert order.index("a-end") < order.index("b-start")
    assert order.index("c-start") < order.index("a-end")
    assert locks._locks == {}


async def test_redis_budget_counts_turns_per_session(redis):
    counter = RedisSessionCounter(redis, SessionSettings(ttl_seconds=3600))

    decisions = [await counter.hit("tenant", "s1", limit=2) for _ in range(3)]

    assert [d.allowed for d in decisions] == [True, True, False]
    assert decisions[-1].count == 3
    other = await counter.hit("tenant", "s2", limit=2)
    assert other.allowed and other.count == 1
    assert 0 < await redis.ttl("leadcapture:session:tenant:s1") <= 3600


async def test_redis_budget_is_scoped_per_tenant(redis):
    counter = RedisSessionCounter(redis, SessionSettings(ttl_seconds=3600))

    await counter.hit("tenant-a", "shared", limit=1)
    theirs = await counter.hit("tenant-b", "shared", limit=1)

    assert theirs.allowed and theirs.count == 1


async def test_redis_session_lock_serializes_one_session_only(redis):
    locks = SessionLocks(redis, timeout=5)
    order = []

    async def turn(session_id, label, delay):
        async with locks.hold("tenant", session_id):
            order.append(f"{label}-start")
            await asyncio.sleep(delay)
            order.append(f"{label}-end")

    await asyncio.gather(turn("s1", "a", 0.05), turn("s1", "b", 0), turn("s2", "c", 0))

    assert order.index("a-end") < order.index("b-start")
    assert order.index("c-start") < order.index("a-end")
    assert await redis.keys("leadcapture:lock:*") == []
