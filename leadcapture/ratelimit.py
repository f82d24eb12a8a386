"""Per-session message budgets and per-session turn serialization.

Both use Redis when ``REDIS_URL`` is configured so they hold across service
instances; otherwise the budget lives in the ``sessions`` table and the lock
is per process.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import AsyncIterator, Dict, Optional, Protocol

from redis.asyncio import Redis
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from leadcapture.db import VisitorSession, utcnow
from leadcapture.settings import SessionSettings
from leadcapture.store import LeadStore

logger = logging.getLogger("leadcapture.ratelimit")

REDIS_URL = os.getenv("REDIS_URL")
KEY_PREFIX = "leadcapture"


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    count: int
    limit: int


class SessionCounter(Protocol):
    async def hit(self, customer_id: str, session_id: str, limit: int) -> RateDecision:
        ...


class DatabaseSessionCounter:
    def __init__(self, store: LeadStore, settings: Optional[SessionSettings] = None):
        self.store = store
        self.settings = settings or SessionSettings()

    async def hit(self, customer_id: str, session_id: str, limit: int) -> RateDecision:
        now = utcnow()
        expires_at = now + timedelta(seconds=self.settings.ttl_seconds)
        scope = (VisitorSession.customer_id == customer_id, VisitorSession.session_id == session_id)
        bump = (
            update(VisitorSession)
            .where(*scope, VisitorSession.expires_at > now)
            .values(
                message_count=VisitorSession.message_count + 1,
                last_activity_at=now,
                expires_at=expires_at,
            )
        )
        async with self.store.session() as session:
            result = await session.execute(bump)
            if result.rowcount == 0:
                existing = (await session.exec(select(VisitorSession).where(*scope))).first()
                if existing:
                    # expired: start a fresh window
                    existing.message_count = 1
                    existing.last_activity_at = now
                    existing.expires_at = expires_at
                    session.add(existing)
                else:
                    session.add(
                        VisitorSession(
                            customer_id=customer_id,
                            session_id=session_id,
                            message_count=1,
                            last_activity_at=now,
                            expires_at=expires_at,
                        )
                    )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                await session.execute(bump)
                await session.commit()
            count = await session.scalar(select(VisitorSession.message_count).where(*scope))
        count = int(count or 0)
        return RateDecision(allowed=count <= limit, count=count, limit=limit)


class RedisSessionCounter:
    def __init__(self, client: Redis, settings: Optional[SessionSettings] = None):
        self.client = client
        self.settings = settings or SessionSettings()

    async def hit(self, customer_id: str, session_id: str, limit: int) -> RateDecision:
        key = f"{KEY_PREFIX}:session:{customer_id}:{session_id}"
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, self.settings.ttl_seconds)
            count, _ = await pipe.execute()
        count = int(count)
        return RateDecision(allowed=count <= limit, count=count, limit=limit)


class SessionLocks:
    """Serializes turns for one (tenant, session); different sessions never wait on each other."""

    def __init__(self, redis: Optional[Redis] = None, *, timeout: float = 60.0):
        self.redis = redis
        self.timeout = timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, customer_id: str, session_id: str) -> AsyncIterator[None]:
        key = f"{customer_id}:{session_id}"
        if self.redis is not None:
            lock = self.redis.lock(
                f"{KEY_PREFIX}:lock:{key}",
                timeout=self.timeout,
                blocking_timeout=self.timeout,
            )
            async with lock:
                yield
        else:
            lock = self._locks.setdefault(key, asyncio.Lock())
            self._holders[key] = self._holders.get(key, 0) + 1
            try:
                async with lock:
                    yield
            finally:
                self._holders[key] -= 1
                if not self._holders[key]:
                    self._holders.pop(key, None)
                    self._locks.pop(key, None)


def redis_from_env() -> Optional[Redis]:
    if not REDIS_URL:
        return None
    return Redis.from_url(REDIS_URL, decode_responses=True)


def build_session_counter(store: LeadStore, redis: Optional[Redis] = None) -> SessionCounter:
    settings = SessionSettings.from_env()
    if redis is not None:
        logger.info("Session budgets backed by Redis")
        return RedisSessionCounter(redis, settings)
    logger.info("Session budgets backed by the sessions table")
    return DatabaseSessionCounter(store, settings)
