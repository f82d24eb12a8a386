from dataclasses import dataclass
from typing import Optional

from redis.asyncio import Redis

from leadcapture.analytics import MetricsAggregator
from leadcapture.digest import DigestWorker
from leadcapture.engine import ConversationEngine
from leadcapture.ghostbuster import FollowUpScheduler
from leadcapture.integrations.transport import HttpNotificationTransport, NotificationTransport
from leadcapture.llm.gateway import ModelGateway
from leadcapture.notifications import NotificationDispatcher
from leadcapture.ratelimit import SessionCounter, SessionLocks, build_session_counter, redis_from_env
from leadcapture.settings import DigestSettings, EngineSettings, FollowUpSettings
from leadcapture.store import LeadStore


@dataclass
class Services:
    gateway: ModelGateway
    store: LeadStore
    metrics: MetricsAggregator
    dispatcher: NotificationDispatcher
    engine: ConversationEngine
    followups: FollowUpScheduler
    digests: DigestWorker
    session_counter: SessionCounter
    redis: Optional[Redis] = None


def build_services(
    *,
    gateway: Optional[ModelGateway] = None,
    store: Optional[LeadStore] = None,
    transport: Optional[NotificationTransport] = None,
    redis: Optional[Redis] = None,
) -> Services:
    """Wire every component from the environment; any argument overrides the default."""
    gateway = gateway or ModelGateway.from_env()
    store = store or LeadStore()
    redis = redis if redis is not None else redis_from_env()
    engine_settings = EngineSettings.from_env()
    digest_settings = DigestSettings.from_env()

    metrics = MetricsAggregator(store, hot_lead_threshold=engine_settings.hot_lead_threshold)
    dispatcher = NotificationDispatcher(
        gateway,
        store,
        transport or HttpNotificationTransport(),
        metrics,
        digest_settings=digest_settings,
    )
    engine = ConversationEngine(
        gateway,
        store,
        dispatcher,
        settings=engine_settings,
        locks=SessionLocks(redis, timeout=engine_settings.lock_timeout_seconds),
    )
    return Services(
        gateway=gateway,
        store=store,
        metrics=metrics,
        dispatcher=dispatcher,
        engine=engine,
        followups=FollowUpScheduler(gateway, store, FollowUpSettings.from_env()),
        digests=DigestWorker(dispatcher, store, digest_settings),
        session_counter=build_session_counter(store, redis),
        redis=redis,
    )
