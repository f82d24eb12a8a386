import json
from typing import Any, Dict, List, Optional, Union

import pytest
import pytest_asyncio

from leadcapture.analytics import MetricsAggregator
from leadcapture.db import Customer, create_engine, create_session_factory, init_db
from leadcapture.engine import ConversationEngine
from leadcapture.ghostbuster import FollowUpScheduler
from leadcapture.integrations.transport import DeliveryResult
from leadcapture.llm.gateway import ModelGateway
from leadcapture.notifications import NotificationDispatcher
from leadcapture.settings import EngineSettings
from leadcapture.store import LeadStore


class ScriptedProvider:
    """Model provider that replays queued replies and records every prompt it receives.

    A queued ``Exception`` is raised instead of returned. An empty queue raises,
    which exercises the caller's fallback path.
    """

    def __init__(self, name: str, model: str = "scripted"):
        self.name = name
        self.model = model
        self.queue: List[Union[str, Exception]] = []
        self.calls: List[Dict[str, str]] = []

    def push(self, *replies: Union[str, Dict[str, Any], Exception]) -> "ScriptedProvider":
        for reply in replies:
            self.queue.append(json.dumps(reply) if isinstance(reply, dict) else reply)
        return self

    async def complete(self, system_prompt: str, user_prompt: str, *, max_tokens: int, json_mode: bool) -> str:
        self.calls.append({"system": system_prompt, "user": user_prompt})
        if not self.queue:
            raise RuntimeError(f"{self.name} has no scripted reply")
        reply = self.queue.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class RecordingTransport:
    def __init__(self, status: str = "sent", error: Optional[str] = None):
        self.status = status
        self.error = error
        self.sent: List[Dict[str, Any]] = []

    async def send(self, channel, recipient, subject, body, *, html_body=None) -> DeliveryResult:
        self.sent.append(
            {"channel": channel, "recipient": recipient, "subject": subject, "body": body, "html_body": html_body}
        )
        return DeliveryResult(status=self.status, error=self.error)


class Replies:
    """Builders for the JSON each agent expects back from a model."""

    @staticmethod
    def classification(
        *,
        service_type: str = "deck_staining",
        category: str = "New Lead",
        urgency_score: float = 0.5,
        confidence: float = 0.9,
        is_qualified: bool = False,
        is_out_of_area: bool = False,
        location: Optional[str] = None,
        missing_info: Optional[List[str]] = None,
        reply_message: str = "Great, what's the best phone number to reach you?",
        contact: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return {
            "classification": {
                "service_type": service_type,
                "category": category,
                "urgency": "high" if urgency_score >= 0.8 else "medium",
                "urgency_score": urgency_score,
                "confidence": confidence,
                "is_out_of_area": is_out_of_area,
                "location": location,
                "next_action": "generate_quote" if is_qualified else "ask_info",
            },
            "reply_message": reply_message,
            "is_qualified": is_qualified,
            "missing_info": ["phone"] if missing_info is None else missing_info,
            "contact": contact or {},
        }

    @staticmethod
    def quote(reply_message: str = "Thanks! Here is your estimate.", estimated_range: Optional[str] = None) -> Dict[str, Any]:
        return {
            "reply_message": reply_message,
            "estimated_range": estimated_range,
            "factors": ["deck size", "wood condition"],
            "disclaimer": "Final price confirmed on site.",
            "next_steps": "We'll call to schedule a visit.",
        }

    @staticmethod
    def nudge(message: str = "What's the best number to reach you?", strategy: str = "phone_nudge", delay: int = 30):
        return {"follow_up_message": message, "strategy": strategy, "scheduled_delay_minutes": delay}

    @staticmethod
    def insight(headline: str = "Strong Monday: $1,265 pipeline", action_items: Optional[List[str]] = None):
        return {
            "headline": headline,
            "briefing_text": "You captured a qualified deck lead worth $1,265.",
            "action_items": action_items or ["Call Dana about the deck"],
            "recovery_shoutout": "Follow-ups kept one lead alive.",
        }


@pytest.fixture
def replies() -> Replies:
    return Replies()


@pytest_asyncio.fixture
async def store(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'leadcapture_test.db'}")
    await init_db(engine)
    try:
        yield LeadStore(create_session_factory(engine))
    finally:
        await engine.dispose()


@pytest.fixture
def providers() -> Dict[str, ScriptedProvider]:
    return {name: ScriptedProvider(name) for name in ("groq", "claude_fast", "claude_capable")}


@pytest.fixture
def gateway(providers) -> ModelGateway:
    return ModelGateway(
        providers,
        {"fast": ["groq", "claude_fast"], "capable": ["claude_capable"]},
        retries=1,
        retry_base_delay=0,
        timeout_seconds=5,
    )


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def metrics(store) -> MetricsAggregator:
    return MetricsAggregator(store)


@pytest.fixture
def dispatcher(gateway, store, transport, metrics) -> NotificationDispatcher:
    return NotificationDispatcher(gateway, store, transport, metrics)


@pytest.fixture
def engine(gateway, store, dispatcher) -> ConversationEngine:
    return ConversationEngine(gateway, store, dispatcher, settings=EngineSettings())


@pytest.fixture
def followups(gateway, store) -> FollowUpScheduler:
    return FollowUpScheduler(gateway, store)


def make_customer(**overrides: Any) -> Customer:
    values: Dict[str, Any] = {
        "company_name": "Acme Decks",
        "email": "owner@acmedecks.test",
        "api_key": "acme-key",
        "timezone": "America/Chicago",
        "business_info": {
            "services": ["deck_staining", "fence_install"],
            "service_area": "Austin, TX",
            "partner_referral_info": {
                "partner_name": "Hill Country Decks",
                "partner_email": "jobs@hillcountry.test",
            },
        },
        "pricing_rules": {
            "deck_staining": {"unit": "sq_ft", "min": 3, "max": 5, "base_fee": 100, "typical_units": 200},
            "fence_install": {"unit": "linear_ft", "min": 25, "max": 40, "base_fee": 150},
        },
        "notification_email": "alerts@acmedecks.test",
        "notification_phone": "+15125550100",
    }
    values.update(overrides)
    return Customer(**values)


@pytest.fixture
def customer_factory(store):
    async def factory(**overrides: Any) -> Customer:
        return await store.create_customer(make_customer(**overrides))

    return factory


@pytest_asyncio.fixture
async def customer(customer_factory) -> Customer:
    return await customer_factory()
