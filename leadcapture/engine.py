"""Conversation state machine for widget turns.

One call to :meth:`ConversationEngine.process_message` handles one visitor
message: screen, resolve the lead, classify on the fast tier, then branch
into referral, junk, quote or ask-for-more. Turns for the same session are
serialized; every lead mutation is a guarded update in ``LeadStore``.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from leadcapture import monitoring
from leadcapture.agents import alerts, classifier, estimator
from leadcapture.agents.alerts import HotLeadAlert
from leadcapture.agents.classifier import ClassificationResult
from leadcapture.db import Customer, Lead, Message, utcnow
from leadcapture.errors import ConfigurationError, InputValidationError, ModelError, SecurityBlock
from leadcapture.llm.gateway import ModelGateway, Tier
from leadcapture.notifications import NotificationDispatcher
from leadcapture.pricing import (
    compute_estimate,
    range_high,
    resolve_pricing_rule,
    resolve_unit_value,
    validate_dimensions,
)
from leadcapture.ratelimit import SessionLocks
from leadcapture.schemas import WidgetMessageRequest
from leadcapture.security import DEFLECTION_REPLY, audit_blocked, sanitize_message, screen
from leadcapture.settings import EngineSettings

TECHNICAL_DIFFICULTIES_REPLY = (
    "I apologize, but I'm experiencing technical difficulties. Please try again in a moment, "
    "or feel free to call us directly if this is urgent."
)
MAX_MESSAGES_REPLY = (
    "Thanks for the detailed conversation! We've gathered all the information we need. "
    "One of our team members will reach out to you shortly to finalize the details."
)
ALREADY_QUALIFIED_REPLY = "We've already captured your request! Our team will be in touch soon."
JUNK_REPLY = "Thanks for your message. We can only help with service requests through this chat."


class TurnState(str, Enum):
    ASK_INFO = "ask_info"
    QUOTED = "quoted"
    REFERRED_OUT_OF_AREA = "referred_out_of_area"
    JUNK_CLOSED = "junk_closed"
    MAX_MESSAGES_CLOSED = "max_messages_closed"
    ALREADY_QUALIFIED_CLOSED = "already_qualified_closed"
    SECURITY_BLOCKED = "security_blocked"
    ERROR = "error"


TERMINAL_STATES = frozenset(
    {
        TurnState.QUOTED,
        TurnState.JUNK_CLOSED,
        TurnState.MAX_MESSAGES_CLOSED,
        TurnState.ALREADY_QUALIFIED_CLOSED,
        TurnState.SECURITY_BLOCKED,
    }
)


@dataclass
class TurnResult:
    state: TurnState
    reply_message: str
    lead_id: Optional[int] = None
    classification: Optional[Dict[str, Any]] = None
    quote: Optional[Dict[str, Any]] = None
    requires_followup: bool = False

    @property
    def conversation_ended(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_response(self) -> Dict[str, Any]:
        return {
            "lead_id": self.lead_id,
            "state": self.state.value,
            "classification": self.classification,
            "quote": self.quote,
            "requires_followup": self.requires_followup,
            "reply_message": self.reply_message,
            "conversation_ended": self.conversation_ended,
        }


@dataclass
class ReferralResult:
    success: bool
    message: str


@dataclass
class QuoteOutcome:
    quote: Optional[Dict[str, Any]] = None
    reply: Optional[str] = None
    provider: Optional[str] = None
    reason: Optional[str] = None


class ConversationEngine:
    def __init__(
        self,
        gateway: ModelGateway,
        store,
        dispatcher: Optional[NotificationDispatcher] = None,
        *,
        settings: Optional[EngineSettings] = None,
        locks: Optional[SessionLocks] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.dispatcher = dispatcher
        self.settings = settings or EngineSettings()
        self.locks = locks or SessionLocks(timeout=self.settings.lock_timeout_seconds)
        self.logger = logger or logging.getLogger("leadcapture.engine")
        self._background: Set[asyncio.Task] = set()

    async def process_message(self, customer: Customer, request: WidgetMessageRequest) -> TurnResult:
        started = time.perf_counter()
        try:
            self._screen(customer, request)
            async with self.locks.hold(customer.id, request.session_id):
                result = await self._run_turn(customer, request)
        except SecurityBlock as exc:
            result = TurnResult(
                state=TurnState.SECURITY_BLOCKED,
                reply_message=DEFLECTION_REPLY,
                classification={
                    "service_type": "junk",
                    "category": "Junk",
                    "confidence": 1.0,
                    "next_action": "close",
                    "reason": exc.reason,
                },
            )
        except Exception as exc:
            monitoring.capture_exception(exc, customer_id=customer.id, session_id=request.session_id)
            self._log(customer.id, request.session_id, None, "error", started, error=str(exc))
            return TurnResult(
                state=TurnState.ERROR,
                reply_message=TECHNICAL_DIFFICULTIES_REPLY,
                classification={
                    "service_type": "error",
                    "category": "System Error",
                    "confidence": 0.0,
                    "next_action": "retry",
                },
            )
        self._log(customer.id, request.session_id, result.lead_id, result.state.value, started)
        return result

    def _screen(self, customer: Customer, request: WidgetMessageRequest) -> None:
        verdict = screen(request.message)
        if not verdict.passed:
            audit_blocked(customer.id, request.session_id, request.message, verdict.reason)
            raise SecurityBlock(verdict.reason or "blocked")

    async def _run_turn(self, customer: Customer, request: WidgetMessageRequest) -> TurnResult:
        lead = await self.store.get_or_create_lead(customer.id, request.session_id)

        if lead.message_count >= self.settings.max_messages_per_session:
            return TurnResult(
                state=TurnState.MAX_MESSAGES_CLOSED,
                reply_message=MAX_MESSAGES_REPLY,
                lead_id=lead.id,
                classification=lead.classification,
                quote=lead.quote,
                requires_followup=True,
            )
        if lead.is_qualified:
            return self._already_qualified(lead)
        if lead.status == "junk":
            return TurnResult(
                state=TurnState.JUNK_CLOSED,
                reply_message=JUNK_REPLY,
                lead_id=lead.id,
                classification=lead.classification,
            )

        message = sanitize_message(request.message)
        if not message:
            raise InputValidationError("Message is empty after sanitization", field="message")
        await self.store.append_message(lead, "visitor", message)

        visitor = request.visitor
        if visitor:
            await self.store.update_visitor_info(
                lead.id,
                name=visitor.name,
                email=str(visitor.email) if visitor.email else None,
                phone=visitor.phone,
                address=visitor.address,
            )
        lead = await self._reload(lead)
        history = await self.store.history(lead.id)

        result, provider, used_fallback = await self._classify(customer, lead, history)
        classification = result.classification.model_dump()
        confidence = result.classification.confidence
        gateway_fallback = used_fallback or confidence == 0.0

        await self._store_extracted_contact(lead, result)
        lead = await self._reload(lead)

        changes: Dict[str, Any] = {"classification": classification}
        if gateway_fallback:
            changes["needs_review"] = True
        await self.store.update_lead(lead.id, **changes)

        partner = (customer.business_info or {}).get("partner_referral_info")
        if result.classification.is_out_of_area and partner:
            return await self._refer(lead, classification, partner, provider, confidence)

        if result.classification.category == "Junk":
            await self.store.update_lead(lead.id, status="junk", stopped=True)
            await self._reply(lead, result.reply_message, Tier.FAST, provider, confidence)
            return TurnResult(
                state=TurnState.JUNK_CLOSED,
                reply_message=result.reply_message,
                lead_id=lead.id,
                classification=classification,
            )

        reply = result.reply_message
        should_quote = (
            confidence >= self.settings.confidence_threshold
            and result.is_qualified
            and not gateway_fallback
        )
        if should_quote:
            outcome = await self._quote(customer, lead, classification, history)
            if outcome.quote is not None:
                committed = await self.store.update_lead(
                    lead.id,
                    expected={"is_qualified": False},
                    quote=outcome.quote,
                    is_qualified=True,
                    is_complete=True,
                    status="qualified",
                )
                if not committed:
                    return self._already_qualified(await self._reload(lead))
                self._check_hot_lead(customer, lead, classification, outcome.quote)
                await self._reply(lead, outcome.reply, Tier.CAPABLE, outcome.provider, confidence)
                return TurnResult(
                    state=TurnState.QUOTED,
                    reply_message=outcome.reply,
                    lead_id=lead.id,
                    classification=classification,
                    quote=outcome.quote,
                )
            await self.store.update_lead(lead.id, needs_review=True)
            if outcome.reply:
                reply = outcome.reply

        await self._reply(lead, reply, Tier.FAST if provider else None, provider, confidence)
        return TurnResult(
            state=TurnState.ASK_INFO,
            reply_message=reply,
            lead_id=lead.id,
            classification=classification,
            requires_followup=bool(result.missing_info),
        )

    async def _classify(
        self, customer: Customer, lead: Lead, history: List[Message]
    ) -> Tuple[ClassificationResult, Optional[str], bool]:
        system_prompt, user_prompt = classifier.build_prompts(customer, lead, history)
        for name in self.gateway.providers_for(Tier.FAST):
            try:
                result = await self.gateway.invoke(
                    Tier.FAST, system_prompt, user_prompt, ClassificationResult, provider=name, max_tokens=800
                )
                return result, name, False
            except ModelError as exc:
                self.logger.warning("Classifier provider %s failed for lead %s: %s", name, lead.id, exc)
        return classifier.fallback_result(), None, True

    async def _quote(
        self,
        customer: Customer,
        lead: Lead,
        classification: Dict[str, Any],
        history: List[Message],
    ) -> QuoteOutcome:
        try:
            rule = resolve_pricing_rule(customer.pricing_rules, classification.get("service_type"))
        except ConfigurationError as exc:
            self.logger.warning("Cannot quote lead %s: %s", lead.id, exc)
            return QuoteOutcome(reply=estimator.CONTACT_US_REPLY, reason="configuration")

        visitor_text = "\n".join(m.content for m in history if m.sender == "visitor")
        dimensions = validate_dimensions(visitor_text)
        unit_value, is_calculated = resolve_unit_value(rule, dimensions)
        estimate = compute_estimate(rule, unit_value, is_calculated=is_calculated) if unit_value else None

        system_prompt, user_prompt = estimator.build_prompts(
            customer, lead, classification, history, rule, estimate, dimensions
        )
        for name in self.gateway.providers_for(Tier.CAPABLE):
            try:
                draft = await self.gateway.invoke(
                    Tier.CAPABLE, system_prompt, user_prompt, estimator.QuoteDraft, provider=name, max_tokens=1024
                )
            except ModelError as exc:
                self.logger.warning("Quote provider %s failed for lead %s: %s", name, lead.id, exc)
                continue
            quote = estimator.build_quote(draft, estimate, rule)
            if not quote["estimated_range"]:
                return QuoteOutcome(reason="no_range")
            return QuoteOutcome(
                quote=quote,
                reply=estimator.compose_reply(draft, estimate, dimensions),
                provider=name,
            )
        return QuoteOutcome(reason="model_error")

    async def _refer(
        self,
        lead: Lead,
        classification: Dict[str, Any],
        partner: Dict[str, Any],
        provider: Optional[str],
        confidence: float,
    ) -> TurnResult:
        classification = dict(classification, next_action="partner_referral")
        reply = alerts.referral_offer(
            visitor_name=lead.visitor_name,
            location=classification.get("location"),
            partner_name=partner.get("partner_name"),
            service_type=classification.get("service_type"),
        )
        await self.store.update_lead(
            lead.id,
            classification=classification,
            is_out_of_area=True,
            status="referred",
        )
        await self._reply(lead, reply, Tier.FAST, provider, confidence)
        return TurnResult(
            state=TurnState.REFERRED_OUT_OF_AREA,
            reply_message=reply,
            lead_id=lead.id,
            classification=classification,
            requires_followup=True,
        )

    def _check_hot_lead(
        self,
        customer: Customer,
        lead: Lead,
        classification: Dict[str, Any],
        quote: Dict[str, Any],
    ) -> None:
        urgency = float(classification.get("urgency_score") or 0.0)
        if self.dispatcher is None or urgency < self.settings.hot_lead_threshold:
            return
        alert = HotLeadAlert(
            lead_id=lead.id,
            customer_id=customer.id,
            urgency_level=alerts.severity_for(
                urgency,
                emergency=self.settings.emergency_threshold,
                urgent=self.settings.urgent_threshold,
            ),
            service_type=classification.get("service_type") or "unknown",
            visitor_name=lead.visitor_name,
            estimated_value=range_high(quote.get("estimated_range")),
            urgency_score=urgency,
            notes=f"Quote: {quote.get('estimated_range')}",
        )
        self._spawn(self._dispatch_alert(alert))

    async def _dispatch_alert(self, alert: HotLeadAlert) -> None:
        try:
            await self.dispatcher.send_hot_lead_alert(alert)
        except Exception as exc:
            self.logger.error("Hot lead alert failed for lead %s", alert.lead_id)
            monitoring.capture_exception(exc, customer_id=alert.customer_id, lead_id=alert.lead_id)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for background alert dispatches started by earlier turns."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def confirm_partner_referral(self, customer: Customer, lead_id: int) -> ReferralResult:
        access = await self.store.get_lead_for_customer(lead_id, customer.id)
        if not access.found:
            return ReferralResult(success=False, message="Lead not found")
        lead = access.lead
        partner = (customer.business_info or {}).get("partner_referral_info") or {}
        if not partner or not lead.is_out_of_area:
            return ReferralResult(success=False, message="No partner referral is available for this request.")

        partner_name = partner.get("partner_name")
        message = alerts.referral_confirmation(partner_name)
        if lead.referral_sent:
            return ReferralResult(success=True, message=message)

        won = await self.store.update_lead(
            lead.id,
            expected={"referral_sent": False},
            referral_sent=True,
            referral_partner_name=partner_name,
            referral_sent_at=utcnow(),
        )
        if won:
            if self.dispatcher is not None:
                try:
                    await self.dispatcher.send_partner_referral(customer, lead)
                except Exception as exc:
                    monitoring.capture_exception(exc, customer_id=customer.id, lead_id=lead.id)
            await self.store.append_message(lead, "assistant", message)
        return ReferralResult(success=True, message=message)

    def _already_qualified(self, lead: Lead) -> TurnResult:
        return TurnResult(
            state=TurnState.ALREADY_QUALIFIED_CLOSED,
            reply_message=ALREADY_QUALIFIED_REPLY,
            lead_id=lead.id,
            classification=lead.classification,
            quote=lead.quote,
        )

    async def _store_extracted_contact(self, lead: Lead, result: ClassificationResult) -> None:
        contact = result.contact
        await self.store.update_visitor_info(
            lead.id,
            name=contact.name if not lead.visitor_name else None,
            email=contact.email if not lead.visitor_email else None,
            phone=contact.phone if not lead.visitor_phone else None,
            address=contact.address if not lead.visitor_address else None,
        )

    async def _reply(
        self,
        lead: Lead,
        text: str,
        tier: Optional[Tier],
        provider: Optional[str],
        confidence: Optional[float],
    ) -> None:
        await self.store.append_message(
            lead,
            "assistant",
            text,
            model_tier=tier.value if tier else None,
            provider=provider,
            confidence=confidence,
        )

    async def _reload(self, lead: Lead) -> Lead:
        return await self.store.get_lead(lead.id) or lead

    def _log(
        self,
        customer_id: str,
        session_id: str,
        lead_id: Optional[int],
        state: str,
        started: float,
        **extra: Any,
    ) -> None:
        payload = {
            "customer_id": customer_id,
            "session_id": session_id,
            "lead_id": lead_id,
            "state": state,
            "duration_ms": round((time.perf_counter() - started) * 1000, 1),
        }
        payload.update(extra)
        self.logger.info("turn", extra={"turn": payload})
