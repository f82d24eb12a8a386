"""Persistence calls used by the conversation engine and background workers.

Every mutation of a ``Lead`` goes through :meth:`LeadStore.update_lead`, a
single ``UPDATE ... WHERE`` whose guard columns act as a compare-and-set.
Callers look at the returned flag to learn whether they won the race.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from leadcapture.db import (
    Customer,
    Followup,
    Lead,
    Message,
    Notification,
    async_session_factory,
    get_session,
    utcnow,
)
from leadcapture.errors import PersistenceError
from leadcapture.security import LeadAccess, check_lead_access

logger = logging.getLogger("leadcapture.store")


class LeadStore:
    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._factory = session_factory or async_session_factory

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with get_session(self._factory) as session:
                yield session
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Lead store unavailable: {exc}") from exc

    # customers

    async def create_customer(self, customer: Customer) -> Customer:
        async with self.session() as session:
            session.add(customer)
            await session.commit()
            await session.refresh(customer)
        return customer

    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        async with self.session() as session:
            return await session.get(Customer, customer_id)

    async def get_customer_by_api_key(self, api_key: str) -> Optional[Customer]:
        async with self.session() as session:
            return (
                await session.exec(
                    select(Customer).where(Customer.api_key == api_key, Customer.is_active == True)  # noqa: E712
                )
            ).first()

    async def digest_customers(self) -> Sequence[Customer]:
        async with self.session() as session:
            return (
                await session.exec(
                    select(Customer).where(
                        Customer.is_active == True,  # noqa: E712
                        Customer.weekly_digest_enabled == True,  # noqa: E712
                        Customer.notification_email.is_not(None),
                    )
                )
            ).all()

    async def mark_digest_sent(self, customer_id: str, sent_at: datetime) -> None:
        async with self.session() as session:
            await session.execute(
                update(Customer)
                .where(Customer.id == customer_id)
                .values(last_digest_sent_at=sent_at, updated_at=utcnow())
            )
            await session.commit()

    # leads

    async def get_or_create_lead(self, customer_id: str, session_id: str) -> Lead:
        async with self.session() as session:
            lead = await self._active_lead(session, customer_id, session_id)
            if lead:
                return lead
            lead = Lead(customer_id=customer_id, session_id=session_id)
            session.add(lead)
            try:
                await session.commit()
            except IntegrityError:
                # another turn for the same session inserted first
                await session.rollback()
                lead = await self._active_lead(session, customer_id, session_id)
                if lead is None:
                    raise
                return lead
            await session.refresh(lead)
            logger.info("Created lead %s for customer %s", lead.id, customer_id)
            return lead

    @staticmethod
    async def _active_lead(session: AsyncSession, customer_id: str, session_id: str) -> Optional[Lead]:
        return (
            await session.exec(
                select(Lead).where(
                    Lead.customer_id == customer_id,
                    Lead.session_id == session_id,
                    Lead.deleted_at.is_(None),
                )
            )
        ).first()

    async def get_lead(self, lead_id: int) -> Optional[Lead]:
        async with self.session() as session:
            return await session.get(Lead, lead_id)

    async def get_lead_for_customer(self, lead_id: int, customer_id: str) -> LeadAccess:
        lead = await self.get_lead(lead_id)
        if lead is not None and lead.deleted_at is not None:
            lead = None
        return check_lead_access(lead, customer_id, lead_id=lead_id)

    async def update_lead(
        self,
        lead_id: int,
        *,
        expected: Optional[Dict[str, Any]] = None,
        **values: Any,
    ) -> bool:
        """Apply ``values`` to the lead only if every ``expected`` column still matches.

        Returns True when exactly one row changed.
        """
        guards = [Lead.id == lead_id, Lead.deleted_at.is_(None)]
        for column, value in (expected or {}).items():
            attr = getattr(Lead, column)
            guards.append(attr.is_(None) if value is None else attr == value)
        values.setdefault("updated_at", utcnow())
        async with self.session() as session:
            result = await session.execute(update(Lead).where(*guards).values(**values))
            await session.commit()
        return result.rowcount == 1

    async def update_visitor_info(
        self,
        lead_id: int,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        address: Optional[str] = None,
    ) -> bool:
        values = {
            key: value.strip()
            for key, value in (
                ("visitor_name", name),
                ("visitor_email", email),
                ("visitor_phone", phone),
                ("visitor_address", address),
            )
            if value and value.strip()
        }
        if not values:
            return False
        return await self.update_lead(lead_id, **values)

    # messages

    async def append_message(
        self,
        lead: Lead,
        sender: str,
        content: str,
        *,
        model_tier: Optional[str] = None,
        provider: Optional[str] = None,
        confidence: Optional[float] = None,
        counted: bool = True,
    ) -> Message:
        """Insert one conversation turn and, when ``counted``, bump the lead's message_count."""
        message = Message(
            lead_id=lead.id,
            customer_id=lead.customer_id,
            sender=sender,
            content=content,
            model_tier=model_tier,
            provider=provider,
            confidence=confidence,
        )
        async with self.session() as session:
            session.add(message)
            if counted:
                await session.execute(
                    update(Lead)
                    .where(Lead.id == lead.id)
                    .values(message_count=Lead.message_count + 1, updated_at=utcnow())
                )
            await session.commit()
            await session.refresh(message)
        return message

    async def history(self, lead_id: int) -> List[Message]:
        async with self.session() as session:
            rows = (
                await session.exec(
                    select(Message)
                    .where(Message.lead_id == lead_id)
                    .order_by(Message.created_at, Message.id)
                )
            ).all()
        return list(rows)

    async def last_visitor_message(self, lead_id: int) -> Optional[Message]:
        async with self.session() as session:
            return (
                await session.exec(
                    select(Message)
                    .where(Message.lead_id == lead_id, Message.sender == "visitor")
                    .order_by(Message.created_at.desc(), Message.id.desc())
                    .limit(1)
                )
            ).first()

    async def visitor_text(self, lead_id: int) -> str:
        messages = await self.history(lead_id)
        return "\n".join(message.content for message in messages if message.sender == "visitor")

    # follow-ups

    async def stale_leads(
        self,
        now: datetime,
        *,
        min_stale_minutes: int,
        max_stale_minutes: int,
        limit: int,
    ) -> List[Tuple[Lead, Customer]]:
        newest = now - timedelta(minutes=min_stale_minutes)
        oldest = now - timedelta(minutes=max_stale_minutes)
        async with self.session() as session:
            rows = (
                await session.exec(
                    select(Lead, Customer)
                    .join(Customer, Customer.id == Lead.customer_id)
                    .where(
                        Lead.is_complete == False,  # noqa: E712
                        Lead.follow_up_sent == False,  # noqa: E712
                        Lead.stopped == False,  # noqa: E712
                        Lead.deleted_at.is_(None),
                        Lead.updated_at >= oldest,
                        Lead.updated_at <= newest,
                        Customer.is_active == True,  # noqa: E712
                    )
                    .order_by(Lead.updated_at)
                    .limit(limit)
                )
            ).all()
        return [(lead, customer) for lead, customer in rows]

    async def record_followup(
        self,
        lead: Lead,
        content: str,
        *,
        scheduled_at: datetime,
        strategy: Optional[str] = None,
        status: str = "sent",
        trigger_type: str = "inactivity",
    ) -> Followup:
        followup = Followup(
            lead_id=lead.id,
            customer_id=lead.customer_id,
            scheduled_at=scheduled_at,
            sent_at=utcnow() if status == "sent" else None,
            status=status,
            content=content,
            trigger_type=trigger_type,
            strategy=strategy,
        )
        async with self.session() as session:
            session.add(followup)
            await session.commit()
            await session.refresh(followup)
        return followup

    async def followups_for(self, lead_id: int) -> List[Followup]:
        async with self.session() as session:
            rows = (await session.exec(select(Followup).where(Followup.lead_id == lead_id))).all()
        return list(rows)

    # notifications

    async def log_notification(
        self,
        *,
        customer_id: str,
        notification_type: str,
        channel: str,
        content: str,
        status: str,
        lead_id: Optional[int] = None,
        recipient: Optional[str] = None,
        subject: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Notification:
        entry = Notification(
            customer_id=customer_id,
            lead_id=lead_id,
            notification_type=notification_type,
            channel=channel,
            recipient=recipient,
            subject=subject,
            content=content,
            status=status,
            error_message=error_message[:1024] if error_message else None,
        )
        async with self.session() as session:
            session.add(entry)
            await session.commit()
            await session.refresh(entry)
        return entry

    async def has_sent_notification(self, lead_id: int, notification_type: str) -> bool:
        async with self.session() as session:
            count = await session.scalar(
                select(func.count())
                .select_from(Notification)
                .where(
                    Notification.lead_id == lead_id,
                    Notification.notification_type == notification_type,
                    Notification.status == "sent",
                )
            )
        return bool(count)

    async def notifications_for(self, customer_id: str) -> List[Notification]:
        async with self.session() as session:
            rows = (
                await session.exec(
                    select(Notification)
                    .where(Notification.customer_id == customer_id)
                    .order_by(Notification.created_at, Notification.id)
                )
            ).all()
        return list(rows)

    # retention

    async def tombstone_expired(self, now: datetime, retention_days: int) -> int:
        cutoff = now - timedelta(days=retention_days)
        async with self.session() as session:
            result = await session.execute(
                update(Lead)
                .where(Lead.deleted_at.is_(None), Lead.updated_at < cutoff)
                .values(deleted_at=now)
            )
            await session.commit()
        if result.rowcount:
            logger.info("Tombstoned %s leads older than %s days", result.rowcount, retention_days)
        return result.rowcount or 0
