import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from leadcapture import monitoring
from leadcapture.db import as_utc, utcnow
from leadcapture.notifications import NotificationDispatcher
from leadcapture.officehours import is_office_hours, start_of_week
from leadcapture.settings import DigestSettings
from leadcapture.store import LeadStore

logger = logging.getLogger("leadcapture.digest")


@dataclass
class DigestRunReport:
    eligible: int = 0
    sent: int = 0
    skipped_office_hours: int = 0
    already_sent: int = 0
    failed: int = 0


class DigestWorker:
    """Sends each tenant's Monday digest once per local week, inside the tenant's office hours."""

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        store: LeadStore,
        settings: Optional[DigestSettings] = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.store = store
        self.settings = settings or DigestSettings()

    async def run(self, now: Optional[datetime] = None) -> DigestRunReport:
        now = as_utc(now) if now else utcnow()
        report = DigestRunReport()
        customers = await self.store.digest_customers()
        report.eligible = len(customers)

        for customer in customers:
            if not is_office_hours(customer.timezone, self.settings.office_hours, now):
                report.skipped_office_hours += 1
                continue
            week_start = start_of_week(customer.timezone, now)
            if customer.last_digest_sent_at and customer.last_digest_sent_at >= week_start:
                report.already_sent += 1
                continue
            try:
                await self.dispatcher.send_weekly_digest(customer.id, now=now)
            except Exception as exc:
                report.failed += 1
                logger.error("Weekly digest failed for customer %s", customer.id)
                monitoring.capture_exception(exc, customer_id=customer.id)
                continue
            report.sent += 1

        logger.info("weekly_digest_run", extra={"digest": asdict(report)})
        return report
