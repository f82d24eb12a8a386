"""Zero-argument background entry points shared by APScheduler and Celery."""

import logging
from typing import Optional

from leadcapture.db import utcnow
from leadcapture.digest import DigestRunReport
from leadcapture.ghostbuster import SweepReport
from leadcapture.services import Services, build_services
from leadcapture.settings import LEAD_RETENTION_DAYS

logger = logging.getLogger("leadcapture.jobs")


async def run_sweep(services: Optional[Services] = None) -> SweepReport:
    services = services or build_services()
    return await services.followups.run_sweep()


async def run_weekly_digests(services: Optional[Services] = None) -> DigestRunReport:
    services = services or build_services()
    return await services.digests.run()


async def tombstone_expired_leads(services: Optional[Services] = None, retention_days: int = LEAD_RETENTION_DAYS) -> int:
    services = services or build_services()
    count = await services.store.tombstone_expired(utcnow(), retention_days)
    logger.info("Retention pass tombstoned %s leads", count)
    return count
