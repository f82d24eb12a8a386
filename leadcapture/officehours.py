import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import pytz

from leadcapture.settings import DEFAULT_TIMEZONE

logger = logging.getLogger("leadcapture.officehours")


def _aware_utc(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def local_time(tz_name: Optional[str], now: Optional[datetime] = None) -> datetime:
    """Convert ``now`` (naive values are UTC) into the tenant's zone."""
    zone = pytz.timezone(tz_name or DEFAULT_TIMEZONE)
    return _aware_utc(now).astimezone(zone)


def is_office_hours(tz_name: Optional[str], window: Tuple[int, int], now: Optional[datetime] = None) -> bool:
    """True when the local hour falls in ``[start, end)``. Unknown zones count as open."""
    start, end = window
    try:
        hour = local_time(tz_name, now).hour
    except pytz.UnknownTimeZoneError:
        logger.warning("Unknown timezone %r; treating as office hours", tz_name)
        return True
    return start <= hour < end


def start_of_week(tz_name: Optional[str], now: Optional[datetime] = None) -> datetime:
    """Monday 00:00 of the tenant's current week, in UTC."""
    zone = pytz.timezone(tz_name or DEFAULT_TIMEZONE)
    local = _aware_utc(now).astimezone(zone)
    monday = datetime(local.year, local.month, local.day) - timedelta(days=local.weekday())
    return zone.localize(monday).astimezone(timezone.utc)
