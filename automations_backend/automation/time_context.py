"""
Tenant-local calendar arithmetic.

Rules are evaluated against the tenant's own calendar day: a birthday "today"
or a policy "30 days out" depends on which timezone the tenant configured,
not on the server clock.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger("automations.time_context")

_DATE_PREFIX = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")


def get_zone(name: Optional[str], fallback: str) -> ZoneInfo:
    """Return the IANA zone for name, or the fallback zone if it is unknown."""
    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r; falling back to %s", name, fallback)
    return ZoneInfo(fallback)


def local_date(instant: datetime, zone: ZoneInfo) -> date:
    """Project a fixed instant onto the calendar date observed in zone."""
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(zone).date()


def parse_date_prefix(value: Any) -> Optional[date]:
    """
    Parse the YYYY-MM-DD prefix of a date-like value, ignoring any time part.

    Returns None for empty, malformed or impossible dates (e.g. 2023-02-30).
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    match = _DATE_PREFIX.match(str(value or "").strip())
    if not match:
        return None
    try:
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError:
        return None


def month_day(value: Any) -> Optional[str]:
    """Return "MM-DD" for a date-like value, ignoring the year."""
    if isinstance(value, (date, datetime)):
        return value.strftime("%m-%d")

    match = _DATE_PREFIX.match(str(value or "").strip())
    if not match:
        return None
    return f"{match.group(2)}-{match.group(3)}"


def days_until(target: Any, instant: datetime, zone: ZoneInfo) -> Optional[int]:
    """Signed whole days from the tenant-local today to target, or None if unparsable."""
    target_date = parse_date_prefix(target)
    if target_date is None:
        return None
    return (target_date - local_date(instant, zone)).days


@dataclass(frozen=True)
class TimeContext:
    """The calendar view of one invocation for one tenant."""

    instant: datetime
    zone: ZoneInfo

    @classmethod
    def for_timezone(
        cls, instant: datetime, timezone_name: Optional[str], fallback: str
    ) -> "TimeContext":
        return cls(instant=instant, zone=get_zone(timezone_name, fallback))

    @property
    def today(self) -> date:
        return local_date(self.instant, self.zone)

    @property
    def run_date(self) -> date:
        return self.today

    @property
    def today_month_day(self) -> str:
        return self.today.strftime("%m-%d")

    def days_until(self, target: Any) -> Optional[int]:
        return days_until(target, self.instant, self.zone)
