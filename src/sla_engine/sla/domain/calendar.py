"""
Business Calendar
=================

Answers "is this instant inside business hours" and "advance this instant by
N business minutes" for a policy's weekly windows and holiday set.

Windows are evaluated in the policy's local timezone but all arithmetic is
done on UTC instants, so DST transitions never stretch or shrink a window.
"""

from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Iterable, Optional, Tuple, Union
from zoneinfo import ZoneInfo

from sla_engine.core import CalendarResolutionError
from sla_engine.sla.domain.value_objects import BusinessHours, HolidayCalendar, SLAPolicy

# Ten years of forward scanning before giving up on finding an open window
MAX_SCAN_DAYS = 3660


def as_utc(instant: datetime) -> datetime:
    """Normalize to an aware UTC datetime; naive values are taken as UTC."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


class BusinessCalendar:
    """Weekly business hours minus holidays, in a fixed timezone."""

    def __init__(
        self,
        business_hours: BusinessHours,
        holidays: Iterable[date] = (),
        tz: Union[str, tzinfo] = "UTC"
    ):
        if business_hours.weekly_open_minutes == 0:
            raise CalendarResolutionError("Business hours have zero open minutes in a week")
        self._hours = business_hours
        self._holidays = frozenset(holidays)
        self._tz = ZoneInfo(tz) if isinstance(tz, str) else tz

    @classmethod
    def from_policy(
        cls,
        policy: SLAPolicy,
        holidays: Optional[HolidayCalendar] = None,
        default_tz: str = "UTC"
    ) -> "BusinessCalendar":
        try:
            return cls(
                policy.business_hours,
                holidays.dates if holidays else (),
                policy.timezone or default_tz,
            )
        except CalendarResolutionError as e:
            raise CalendarResolutionError(
                f"SLA policy {policy.policy_id} has no usable business hours",
                {"policy_id": policy.policy_id}
            ) from e

    @property
    def timezone(self) -> tzinfo:
        return self._tz

    def _local_date(self, instant: datetime) -> date:
        return instant.astimezone(self._tz).date()

    def window(self, day: date) -> Optional[Tuple[datetime, datetime]]:
        """UTC [start, end) of the open window on a local date, or None when closed."""
        if day in self._holidays:
            return None
        hours = self._hours.for_weekday(day.weekday())
        if hours.is_closed:
            return None
        start = datetime.combine(day, hours.open, tzinfo=self._tz).astimezone(timezone.utc)
        end = datetime.combine(day, hours.close, tzinfo=self._tz).astimezone(timezone.utc)
        if end <= start:
            return None
        return start, end

    def is_open(self, instant: datetime) -> bool:
        instant = as_utc(instant)
        window = self.window(self._local_date(instant))
        return window is not None and window[0] <= instant < window[1]

    def next_open(self, instant: datetime) -> datetime:
        """`instant` itself when open, otherwise the start of the next window."""
        instant = as_utc(instant)
        day = self._local_date(instant)
        for offset in range(MAX_SCAN_DAYS):
            window = self.window(day + timedelta(days=offset))
            if window is None:
                continue
            start, end = window
            if instant < start:
                return start
            if instant < end:
                return instant
        raise CalendarResolutionError(
            f"No open business window within {MAX_SCAN_DAYS} days of {instant.isoformat()}"
        )

    def add_business_minutes(self, start: datetime, minutes: float) -> datetime:
        """
        Advance `start` by `minutes` of open business time.

        The result is always an open instant: landing exactly on a window's
        close rolls over to the next window's start.
        """
        if minutes < 0:
            raise ValueError("minutes must be >= 0")

        remaining = timedelta(minutes=minutes)
        current = self.next_open(start)
        while True:
            _, end = self.window(self._local_date(current))
            available = end - current
            if remaining < available:
                return current + remaining
            remaining -= available
            current = self.next_open(end)

    def business_minutes_between(self, start: datetime, end: datetime) -> float:
        """Open business minutes in [start, end); 0 when end <= start."""
        start, end = as_utc(start), as_utc(end)
        if end <= start:
            return 0.0

        total = timedelta(0)
        day = self._local_date(start)
        last = self._local_date(end)
        while day <= last:
            window = self.window(day)
            if window is not None:
                overlap = min(end, window[1]) - max(start, window[0])
                if overlap > timedelta(0):
                    total += overlap
            day += timedelta(days=1)
        return total.total_seconds() / 60
