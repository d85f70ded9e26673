"""
SLA Value Objects
==================

Policy, calendar and escalation configuration for the SLA domain.

Value objects are defined by their attributes rather than an identity.
They are validated on construction and passed around freely.
"""

from dataclasses import dataclass
from datetime import date, datetime, time
from typing import TYPE_CHECKING, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

from sla_engine.config import (
    EscalationTrigger, NotificationChannel, Priority, Role, TicketStatus,
    PAUSABLE_STATUSES,
)
from sla_engine.core import PolicyNotFoundError

if TYPE_CHECKING:
    from sla_engine.sla.domain.calendar import BusinessCalendar


WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class DayWindow(BaseModel):
    """Opening window of a single weekday, half-open: [open, close)."""
    open: time = Field(default=time(0, 0), description="Local opening time")
    close: time = Field(default=time(0, 0), description="Local closing time")
    closed: bool = Field(default=False, description="Whole day closed")

    @model_validator(mode="after")
    def validate_window(self) -> "DayWindow":
        if not self.closed and self.close < self.open:
            raise ValueError("close must not be before open (overnight windows are not supported)")
        return self

    @property
    def is_closed(self) -> bool:
        # open == close is a zero-length day
        return self.closed or self.close <= self.open

    @property
    def open_minutes(self) -> int:
        if self.is_closed:
            return 0
        return (self.close.hour * 60 + self.close.minute) - (self.open.hour * 60 + self.open.minute)


def _closed_day() -> DayWindow:
    return DayWindow(closed=True)


class BusinessHours(BaseModel):
    """Weekly business-hour table; days left out are closed."""
    monday: DayWindow = Field(default_factory=_closed_day)
    tuesday: DayWindow = Field(default_factory=_closed_day)
    wednesday: DayWindow = Field(default_factory=_closed_day)
    thursday: DayWindow = Field(default_factory=_closed_day)
    friday: DayWindow = Field(default_factory=_closed_day)
    saturday: DayWindow = Field(default_factory=_closed_day)
    sunday: DayWindow = Field(default_factory=_closed_day)

    def for_weekday(self, weekday: int) -> DayWindow:
        """Window for a `date.weekday()` index (0 = Monday)."""
        return getattr(self, WEEKDAYS[weekday])

    @property
    def weekly_open_minutes(self) -> int:
        return sum(self.for_weekday(i).open_minutes for i in range(7))

    @classmethod
    def uniform(cls, open_at: time, close_at: time, days: Iterable[int] = range(5)) -> "BusinessHours":
        """Same window on the given weekdays, every other day closed."""
        window = DayWindow(open=open_at, close=close_at)
        return cls(**{WEEKDAYS[d]: window for d in days})


class SLATargets(BaseModel):
    """Per-priority first-response and resolution targets in business minutes."""
    first_response_minutes: Dict[Priority, int] = Field(default_factory=dict)
    resolution_minutes: Dict[Priority, int] = Field(default_factory=dict)

    @field_validator("first_response_minutes", "resolution_minutes")
    @classmethod
    def validate_non_negative(cls, v: Dict[Priority, int]) -> Dict[Priority, int]:
        for priority, minutes in v.items():
            if minutes < 0:
                raise ValueError(f"target for {priority.value} must be >= 0")
        return v

    @model_validator(mode="after")
    def validate_resolution_after_response(self) -> "SLATargets":
        for priority, response in self.first_response_minutes.items():
            resolution = self.resolution_minutes.get(priority)
            if resolution is not None and resolution < response:
                raise ValueError(
                    f"resolution target for {priority.value} must be >= first-response target"
                )
        return self


class SLAPolicy(BaseModel):
    """
    SLA policy referenced by tickets.

    Targets are snapshotted onto a ticket at creation; business hours and
    holidays are read from the store whenever a calendar is needed.
    """
    policy_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    targets: SLATargets
    business_hours: BusinessHours
    timezone: Optional[str] = Field(default=None, description="IANA timezone of the business hours")
    holiday_calendar_id: Optional[str] = None
    pause_on: Dict[TicketStatus, bool] = Field(
        default_factory=lambda: {status: True for status in PAUSABLE_STATUSES}
    )
    is_active: bool = True

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone {v!r}")
        return v

    @field_validator("pause_on")
    @classmethod
    def validate_pause_on(cls, v: Dict[TicketStatus, bool]) -> Dict[TicketStatus, bool]:
        for status in v:
            if status not in PAUSABLE_STATUSES:
                raise ValueError(f"{status.value} cannot pause the SLA clock")
        return v

    @property
    def pause_eligible_statuses(self) -> List[TicketStatus]:
        return [status for status, enabled in self.pause_on.items() if enabled]

    def targets_for(self, priority: Priority) -> Tuple[int, int]:
        """
        Return (first_response_minutes, resolution_minutes) for a priority.

        Raises:
            PolicyNotFoundError: policy inactive or missing a target
        """
        if not self.is_active:
            raise PolicyNotFoundError(self.policy_id, "policy is inactive")
        response = self.targets.first_response_minutes.get(priority)
        resolution = self.targets.resolution_minutes.get(priority)
        if response is None or resolution is None:
            raise PolicyNotFoundError(self.policy_id, f"no target for priority {priority.value}")
        return response, resolution


class HolidayCalendar(BaseModel):
    """Calendar dates excluded from business hours."""
    calendar_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    dates: List[date] = Field(default_factory=list)

    @field_validator("dates")
    @classmethod
    def normalize_dates(cls, v: List[date]) -> List[date]:
        return sorted(set(v))


class ReassignTarget(BaseModel):
    """Who an escalation hands the ticket to: a user, or the first user of a role."""
    user_id: Optional[str] = None
    role: Optional[Role] = None

    @model_validator(mode="after")
    def validate_target(self) -> "ReassignTarget":
        if not self.user_id and not self.role:
            raise ValueError("reassign_to needs a user_id or a role")
        return self


class AutoActions(BaseModel):
    add_watcher: bool = False
    bump_priority: bool = False
    lock_override: bool = False


class EscalationRule(BaseModel):
    """One row of the escalation matrix."""
    rule_id: Optional[str] = None
    level: int = Field(..., ge=1, description="Escalation level (1-based)")
    trigger: EscalationTrigger
    warning_threshold: Optional[float] = Field(
        default=None, ge=0, le=100,
        description="Percent of time-to-due elapsed (WARNING_THRESHOLD only)"
    )
    after_breach_minutes: int = Field(
        default=0, ge=0,
        description="Business minutes past due before this BREACH level fires"
    )
    notify_roles: List[Role] = Field(default_factory=list)
    notify_users: List[str] = Field(default_factory=list)
    channels: List[NotificationChannel] = Field(
        default_factory=lambda: [NotificationChannel.APP_INBOX], min_length=1
    )
    reassign_to: Optional[ReassignTarget] = None
    auto_actions: AutoActions = Field(default_factory=AutoActions)
    is_active: bool = True
    seeded: bool = Field(default=False, description="Owned by the seed file; retired when the file drops it")

    @model_validator(mode="after")
    def validate_trigger_fields(self) -> "EscalationRule":
        if self.trigger == EscalationTrigger.WARNING_THRESHOLD and self.warning_threshold is None:
            raise ValueError("WARNING_THRESHOLD rules need a warning_threshold")
        return self


class EscalationMatrix(BaseModel):
    """
    Ordered set of escalation rules.

    At most one active rule per (level, trigger), and the active levels
    run 1..n without gaps.
    """
    rules: List[EscalationRule] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_levels(self) -> "EscalationMatrix":
        seen: Set[Tuple[int, EscalationTrigger]] = set()
        for rule in self.active_rules:
            key = (rule.level, rule.trigger)
            if key in seen:
                raise ValueError(
                    f"duplicate active {rule.trigger.value} rule at level {rule.level}"
                )
            seen.add(key)
        levels = sorted({level for level, _ in seen})
        if levels and levels != list(range(1, len(levels) + 1)):
            raise ValueError(f"escalation levels must run 1..n without gaps, got {levels}")
        return self

    @property
    def active_rules(self) -> List[EscalationRule]:
        return sorted(
            (rule for rule in self.rules if rule.is_active),
            key=lambda rule: (rule.level, rule.trigger.value)
        )

    def next_rule(
        self,
        trigger: EscalationTrigger,
        escalation_level: int,
        fired: FrozenSet[Tuple[int, EscalationTrigger]] = frozenset()
    ) -> Optional[EscalationRule]:
        """Lowest-level active rule of `trigger` not yet reached or fired."""
        for rule in self.active_rules:
            if rule.trigger != trigger or rule.level < escalation_level:
                continue
            if (rule.level, trigger) in fired:
                continue
            return rule
        return None


@dataclass(frozen=True)
class DueDates:
    first_response_due_at: datetime
    resolution_due_at: datetime


class SLACalculator:
    """
    Pure functions for SLA calculations.

    Stateless utility class - all due-date arithmetic goes through the
    business calendar so closed hours and holidays never count.
    """

    @staticmethod
    def compute_due_dates(
        policy: SLAPolicy,
        priority: Priority,
        created_at: datetime,
        calendar: "BusinessCalendar"
    ) -> DueDates:
        """
        Compute first-response and resolution due instants for a new ticket.

        Raises:
            PolicyNotFoundError: policy inactive or missing the priority's targets
            CalendarResolutionError: calendar has no open business time
        """
        response_minutes, resolution_minutes = policy.targets_for(priority)
        return SLACalculator.due_dates_from_targets(
            created_at, response_minutes, resolution_minutes, calendar
        )

    @staticmethod
    def due_dates_from_targets(
        start: datetime,
        first_response_minutes: float,
        resolution_minutes: float,
        calendar: "BusinessCalendar"
    ) -> DueDates:
        return DueDates(
            first_response_due_at=calendar.add_business_minutes(start, first_response_minutes),
            resolution_due_at=calendar.add_business_minutes(start, resolution_minutes),
        )

    @staticmethod
    def elapsed_ratio(remaining_minutes: float, total_minutes: float) -> float:
        """Fraction of the target window already used (1.0 once due)."""
        if total_minutes <= 0:
            return 1.0
        return 1 - max(0.0, remaining_minutes) / total_minutes
