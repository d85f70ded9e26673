"""Shared fixtures: in-memory repositories, fake collaborators and a fixed clock."""

import copy
from datetime import datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Optional

import pytest

from sla_engine.config import (
    NotificationChannel, Priority, Role, TicketStatus, OPEN_STATUSES,
)
from sla_engine.core import NotificationDeliveryFailed, RepositoryException
from sla_engine.sla.application.services import (
    CalendarService,
    EscalationExecutor,
    EscalationSweeper,
    IEscalationRuleRepository,
    IHolidayCalendarRepository,
    INotificationDispatcher,
    ISLAPolicyRepository,
    ITicketRepository,
    IUserDirectory,
    ReportingService,
    TicketService,
)
from sla_engine.sla.domain import (
    BusinessCalendar,
    BusinessHours,
    EscalationRule,
    HolidayCalendar,
    SLACalculator,
    SLAPolicy,
    SLATargets,
    Ticket,
)

UTC = timezone.utc

# Week of Monday 2026-10-19
MONDAY = datetime(2026, 10, 19, tzinfo=UTC)


def at(day_offset: int, hour: int, minute: int = 0) -> datetime:
    """UTC instant `day_offset` days after MONDAY at hour:minute."""
    return MONDAY + timedelta(days=day_offset, hours=hour, minutes=minute)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class InMemoryTicketRepository(ITicketRepository):
    """Stores copies so callers only see what was saved."""

    def __init__(self):
        self.tickets: Dict[str, Ticket] = {}
        self.saves = 0
        self.commits = 0
        self.rollbacks = 0

    async def get_by_id(self, ticket_id: str) -> Optional[Ticket]:
        ticket = self.tickets.get(ticket_id)
        return copy.deepcopy(ticket) if ticket else None

    async def create(self, ticket: Ticket) -> Ticket:
        ticket.version = 1
        self.tickets[ticket.id] = copy.deepcopy(ticket)
        return ticket

    async def save(self, ticket: Ticket) -> Ticket:
        stored = self.tickets.get(ticket.id)
        if stored is None:
            raise RepositoryException(f"Ticket {ticket.id} not found")
        if stored.version != ticket.version:
            raise RepositoryException(f"Ticket {ticket.id} was modified concurrently")
        ticket.version += 1
        self.tickets[ticket.id] = copy.deepcopy(ticket)
        self.saves += 1
        return ticket

    async def list(self, filters: dict, limit: int = 100, offset: int = 0) -> List[Ticket]:
        matches = [
            t for t in self.tickets.values()
            if all(getattr(t, name) == value for name, value in filters.items())
        ]
        matches.sort(key=lambda t: t.created_at, reverse=True)
        return [copy.deepcopy(t) for t in matches[offset:offset + limit]]

    async def list_open(self) -> List[Ticket]:
        tickets = [t for t in self.tickets.values() if t.status in OPEN_STATUSES]
        return [copy.deepcopy(t) for t in sorted(tickets, key=lambda t: t.sla_due_at)]

    async def list_created_between(self, start: datetime, end: datetime) -> List[Ticket]:
        return [copy.deepcopy(t) for t in self.tickets.values() if start <= t.created_at <= end]

    async def commit(self) -> None:
        self.commits += 1

    async def rollback(self) -> None:
        self.rollbacks += 1


class InMemoryPolicyRepository(ISLAPolicyRepository):
    def __init__(self, policies: Iterable[SLAPolicy] = ()):
        self.policies = {p.policy_id: p for p in policies}
        self.reads = 0

    async def get(self, policy_id: str) -> Optional[SLAPolicy]:
        self.reads += 1
        return self.policies.get(policy_id)

    async def upsert(self, policy: SLAPolicy) -> SLAPolicy:
        self.policies[policy.policy_id] = policy
        return policy

    async def list(self) -> List[SLAPolicy]:
        return list(self.policies.values())


class InMemoryHolidayRepository(IHolidayCalendarRepository):
    def __init__(self, calendars: Iterable[HolidayCalendar] = ()):
        self.calendars = {c.calendar_id: c for c in calendars}

    async def get(self, calendar_id: str) -> Optional[HolidayCalendar]:
        return self.calendars.get(calendar_id)

    async def upsert(self, calendar: HolidayCalendar) -> HolidayCalendar:
        self.calendars[calendar.calendar_id] = calendar
        return calendar


class InMemoryRuleRepository(IEscalationRuleRepository):
    def __init__(self, rules: Iterable[EscalationRule] = ()):
        self.rules: List[EscalationRule] = []
        for rule in rules:
            self._store(rule)

    def _store(self, rule: EscalationRule) -> EscalationRule:
        if not rule.rule_id:
            rule = rule.model_copy(update={"rule_id": f"rule-{len(self.rules) + 1}"})
        self.rules = [r for r in self.rules if r.rule_id != rule.rule_id] + [rule]
        return rule

    async def list_active(self) -> List[EscalationRule]:
        return sorted((r for r in self.rules if r.is_active), key=lambda r: r.level)

    async def list_all(self) -> List[EscalationRule]:
        return sorted(self.rules, key=lambda r: r.level)

    async def upsert(self, rule: EscalationRule) -> EscalationRule:
        return self._store(rule)


class FakeUserDirectory(IUserDirectory):
    def __init__(self, members: Optional[Dict[Role, List[str]]] = None):
        self.members = members if members is not None else {
            Role.STORE_MANAGER: ["u-store-mgr"],
            Role.AREA_MANAGER: ["u-area-1", "u-area-2"],
            Role.OPS_HEAD: ["u-ops-head"],
        }

    async def resolve_users_by_role(self, roles: Iterable[Role]) -> List[str]:
        users: List[str] = []
        for role in roles:
            for user in self.members.get(role, []):
                if user not in users:
                    users.append(user)
        return users


class RecordingNotifier(INotificationDispatcher):
    def __init__(self):
        self.sent: List[tuple] = []

    async def notify(self, recipients: List[str], channel: NotificationChannel, payload: dict) -> None:
        self.sent.append((list(recipients), channel, payload))


class FailingNotifier(INotificationDispatcher):
    def __init__(self):
        self.attempts = 0

    async def notify(self, recipients: List[str], channel: NotificationChannel, payload: dict) -> None:
        self.attempts += 1
        raise NotificationDeliveryFailed("webhook unreachable", {"channel": channel.value})


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def business_hours() -> BusinessHours:
    """Mon-Fri 09:00-18:00."""
    return BusinessHours.uniform(time(9, 0), time(18, 0))


@pytest.fixture
def policy(business_hours) -> SLAPolicy:
    return SLAPolicy(
        policy_id="retail-standard",
        name="Retail standard",
        targets=SLATargets(
            first_response_minutes={Priority.P1: 30, Priority.P2: 60, Priority.P3: 120},
            resolution_minutes={Priority.P1: 240, Priority.P2: 480, Priority.P3: 960},
        ),
        business_hours=business_hours,
        timezone="UTC",
    )


@pytest.fixture
def calendar(business_hours) -> BusinessCalendar:
    return BusinessCalendar(business_hours, tz="UTC")


@pytest.fixture
def make_ticket(policy, calendar):
    """Factory for tickets with due dates computed from the fixture policy."""
    counter = {"n": 0}

    def _make(
        created_at: datetime,
        priority: Priority = Priority.P3,
        status: TicketStatus = TicketStatus.IN_PROGRESS,
        policy_id: Optional[str] = None,
        **overrides
    ) -> Ticket:
        counter["n"] += 1
        response, resolution = policy.targets_for(priority)
        due = SLACalculator.compute_due_dates(policy, priority, created_at, calendar)
        fields = dict(
            id=f"00000000-0000-0000-0000-{counter['n']:012d}",
            ticket_no=f"TKT-261019-{counter['n']:06d}",
            customer_id="cust-1",
            store_id="store-1",
            created_by="agent-1",
            priority=priority,
            status=status,
            sla_policy_id=policy_id or policy.policy_id,
            created_at=created_at,
            updated_at=created_at,
            first_response_due_at=due.first_response_due_at,
            sla_due_at=due.resolution_due_at,
            first_response_target_minutes=response,
            resolution_target_minutes=resolution,
        )
        fields.update(overrides)
        return Ticket(**fields)

    return _make


@pytest.fixture
def ticket_repo() -> InMemoryTicketRepository:
    return InMemoryTicketRepository()


@pytest.fixture
def policy_repo(policy) -> InMemoryPolicyRepository:
    return InMemoryPolicyRepository([policy])


@pytest.fixture
def holiday_repo() -> InMemoryHolidayRepository:
    return InMemoryHolidayRepository()


@pytest.fixture
def rule_repo() -> InMemoryRuleRepository:
    return InMemoryRuleRepository()


@pytest.fixture
def directory() -> FakeUserDirectory:
    return FakeUserDirectory()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(at(0, 10))


@pytest.fixture
def calendar_service(policy_repo, holiday_repo) -> CalendarService:
    return CalendarService(policy_repo, holiday_repo, default_timezone="UTC")


@pytest.fixture
def ticket_service(ticket_repo, calendar_service, clock) -> TicketService:
    return TicketService(ticket_repo, calendar_service, clock=clock)


@pytest.fixture
def executor(directory, notifier) -> EscalationExecutor:
    return EscalationExecutor(directory, notifier)


@pytest.fixture
def sweeper(ticket_repo, calendar_service, rule_repo, executor, clock) -> EscalationSweeper:
    return EscalationSweeper(
        ticket_repo, calendar_service, rule_repo, executor,
        clock=clock, default_warning_threshold_pct=75,
    )


@pytest.fixture
def reporting_service(ticket_repo) -> ReportingService:
    return ReportingService(ticket_repo)
