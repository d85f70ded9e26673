"""
SLA Application Services
=========================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories, directory,
  notifier, sweep lock), not concrete implementations
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import AsyncContextManager, Callable, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from pydantic import ValidationError

from sla_engine.config import (
    BreachState, EscalationTrigger, HistoryAction, NotificationChannel, Priority, Role,
    TicketStatus, SYSTEM_ACTOR, settings,
)
from sla_engine.core import (
    NotificationDeliveryFailed, PolicyNotFoundError, ResourceNotFoundException,
    TicketNotFoundError, ValidationException,
)
from sla_engine.shared.infrastructure.logging import get_logger, log_latency
from sla_engine.sla.domain import (
    BusinessCalendar, ComplianceReport, EscalationMatrix, EscalationRule, HolidayCalendar,
    ReassignTarget, SLACalculator, SLAPolicy, Ticket, TicketStateMachine, compliance_report,
)
from sla_engine.sla.application.dto import TicketCreateDTO, TicketQueryDTO

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ========== Repository Interfaces (Dependency Inversion) ==========

class ITicketRepository(ABC):
    """Interface for ticket data access."""

    @abstractmethod
    async def get_by_id(self, ticket_id: str) -> Optional[Ticket]:
        """Get ticket by ID."""

    @abstractmethod
    async def create(self, ticket: Ticket) -> Ticket:
        """Persist a new ticket."""

    @abstractmethod
    async def save(self, ticket: Ticket) -> Ticket:
        """
        Persist changes to an existing ticket.

        Raises RepositoryException when the stored version has moved on.
        """

    @abstractmethod
    async def list(
        self,
        filters: dict,
        limit: int = 100,
        offset: int = 0
    ) -> List[Ticket]:
        """List tickets with equality filters, newest first."""

    @abstractmethod
    async def list_open(self) -> List[Ticket]:
        """All tickets not RESOLVED or CLOSED."""

    @abstractmethod
    async def list_created_between(self, start: datetime, end: datetime) -> List[Ticket]:
        """Tickets with created_at in [start, end]."""

    @abstractmethod
    async def commit(self) -> None:
        """Make pending changes durable."""

    @abstractmethod
    async def rollback(self) -> None:
        """Discard pending changes."""


class ISLAPolicyRepository(ABC):
    """Interface for SLA policy access."""

    @abstractmethod
    async def get(self, policy_id: str) -> Optional[SLAPolicy]:
        """Get a policy by ID, active or not."""

    @abstractmethod
    async def upsert(self, policy: SLAPolicy) -> SLAPolicy:
        """Create or replace a policy."""

    @abstractmethod
    async def list(self) -> List[SLAPolicy]:
        """List all policies."""


class IHolidayCalendarRepository(ABC):
    """Interface for holiday calendar access."""

    @abstractmethod
    async def get(self, calendar_id: str) -> Optional[HolidayCalendar]:
        """Get a holiday calendar by ID."""

    @abstractmethod
    async def upsert(self, calendar: HolidayCalendar) -> HolidayCalendar:
        """Create or replace a holiday calendar."""


class IEscalationRuleRepository(ABC):
    """Interface for escalation matrix access."""

    @abstractmethod
    async def list_active(self) -> List[EscalationRule]:
        """Active rules ordered by level."""

    @abstractmethod
    async def list_all(self) -> List[EscalationRule]:
        """All rules, inactive included."""

    @abstractmethod
    async def upsert(self, rule: EscalationRule) -> EscalationRule:
        """Create or replace a rule; a rule without rule_id gets one."""


# ========== Collaborator Interfaces ==========

class IUserDirectory(ABC):
    """User/role lookup owned by the surrounding platform."""

    @abstractmethod
    async def resolve_users_by_role(self, roles: Iterable[Role]) -> List[str]:
        """User IDs holding any of the roles, in directory order."""


class INotificationDispatcher(ABC):
    """Fire-and-forget notification sink."""

    @abstractmethod
    async def notify(self, recipients: List[str], channel: NotificationChannel, payload: dict) -> None:
        """
        Hand a notification to the delivery service.

        Raises NotificationDeliveryFailed when it cannot even be queued.
        """


class ISweepLock(ABC):
    """Mutual exclusion for escalation sweeps across workers."""

    @abstractmethod
    def hold(self) -> AsyncContextManager[bool]:
        """Async context yielding True when this worker may sweep."""


# ========== Application Services ==========

class CalendarService:
    """
    Resolves a policy and its business calendar from the store.

    Policies and holidays are read on every call so edits are picked up
    by the next computation; callers that need a cache keep their own.
    """

    def __init__(
        self,
        policy_repository: ISLAPolicyRepository,
        holiday_repository: IHolidayCalendarRepository,
        default_timezone: Optional[str] = None
    ):
        self._policy_repo = policy_repository
        self._holiday_repo = holiday_repository
        self._default_tz = default_timezone or settings.default_timezone

    async def get_policy(self, policy_id: str, require_active: bool = True) -> SLAPolicy:
        policy = await self._policy_repo.get(policy_id)
        if policy is None:
            raise PolicyNotFoundError(policy_id)
        if require_active and not policy.is_active:
            raise PolicyNotFoundError(policy_id, "policy is inactive")
        return policy

    async def calendar_for(self, policy: SLAPolicy) -> BusinessCalendar:
        holidays = None
        if policy.holiday_calendar_id:
            holidays = await self._holiday_repo.get(policy.holiday_calendar_id)
            if holidays is None:
                logger.warning(
                    "Holiday calendar not found; using business hours only",
                    extra={"policy_id": policy.policy_id, "calendar_id": policy.holiday_calendar_id}
                )
        return BusinessCalendar.from_policy(policy, holidays, self._default_tz)

    async def load(
        self,
        policy_id: str,
        require_active: bool = True
    ) -> Tuple[SLAPolicy, BusinessCalendar]:
        policy = await self.get_policy(policy_id, require_active)
        return policy, await self.calendar_for(policy)


class TicketService:
    """
    Ticket lifecycle use cases: open, assign, move through statuses,
    pause/resume the SLA clock, reopen and recompute.

    Every mutation is committed before the updated ticket is returned.
    """

    def __init__(
        self,
        ticket_repository: ITicketRepository,
        calendar_service: CalendarService,
        state_machine: Optional[TicketStateMachine] = None,
        clock: Optional[Clock] = None
    ):
        self._ticket_repo = ticket_repository
        self._calendars = calendar_service
        self._state_machine = state_machine or TicketStateMachine()
        self._clock = clock or utc_now

    async def create_ticket(self, dto: TicketCreateDTO, actor: str) -> Ticket:
        """
        Open a ticket with due dates computed from its policy.

        Raises:
            PolicyNotFoundError: policy unknown, inactive or missing the priority
            CalendarResolutionError: policy calendar has no open business time
        """
        now = self._clock()
        policy, calendar = await self._calendars.load(dto.sla_policy_id)
        response_minutes, resolution_minutes = policy.targets_for(dto.priority)
        due = SLACalculator.compute_due_dates(policy, dto.priority, now, calendar)

        ticket = Ticket(
            id=str(uuid4()),
            ticket_no=f"TKT-{now:%y%m%d}-{uuid4().hex[:6].upper()}",
            customer_id=dto.customer_id,
            store_id=dto.store_id,
            created_by=actor,
            priority=dto.priority,
            status=TicketStatus.OPEN,
            sla_policy_id=policy.policy_id,
            created_at=now,
            updated_at=now,
            first_response_due_at=due.first_response_due_at,
            sla_due_at=due.resolution_due_at,
            first_response_target_minutes=response_minutes,
            resolution_target_minutes=resolution_minutes,
            pause_on=policy.pause_eligible_statuses,
            watchers=list(dict.fromkeys(dto.watchers)),
            title=dto.title,
            description=dto.description,
        )
        ticket.record(
            now, actor, HistoryAction.CREATED,
            note=f"Ticket opened under policy {policy.policy_id}",
            to_status=TicketStatus.OPEN,
        )

        ticket = await self._ticket_repo.create(ticket)
        await self._ticket_repo.commit()

        logger.info(
            "Ticket created",
            extra={
                "ticket_id": ticket.id,
                "ticket_no": ticket.ticket_no,
                "priority": ticket.priority.value,
                "sla_due_at": ticket.sla_due_at.isoformat(),
            }
        )
        return ticket

    async def get_ticket(self, ticket_id: str) -> Ticket:
        ticket = await self._ticket_repo.get_by_id(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(ticket_id)
        return ticket

    async def list_tickets(self, query: TicketQueryDTO) -> List[Ticket]:
        return await self._ticket_repo.list(query.filters(), query.limit, query.offset)

    async def assign(self, ticket_id: str, assignee_id: str, actor: str) -> Ticket:
        ticket = await self.get_ticket(ticket_id)
        self._state_machine.assign(ticket, assignee_id, actor, self._clock())
        return await self._persist(ticket, "assign")

    async def change_status(
        self,
        ticket_id: str,
        status: TicketStatus,
        actor: str,
        note: str = ""
    ) -> Ticket:
        ticket, calendar = await self._load_with_calendar(ticket_id)
        self._state_machine.transition(ticket, status, actor, calendar, self._clock(), note=note)
        return await self._persist(ticket, "status_change")

    async def pause(
        self,
        ticket_id: str,
        actor: str,
        status: TicketStatus = TicketStatus.ON_HOLD,
        note: str = ""
    ) -> Ticket:
        ticket, calendar = await self._load_with_calendar(ticket_id)
        self._state_machine.pause(ticket, actor, calendar, self._clock(), status=status, note=note)
        return await self._persist(ticket, "pause")

    async def resume(self, ticket_id: str, actor: str, note: str = "") -> Ticket:
        ticket, calendar = await self._load_with_calendar(ticket_id)
        self._state_machine.resume(ticket, actor, calendar, self._clock(), note=note)
        return await self._persist(ticket, "resume")

    async def reopen(self, ticket_id: str, actor: str, note: str = "") -> Ticket:
        ticket, calendar = await self._load_with_calendar(ticket_id)
        self._state_machine.reopen(ticket, actor, calendar, self._clock(), note=note)
        return await self._persist(ticket, "reopen")

    async def recompute(self, ticket_id: str, actor: str) -> Ticket:
        ticket, calendar = await self._load_with_calendar(ticket_id)
        self._state_machine.recompute(ticket, actor, calendar, self._clock())
        return await self._persist(ticket, "recompute")

    async def _load_with_calendar(self, ticket_id: str) -> Tuple[Ticket, BusinessCalendar]:
        ticket = await self.get_ticket(ticket_id)
        # Existing tickets keep working against a policy deactivated after they opened
        _, calendar = await self._calendars.load(ticket.sla_policy_id, require_active=False)
        return ticket, calendar

    async def _persist(self, ticket: Ticket, operation: str) -> Ticket:
        ticket = await self._ticket_repo.save(ticket)
        await self._ticket_repo.commit()
        logger.info(
            "Ticket updated",
            extra={
                "ticket_id": ticket.id,
                "operation": operation,
                "status": ticket.status.value,
                "assignee_id": ticket.assignee_id,
            }
        )
        return ticket


_PRIORITY_BUMP = {
    Priority.P3: Priority.P2,
    Priority.P2: Priority.P1,
    Priority.P1: Priority.P1,
}


class EscalationExecutor:
    """
    Applies an escalation rule's auto-actions to a ticket.

    State changes (`execute`) and notification (`notify`) are separate steps
    so the caller can persist the ticket in between.
    """

    def __init__(
        self,
        user_directory: IUserDirectory,
        notifier: INotificationDispatcher,
        state_machine: Optional[TicketStateMachine] = None
    ):
        self._directory = user_directory
        self._notifier = notifier
        self._state_machine = state_machine or TicketStateMachine()

    async def resolve_recipients(self, rule: EscalationRule) -> List[str]:
        """Rule's explicit users followed by role members, without duplicates."""
        recipients = list(dict.fromkeys(rule.notify_users))
        if rule.notify_roles:
            for user_id in await self._directory.resolve_users_by_role(rule.notify_roles):
                if user_id not in recipients:
                    recipients.append(user_id)
        return recipients

    async def execute(
        self,
        ticket: Ticket,
        rule: EscalationRule,
        now: datetime,
        actor: str = SYSTEM_ACTOR
    ) -> List[str]:
        """
        Apply the rule to the ticket in place.

        Order: watchers, priority bump, reassignment, lock, then the
        ESCALATED history entry. Returns the notification recipients.
        """
        recipients = await self.resolve_recipients(rule)
        actions = []

        if rule.auto_actions.add_watcher:
            added = ticket.add_watchers(recipients)
            if added:
                actions.append(f"watchers +{len(added)}")

        if rule.auto_actions.bump_priority:
            bumped = _PRIORITY_BUMP[ticket.priority]
            if bumped != ticket.priority:
                actions.append(f"priority {ticket.priority.value} -> {bumped.value}")
                ticket.priority = bumped

        if rule.reassign_to is not None:
            assignee = await self._reassign_target(rule.reassign_to)
            if assignee is None:
                logger.warning(
                    "Escalation reassignment target resolved to no user",
                    extra={"ticket_id": ticket.id, "rule_id": rule.rule_id}
                )
            elif assignee != ticket.assignee_id:
                self._state_machine.assign(ticket, assignee, actor, now)
                actions.append(f"reassigned to {assignee}")

        if rule.auto_actions.lock_override and not ticket.locked:
            ticket.locked = True
            actions.append("locked")

        ticket.raise_escalation_level(rule.level)
        ticket.record(
            now, actor, HistoryAction.ESCALATED,
            note=f"Level {rule.level} {rule.trigger.value} escalation"
                 + (f": {', '.join(actions)}" if actions else ""),
            level=rule.level,
            trigger=rule.trigger,
        )

        logger.info(
            "Escalation applied",
            extra={
                "ticket_id": ticket.id,
                "rule_id": rule.rule_id,
                "level": rule.level,
                "trigger": rule.trigger.value,
                "recipients": len(recipients),
            }
        )
        return recipients

    async def notify(self, ticket: Ticket, rule: EscalationRule, recipients: List[str]) -> int:
        """
        Notify recipients once per configured channel.

        Best effort: delivery failures are logged, never raised. Returns the
        number of channels handed to the dispatcher.
        """
        if not recipients:
            logger.warning(
                "Escalation has no recipients",
                extra={"ticket_id": ticket.id, "rule_id": rule.rule_id}
            )
            return 0

        payload = {
            "ticket_id": ticket.id,
            "ticket_no": ticket.ticket_no,
            "priority": ticket.priority.value,
            "status": ticket.status.value,
            "breach_state": ticket.breach_state.value,
            "escalation_level": rule.level,
            "trigger": rule.trigger.value,
            "sla_due_at": ticket.sla_due_at.isoformat(),
        }

        sent = 0
        for channel in dict.fromkeys(rule.channels):
            try:
                await self._notifier.notify(recipients, channel, payload)
                sent += 1
            except NotificationDeliveryFailed as e:
                logger.error(
                    "Escalation notification failed",
                    extra={
                        "ticket_id": ticket.id,
                        "channel": channel.value,
                        "error": e.message,
                    }
                )
        return sent

    async def _reassign_target(self, target: ReassignTarget) -> Optional[str]:
        if target.user_id:
            return target.user_id
        users = await self._directory.resolve_users_by_role([target.role])
        return users[0] if users else None


@dataclass
class SweepResult:
    tickets_scanned: int = 0
    skipped_paused: int = 0
    warnings: int = 0
    breaches: int = 0
    escalations: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class EscalationSweeper:
    """
    Periodic scan of open tickets for warning and breach escalations.

    Each (ticket, level, trigger) fires at most once: breach_state and
    escalation_level only move forward and fired pairs are read back from
    the ticket's ESCALATED history. A failing ticket is logged and skipped.
    """

    def __init__(
        self,
        ticket_repository: ITicketRepository,
        calendar_service: CalendarService,
        rule_repository: IEscalationRuleRepository,
        executor: EscalationExecutor,
        clock: Optional[Clock] = None,
        default_warning_threshold_pct: Optional[float] = None
    ):
        self._ticket_repo = ticket_repository
        self._calendars = calendar_service
        self._rule_repo = rule_repository
        self._executor = executor
        self._clock = clock or utc_now
        self._default_threshold = (
            default_warning_threshold_pct
            if default_warning_threshold_pct is not None
            else settings.default_warning_threshold_pct
        )

    async def run(self, lock: ISweepLock) -> Optional[SweepResult]:
        """Sweep while holding the lock; None when another worker holds it."""
        async with lock.hold() as acquired:
            if not acquired:
                logger.info("Escalation sweep skipped; lock held by another worker")
                return None
            return await self.sweep()

    async def sweep(self) -> SweepResult:
        now = self._clock()
        # Rules are validated on write
        matrix = EscalationMatrix.model_construct(rules=await self._rule_repo.list_active())
        tickets = await self._ticket_repo.list_open()
        calendars: Dict[str, BusinessCalendar] = {}
        result = SweepResult()

        with log_latency(logger, "escalation_sweep", tickets=len(tickets)):
            for ticket in tickets:
                result.tickets_scanned += 1
                if ticket.is_clock_frozen:
                    result.skipped_paused += 1
                    continue
                try:
                    await self._sweep_ticket(ticket, matrix, calendars, now, result)
                except Exception:
                    result.errors += 1
                    await self._ticket_repo.rollback()
                    logger.exception(
                        "Escalation sweep failed for ticket",
                        extra={"ticket_id": ticket.id, "sla_policy_id": ticket.sla_policy_id}
                    )

        logger.info("Escalation sweep finished", extra=result.to_dict())
        return result

    async def _sweep_ticket(
        self,
        ticket: Ticket,
        matrix: EscalationMatrix,
        calendars: Dict[str, BusinessCalendar],
        now: datetime,
        result: SweepResult
    ) -> None:
        calendar = await self._calendar(ticket.sla_policy_id, calendars)
        fired: List[Tuple[EscalationRule, List[str]]] = []
        changed = False

        if now >= ticket.sla_due_at:
            if ticket.raise_breach_state(BreachState.RED):
                changed = True
                result.breaches += 1
                logger.warning(
                    "SLA breached",
                    extra={"ticket_id": ticket.id, "sla_due_at": ticket.sla_due_at.isoformat()}
                )
            rule = matrix.next_rule(
                EscalationTrigger.BREACH, ticket.escalation_level, ticket.fired_escalations
            )
            if rule is not None:
                overdue = calendar.business_minutes_between(ticket.sla_due_at, now)
                if overdue >= rule.after_breach_minutes:
                    fired.append((rule, await self._executor.execute(ticket, rule, now)))

        elif ticket.breach_state == BreachState.NONE:
            rule = matrix.next_rule(
                EscalationTrigger.WARNING_THRESHOLD, ticket.escalation_level, ticket.fired_escalations
            )
            threshold = rule.warning_threshold if rule is not None else self._default_threshold
            remaining = calendar.business_minutes_between(now, ticket.sla_due_at)
            ratio = SLACalculator.elapsed_ratio(remaining, ticket.resolution_target_minutes)
            if ratio * 100 >= threshold:
                ticket.raise_breach_state(BreachState.WARNING)
                changed = True
                result.warnings += 1
                if rule is not None:
                    fired.append((rule, await self._executor.execute(ticket, rule, now)))

        if not changed and not fired:
            return

        await self._ticket_repo.save(ticket)
        await self._ticket_repo.commit()
        result.escalations += len(fired)

        for rule, recipients in fired:
            await self._executor.notify(ticket, rule, recipients)

    async def _calendar(
        self,
        policy_id: str,
        calendars: Dict[str, BusinessCalendar]
    ) -> BusinessCalendar:
        if policy_id not in calendars:
            _, calendars[policy_id] = await self._calendars.load(policy_id, require_active=False)
        return calendars[policy_id]


class ReportingService:
    """Compliance reporting over stored tickets."""

    def __init__(self, ticket_repository: ITicketRepository):
        self._ticket_repo = ticket_repository

    async def compliance_report(self, period_from: datetime, period_to: datetime) -> ComplianceReport:
        if period_to < period_from:
            raise ValidationException(
                "Report period end is before its start",
                {"from": period_from.isoformat(), "to": period_to.isoformat()}
            )
        tickets = await self._ticket_repo.list_created_between(period_from, period_to)
        return compliance_report(tickets)

    async def red_alert_dashboard(self) -> List[Ticket]:
        """Open tickets in RED, most overdue first."""
        tickets = await self._ticket_repo.list_open()
        red = [t for t in tickets if t.breach_state == BreachState.RED]
        return sorted(red, key=lambda t: t.sla_due_at)


class PolicyAdminService:
    """Administrative CRUD for policies, holiday calendars and the escalation matrix."""

    def __init__(
        self,
        policy_repository: ISLAPolicyRepository,
        holiday_repository: IHolidayCalendarRepository,
        rule_repository: IEscalationRuleRepository
    ):
        self._policy_repo = policy_repository
        self._holiday_repo = holiday_repository
        self._rule_repo = rule_repository

    async def upsert_policy(self, policy: SLAPolicy) -> SLAPolicy:
        saved = await self._policy_repo.upsert(policy)
        logger.info(
            "SLA policy saved",
            extra={"policy_id": saved.policy_id, "is_active": saved.is_active}
        )
        return saved

    async def list_policies(self) -> List[SLAPolicy]:
        return await self._policy_repo.list()

    async def upsert_holiday_calendar(self, calendar: HolidayCalendar) -> HolidayCalendar:
        saved = await self._holiday_repo.upsert(calendar)
        logger.info(
            "Holiday calendar saved",
            extra={"calendar_id": saved.calendar_id, "dates": len(saved.dates)}
        )
        return saved

    async def get_holiday_calendar(self, calendar_id: str) -> HolidayCalendar:
        calendar = await self._holiday_repo.get(calendar_id)
        if calendar is None:
            raise ResourceNotFoundException("Holiday calendar", calendar_id)
        return calendar

    async def upsert_escalation_rule(self, rule: EscalationRule) -> EscalationRule:
        """
        Add or replace one rule. Rules written here are never retired by a seed sync.

        Raises:
            ValidationException: the matrix with this rule would be invalid
        """
        rule = rule.model_copy(update={"seeded": False})
        existing = await self._rule_repo.list_all()
        merged = [r for r in existing if not rule.rule_id or r.rule_id != rule.rule_id]
        self._validate_matrix(merged + [rule])

        saved = await self._rule_repo.upsert(rule)
        logger.info(
            "Escalation rule saved",
            extra={"rule_id": saved.rule_id, "level": saved.level, "trigger": saved.trigger.value}
        )
        return saved

    async def sync_seeded_rules(self, rules: List[EscalationRule]) -> List[EscalationRule]:
        """
        Bring the stored matrix in line with the seed file.

        Seeded rules are upserted by id. Seeded rules the file no longer lists
        are deactivated, and rules added through the API are left alone. The
        combined result is validated as one matrix before anything is written.

        Raises:
            ValidationException: the seed clashes with the stored rules
        """
        seeded = [rule.model_copy(update={"seeded": True}) for rule in rules]
        seeded_ids = {rule.rule_id for rule in seeded if rule.rule_id}

        existing = [r for r in await self._rule_repo.list_all() if r.rule_id not in seeded_ids]
        retired = [r.model_copy(update={"is_active": False}) for r in existing if r.seeded and r.is_active]
        retired_ids = {r.rule_id for r in retired}
        untouched = [r for r in existing if r.rule_id not in retired_ids]
        self._validate_matrix(untouched + retired + seeded)

        for rule in retired:
            await self._rule_repo.upsert(rule)
            logger.info(
                "Seeded escalation rule retired",
                extra={"rule_id": rule.rule_id, "level": rule.level, "trigger": rule.trigger.value}
            )
        return [await self._rule_repo.upsert(rule) for rule in seeded]

    async def get_escalation_matrix(self) -> EscalationMatrix:
        return EscalationMatrix.model_construct(rules=await self._rule_repo.list_all())

    @staticmethod
    def _validate_matrix(rules: List[EscalationRule]) -> EscalationMatrix:
        try:
            return EscalationMatrix(rules=rules)
        except ValidationError as e:
            raise ValidationException(
                "Invalid escalation matrix",
                {"errors": [err["msg"] for err in e.errors()]}
            ) from e
