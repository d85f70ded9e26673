"""
SLA Infrastructure Repositories
=================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
entities from the database. Datetimes are normalized to UTC on the way in
and on the way out, since not every backend keeps the offset.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from sla_engine.config import BreachState, Priority, TicketStatus, OPEN_STATUSES
from sla_engine.core import RepositoryException
from sla_engine.sla.application.services import (
    IEscalationRuleRepository, IHolidayCalendarRepository, ISLAPolicyRepository,
    ITicketRepository,
)
from sla_engine.sla.domain import (
    EscalationRule, HistoryEntry, HolidayCalendar, SLAPolicy, Ticket, as_utc,
)
from sla_engine.sla.infrastructure.models import (
    EscalationRuleModel, HolidayCalendarModel, SLAPolicyModel, TicketModel,
)

_TICKET_FILTERS = ("status", "breach_state", "priority", "assignee_id", "store_id", "customer_id")


def _utc_or_none(value: Optional[datetime]) -> Optional[datetime]:
    return as_utc(value) if value is not None else None


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class SQLAlchemyTicketRepository(ITicketRepository):
    """
    SQLAlchemy implementation of ticket repository.

    Handles persistence of Ticket aggregates using async SQLAlchemy.
    Writes are guarded by the model's version column.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, ticket_id: str) -> Optional[Ticket]:
        model = await self._get_model(ticket_id)
        return self._to_domain(model) if model else None

    async def create(self, ticket: Ticket) -> Ticket:
        model = TicketModel(id=UUID(ticket.id), ticket_no=ticket.ticket_no)
        self._apply(model, ticket)
        self._session.add(model)
        await self._session.flush()

        ticket.version = model.version
        return ticket

    async def save(self, ticket: Ticket) -> Ticket:
        model = await self._get_model(ticket.id)
        if model is None:
            raise RepositoryException(f"Ticket {ticket.id} not found")
        if model.version != ticket.version:
            raise RepositoryException(
                f"Ticket {ticket.id} was modified concurrently",
                {"ticket_id": ticket.id, "expected_version": ticket.version, "stored_version": model.version}
            )

        self._apply(model, ticket)
        try:
            await self._session.flush()
        except StaleDataError as e:
            raise RepositoryException(
                f"Ticket {ticket.id} was modified concurrently", {"ticket_id": ticket.id}
            ) from e

        ticket.version = model.version
        return ticket

    async def list(
        self,
        filters: dict,
        limit: int = 100,
        offset: int = 0
    ) -> List[Ticket]:
        """List tickets with filters."""
        stmt = select(TicketModel)

        # Apply filters
        conditions = [
            getattr(TicketModel, name) == _column_value(filters[name])
            for name in _TICKET_FILTERS
            if filters.get(name) is not None
        ]
        if conditions:
            stmt = stmt.where(and_(*conditions))

        # Order by created_at descending
        stmt = stmt.order_by(TicketModel.created_at.desc())
        stmt = stmt.limit(limit).offset(offset)

        result = await self._session.execute(stmt)
        return [self._to_domain(m) for m in result.scalars().all()]

    async def list_open(self) -> List[Ticket]:
        stmt = (
            select(TicketModel)
            .where(TicketModel.status.in_([s.value for s in OPEN_STATUSES]))
            .order_by(TicketModel.sla_due_at.asc())
        )
        result = await self._session.execute(stmt)
        return [self._to_domain(m) for m in result.scalars().all()]

    async def list_created_between(self, start: datetime, end: datetime) -> List[Ticket]:
        stmt = (
            select(TicketModel)
            .where(and_(TicketModel.created_at >= as_utc(start), TicketModel.created_at <= as_utc(end)))
            .order_by(TicketModel.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return [self._to_domain(m) for m in result.scalars().all()]

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()

    async def _get_model(self, ticket_id: str) -> Optional[TicketModel]:
        try:
            ticket_uuid = UUID(ticket_id)
        except ValueError:
            return None

        stmt = (
            select(TicketModel)
            .where(TicketModel.id == ticket_uuid)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _apply(model: TicketModel, ticket: Ticket) -> None:
        """Copy mutable ticket state onto the model."""
        model.customer_id = ticket.customer_id
        model.store_id = ticket.store_id
        model.assignee_id = ticket.assignee_id
        model.created_by = ticket.created_by
        model.watchers = list(ticket.watchers)
        model.priority = ticket.priority.value
        model.status = ticket.status.value
        model.sla_policy_id = ticket.sla_policy_id
        model.title = ticket.title
        model.description = ticket.description
        model.created_at = as_utc(ticket.created_at)
        model.updated_at = as_utc(ticket.updated_at)
        model.first_response_due_at = as_utc(ticket.first_response_due_at)
        model.sla_due_at = as_utc(ticket.sla_due_at)
        model.first_response_target_minutes = ticket.first_response_target_minutes
        model.resolution_target_minutes = ticket.resolution_target_minutes
        model.sla_clock_started_at = as_utc(ticket.sla_clock_started_at)
        model.paused_since = _utc_or_none(ticket.paused_since)
        model.paused_minutes_total = ticket.paused_minutes_total
        model.pause_on = [s.value for s in ticket.pause_on]
        model.first_response_at = _utc_or_none(ticket.first_response_at)
        model.breach_state = ticket.breach_state.value
        model.escalation_level = ticket.escalation_level
        model.locked = ticket.locked
        model.history = [entry.to_dict() for entry in ticket.history]

    @staticmethod
    def _to_domain(model: TicketModel) -> Ticket:
        return Ticket(
            id=str(model.id),
            ticket_no=model.ticket_no,
            customer_id=model.customer_id,
            store_id=model.store_id,
            created_by=model.created_by,
            priority=Priority(model.priority),
            status=TicketStatus(model.status),
            sla_policy_id=model.sla_policy_id,
            created_at=as_utc(model.created_at),
            updated_at=as_utc(model.updated_at),
            first_response_due_at=as_utc(model.first_response_due_at),
            sla_due_at=as_utc(model.sla_due_at),
            first_response_target_minutes=model.first_response_target_minutes,
            resolution_target_minutes=model.resolution_target_minutes,
            sla_clock_started_at=as_utc(model.sla_clock_started_at),
            paused_since=_utc_or_none(model.paused_since),
            paused_minutes_total=model.paused_minutes_total,
            pause_on=[TicketStatus(s) for s in model.pause_on],
            first_response_at=_utc_or_none(model.first_response_at),
            breach_state=BreachState(model.breach_state),
            escalation_level=model.escalation_level,
            locked=model.locked,
            assignee_id=model.assignee_id,
            watchers=list(model.watchers),
            title=model.title,
            description=model.description,
            history=[HistoryEntry.from_dict(e) for e in model.history],
            version=model.version,
        )


class SQLAlchemySLAPolicyRepository(ISLAPolicyRepository):
    """SLA policies stored as validated JSON documents."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, policy_id: str) -> Optional[SLAPolicy]:
        model = await self._session.get(SLAPolicyModel, policy_id, populate_existing=True)
        return SLAPolicy.model_validate(model.document) if model else None

    async def upsert(self, policy: SLAPolicy) -> SLAPolicy:
        model = await self._session.get(SLAPolicyModel, policy.policy_id)
        if model is None:
            model = SLAPolicyModel(policy_id=policy.policy_id)
            self._session.add(model)

        model.name = policy.name
        model.is_active = policy.is_active
        model.document = policy.model_dump(mode="json")
        model.updated_at = datetime.now(timezone.utc)
        await self._session.flush()
        return policy

    async def list(self) -> List[SLAPolicy]:
        result = await self._session.execute(select(SLAPolicyModel).order_by(SLAPolicyModel.policy_id))
        return [SLAPolicy.model_validate(m.document) for m in result.scalars().all()]


class SQLAlchemyHolidayCalendarRepository(IHolidayCalendarRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, calendar_id: str) -> Optional[HolidayCalendar]:
        model = await self._session.get(HolidayCalendarModel, calendar_id, populate_existing=True)
        if model is None:
            return None
        return HolidayCalendar(
            calendar_id=model.calendar_id,
            name=model.name,
            dates=[date.fromisoformat(d) for d in model.dates],
        )

    async def upsert(self, calendar: HolidayCalendar) -> HolidayCalendar:
        model = await self._session.get(HolidayCalendarModel, calendar.calendar_id)
        if model is None:
            model = HolidayCalendarModel(calendar_id=calendar.calendar_id)
            self._session.add(model)

        model.name = calendar.name
        model.dates = [d.isoformat() for d in calendar.dates]
        await self._session.flush()
        return calendar


class SQLAlchemyEscalationRuleRepository(IEscalationRuleRepository):
    """Escalation matrix rows; level and trigger are columns for ordering."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def list_active(self) -> List[EscalationRule]:
        stmt = (
            select(EscalationRuleModel)
            .where(EscalationRuleModel.is_active.is_(True))
            .order_by(EscalationRuleModel.level, EscalationRuleModel.trigger)
        )
        result = await self._session.execute(stmt)
        return [EscalationRule.model_validate(m.document) for m in result.scalars().all()]

    async def list_all(self) -> List[EscalationRule]:
        stmt = select(EscalationRuleModel).order_by(EscalationRuleModel.level, EscalationRuleModel.trigger)
        result = await self._session.execute(stmt)
        return [EscalationRule.model_validate(m.document) for m in result.scalars().all()]

    async def upsert(self, rule: EscalationRule) -> EscalationRule:
        if not rule.rule_id:
            rule = rule.model_copy(update={"rule_id": str(uuid4())})

        model = await self._session.get(EscalationRuleModel, rule.rule_id)
        if model is None:
            model = EscalationRuleModel(rule_id=rule.rule_id)
            self._session.add(model)

        model.level = rule.level
        model.trigger = rule.trigger.value
        model.is_active = rule.is_active
        model.document = rule.model_dump(mode="json")
        await self._session.flush()
        return rule
