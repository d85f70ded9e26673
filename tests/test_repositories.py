"""Tests for the SQLAlchemy repositories against in-memory SQLite."""

from datetime import date

import pytest
import pytest_asyncio

from sla_engine.config import BreachState, EscalationTrigger, HistoryAction, Priority, TicketStatus
from sla_engine.core import RepositoryException
from sla_engine.infrastructure.database import (
    close_database, create_tables, get_session_maker, init_database,
)
from sla_engine.sla.domain import EscalationRule, HolidayCalendar
from sla_engine.sla.infrastructure import (
    SQLAlchemyEscalationRuleRepository,
    SQLAlchemyHolidayCalendarRepository,
    SQLAlchemySLAPolicyRepository,
    SQLAlchemyTicketRepository,
)

from conftest import at


@pytest_asyncio.fixture
async def session():
    init_database("sqlite+aiosqlite:///:memory:")
    await create_tables()
    async with get_session_maker()() as session:
        yield session
    await close_database()


@pytest.fixture
def repo(session):
    return SQLAlchemyTicketRepository(session)


class TestTicketRepository:

    @pytest.mark.asyncio
    async def test_round_trip(self, repo, make_ticket):
        ticket = make_ticket(at(0, 10), watchers=["u-1"], paused_since=at(0, 11), status=TicketStatus.ON_HOLD)
        ticket.record(at(0, 11), "agent-1", HistoryAction.PAUSED,
                      from_status=TicketStatus.IN_PROGRESS, to_status=TicketStatus.ON_HOLD)
        ticket.record(at(1, 9), "SYSTEM", HistoryAction.ESCALATED, level=1, trigger=EscalationTrigger.BREACH)

        await repo.create(ticket)
        await repo.commit()
        loaded = await repo.get_by_id(ticket.id)

        assert loaded.ticket_no == ticket.ticket_no
        assert loaded.sla_due_at == ticket.sla_due_at
        assert loaded.sla_due_at.tzinfo is not None
        assert loaded.paused_since == at(0, 11)
        assert loaded.pause_on == ticket.pause_on
        assert loaded.watchers == ["u-1"]
        assert loaded.history == ticket.history
        assert loaded.fired_escalations == frozenset({(1, EscalationTrigger.BREACH)})
        assert loaded.version == 1

    @pytest.mark.asyncio
    async def test_unknown_or_malformed_id(self, repo):
        assert await repo.get_by_id("00000000-0000-0000-0000-000000000999") is None
        assert await repo.get_by_id("not-a-uuid") is None

    @pytest.mark.asyncio
    async def test_save_bumps_version(self, repo, make_ticket):
        ticket = await repo.create(make_ticket(at(0, 10)))
        await repo.commit()

        loaded = await repo.get_by_id(ticket.id)
        loaded.breach_state = BreachState.RED
        loaded.escalation_level = 1
        saved = await repo.save(loaded)
        await repo.commit()

        assert saved.version == 2
        reloaded = await repo.get_by_id(ticket.id)
        assert reloaded.breach_state == BreachState.RED
        assert reloaded.escalation_level == 1

    @pytest.mark.asyncio
    async def test_stale_write_rejected(self, repo, make_ticket):
        ticket = await repo.create(make_ticket(at(0, 10)))
        await repo.commit()

        first = await repo.get_by_id(ticket.id)
        second = await repo.get_by_id(ticket.id)
        first.priority = Priority.P1
        await repo.save(first)
        await repo.commit()

        second.priority = Priority.P2
        with pytest.raises(RepositoryException):
            await repo.save(second)
        assert (await repo.get_by_id(ticket.id)).priority == Priority.P1

    @pytest.mark.asyncio
    async def test_list_filters_and_order(self, repo, make_ticket):
        older = await repo.create(make_ticket(at(0, 10), store_id="store-1"))
        newer = await repo.create(make_ticket(at(1, 10), store_id="store-1"))
        await repo.create(make_ticket(at(2, 10), store_id="store-2", breach_state=BreachState.RED))
        await repo.commit()

        by_store = await repo.list({"store_id": "store-1"})
        assert [t.id for t in by_store] == [newer.id, older.id]

        red = await repo.list({"breach_state": BreachState.RED})
        assert len(red) == 1
        assert len(await repo.list({}, limit=2)) == 2

    @pytest.mark.asyncio
    async def test_list_open_by_due_date(self, repo, make_ticket):
        late = await repo.create(make_ticket(at(2, 10)))
        early = await repo.create(make_ticket(at(0, 10)))
        await repo.create(make_ticket(at(0, 9), status=TicketStatus.CLOSED))
        await repo.commit()

        assert [t.id for t in await repo.list_open()] == [early.id, late.id]

    @pytest.mark.asyncio
    async def test_list_created_between(self, repo, make_ticket):
        inside = await repo.create(make_ticket(at(1, 10)))
        await repo.create(make_ticket(at(8, 10)))
        await repo.commit()

        found = await repo.list_created_between(at(0, 0), at(6, 0))
        assert [t.id for t in found] == [inside.id]


class TestConfigurationRepositories:

    @pytest.mark.asyncio
    async def test_policy_upsert_replaces(self, session, policy):
        repo = SQLAlchemySLAPolicyRepository(session)
        await repo.upsert(policy)
        await repo.upsert(policy.model_copy(update={"is_active": False}))
        await session.commit()

        loaded = await repo.get(policy.policy_id)
        assert loaded == policy.model_copy(update={"is_active": False})
        assert len(await repo.list()) == 1
        assert await repo.get("missing") is None

    @pytest.mark.asyncio
    async def test_holiday_calendar(self, session):
        repo = SQLAlchemyHolidayCalendarRepository(session)
        await repo.upsert(HolidayCalendar(
            calendar_id="national", name="National",
            dates=[date(2026, 10, 20), date(2026, 1, 26)],
        ))
        await session.commit()

        loaded = await repo.get("national")
        assert loaded.dates == [date(2026, 1, 26), date(2026, 10, 20)]

    @pytest.mark.asyncio
    async def test_rules_get_ids_and_inactive_are_hidden(self, session):
        repo = SQLAlchemyEscalationRuleRepository(session)
        first = await repo.upsert(EscalationRule(level=1, trigger=EscalationTrigger.BREACH))
        await repo.upsert(EscalationRule(
            rule_id="warn-1", level=1, trigger=EscalationTrigger.WARNING_THRESHOLD,
            warning_threshold=80, is_active=False,
        ))
        await session.commit()

        assert first.rule_id
        assert [r.rule_id for r in await repo.list_active()] == [first.rule_id]
        assert len(await repo.list_all()) == 2
