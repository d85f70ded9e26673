"""Tests for the ticket state machine: transitions, pause/resume accounting, reopen, recompute."""

from datetime import date

import pytest

from sla_engine.config import (
    BreachState, EscalationTrigger, HistoryAction, TicketStatus, SYSTEM_ACTOR,
)
from sla_engine.core import InvalidTransitionError, TicketLockedError
from sla_engine.sla.domain import BusinessCalendar, TicketStateMachine

from conftest import at


@pytest.fixture
def machine():
    return TicketStateMachine()


class TestTransitions:

    @pytest.mark.parametrize("from_status,to_status", [
        (TicketStatus.OPEN, TicketStatus.IN_PROGRESS),
        (TicketStatus.OPEN, TicketStatus.RESOLVED),
        (TicketStatus.IN_PROGRESS, TicketStatus.WAITING_CUSTOMER),
        (TicketStatus.IN_PROGRESS, TicketStatus.ON_HOLD),
        (TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED),
        (TicketStatus.ON_HOLD, TicketStatus.IN_PROGRESS),
        (TicketStatus.RESOLVED, TicketStatus.CLOSED),
        (TicketStatus.OPEN, TicketStatus.CLOSED),
    ])
    def test_allowed_edges(self, machine, from_status, to_status):
        assert machine.can_transition(from_status, to_status)

    @pytest.mark.parametrize("from_status,to_status", [
        (TicketStatus.OPEN, TicketStatus.ON_HOLD),
        (TicketStatus.WAITING_CUSTOMER, TicketStatus.RESOLVED),
        (TicketStatus.RESOLVED, TicketStatus.IN_PROGRESS),
        (TicketStatus.CLOSED, TicketStatus.OPEN),
        (TicketStatus.CLOSED, TicketStatus.CLOSED),
    ])
    def test_rejected_edges(self, machine, from_status, to_status):
        assert not machine.can_transition(from_status, to_status)

    def test_invalid_transition_raises(self, machine, make_ticket, calendar):
        ticket = make_ticket(at(0, 10), status=TicketStatus.OPEN)
        with pytest.raises(InvalidTransitionError):
            machine.transition(ticket, TicketStatus.WAITING_CUSTOMER, "agent-1", calendar, at(0, 11))
        assert ticket.status == TicketStatus.OPEN
        assert ticket.history == []

    def test_transition_records_history(self, machine, make_ticket, calendar):
        ticket = make_ticket(at(0, 10), status=TicketStatus.OPEN)
        machine.transition(ticket, TicketStatus.IN_PROGRESS, "agent-1", calendar, at(0, 11), note="on it")

        entry = ticket.history[-1]
        assert entry.action == HistoryAction.STATUS_CHANGED
        assert (entry.from_status, entry.to_status) == (TicketStatus.OPEN, TicketStatus.IN_PROGRESS)
        assert entry.note == "on it"
        assert ticket.updated_at == at(0, 11)

    def test_first_response_recorded_once(self, machine, make_ticket, calendar):
        ticket = make_ticket(at(0, 10), status=TicketStatus.OPEN)
        machine.transition(ticket, TicketStatus.IN_PROGRESS, "agent-1", calendar, at(0, 11))
        machine.pause(ticket, "agent-1", calendar, at(0, 12))
        machine.resume(ticket, "agent-1", calendar, at(0, 13))
        assert ticket.first_response_at == at(0, 11)

    def test_force_close_from_open(self, machine, make_ticket, calendar):
        ticket = make_ticket(at(0, 10), status=TicketStatus.OPEN)
        machine.transition(ticket, TicketStatus.CLOSED, "admin", calendar, at(0, 11))
        assert ticket.status == TicketStatus.CLOSED
        assert not ticket.is_open


class TestAssign:

    def test_assign_keeps_due_dates(self, machine, make_ticket):
        ticket = make_ticket(at(0, 10))
        due = (ticket.first_response_due_at, ticket.sla_due_at)
        machine.assign(ticket, "agent-7", "lead-1", at(0, 10, 5))

        assert ticket.assignee_id == "agent-7"
        assert (ticket.first_response_due_at, ticket.sla_due_at) == due
        assert ticket.history[-1].action == HistoryAction.ASSIGNED
        assert ticket.first_assigned_at == at(0, 10, 5)

    def test_locked_ticket_rejects_manual_assign(self, machine, make_ticket):
        ticket = make_ticket(at(0, 10), locked=True)
        with pytest.raises(TicketLockedError):
            machine.assign(ticket, "agent-7", "lead-1", at(0, 11))

    def test_system_can_assign_locked_ticket(self, machine, make_ticket):
        ticket = make_ticket(at(0, 10), locked=True)
        machine.assign(ticket, "u-area-1", SYSTEM_ACTOR, at(0, 11))
        assert ticket.assignee_id == "u-area-1"


class TestPauseResume:

    def test_pause_preserves_remaining_budget(self, machine, make_ticket, calendar):
        """Three business hours on hold push both due dates by exactly three business hours."""
        ticket = make_ticket(at(0, 10))
        assert ticket.sla_due_at == at(1, 17)
        remaining_before = calendar.business_minutes_between(at(0, 11), ticket.sla_due_at)

        machine.pause(ticket, "agent-1", calendar, at(0, 11))
        assert ticket.paused_since == at(0, 11)
        assert ticket.is_clock_frozen

        machine.resume(ticket, "agent-1", calendar, at(0, 14))

        assert ticket.paused_since is None
        assert ticket.paused_minutes_total == 180
        assert ticket.first_response_due_at == at(0, 15)
        assert ticket.sla_due_at == at(2, 11)
        remaining_after = calendar.business_minutes_between(at(0, 14), ticket.sla_due_at)
        assert remaining_after == remaining_before

    def test_weekend_pause_leaves_due_dates(self, machine, make_ticket, calendar):
        """On hold from Friday close to Monday open: zero business minutes elapsed."""
        ticket = make_ticket(at(4, 10))
        due = (ticket.first_response_due_at, ticket.sla_due_at)

        machine.pause(ticket, "agent-1", calendar, at(4, 18))
        machine.resume(ticket, "agent-1", calendar, at(7, 9))

        assert (ticket.first_response_due_at, ticket.sla_due_at) == due
        assert ticket.paused_minutes_total == 0

    def test_pause_and_resume_history(self, machine, make_ticket, calendar):
        ticket = make_ticket(at(0, 10))
        machine.pause(ticket, "agent-1", calendar, at(0, 11), status=TicketStatus.WAITING_CUSTOMER)
        machine.resume(ticket, "agent-1", calendar, at(0, 12))

        actions = [e.action for e in ticket.history]
        assert actions == [HistoryAction.PAUSED, HistoryAction.RESUMED]
        assert ticket.history[0].to_status == TicketStatus.WAITING_CUSTOMER
        assert ticket.status == TicketStatus.IN_PROGRESS

    def test_pause_from_open_is_invalid(self, machine, make_ticket, calendar):
        ticket = make_ticket(at(0, 10), status=TicketStatus.OPEN)
        with pytest.raises(InvalidTransitionError):
            machine.pause(ticket, "agent-1", calendar, at(0, 11))

    def test_pause_rejects_non_pause_status(self, machine, make_ticket, calendar):
        ticket = make_ticket(at(0, 10))
        with pytest.raises(InvalidTransitionError):
            machine.pause(ticket, "agent-1", calendar, at(0, 11), status=TicketStatus.RESOLVED)

    def test_resume_when_not_paused(self, machine, make_ticket, calendar):
        ticket = make_ticket(at(0, 10))
        with pytest.raises(InvalidTransitionError):
            machine.resume(ticket, "agent-1", calendar, at(0, 11))

    def test_status_outside_pause_on_does_not_freeze(self, machine, make_ticket, calendar):
        ticket = make_ticket(at(0, 10), pause_on=[TicketStatus.WAITING_CUSTOMER])
        machine.pause(ticket, "agent-1", calendar, at(0, 11), status=TicketStatus.ON_HOLD)
        assert ticket.paused_since is None
        assert not ticket.is_clock_frozen

    def test_force_close_settles_pause(self, machine, make_ticket, calendar):
        ticket = make_ticket(at(0, 10))
        machine.pause(ticket, "agent-1", calendar, at(0, 11))
        machine.transition(ticket, TicketStatus.CLOSED, "admin", calendar, at(0, 12))
        assert ticket.paused_since is None
        assert ticket.paused_minutes_total == 60


class TestReopen:

    def test_reopen_resets_escalation_state(self, machine, make_ticket, calendar):
        ticket = make_ticket(
            at(0, 10),
            status=TicketStatus.RESOLVED,
            breach_state=BreachState.RED,
            escalation_level=2,
            locked=True,
            paused_minutes_total=30.0,
        )
        ticket.record(at(1, 9), SYSTEM_ACTOR, HistoryAction.ESCALATED, level=1, trigger=EscalationTrigger.BREACH)

        machine.reopen(ticket, "agent-1", calendar, at(3, 10))

        assert ticket.status == TicketStatus.IN_PROGRESS
        assert ticket.breach_state == BreachState.NONE
        assert ticket.escalation_level == 0
        assert not ticket.locked
        assert ticket.paused_minutes_total == 0
        assert ticket.sla_clock_started_at == at(3, 10)
        assert ticket.sla_due_at == at(4, 17)
        assert ticket.fired_escalations == frozenset()
        assert ticket.history[-1].action == HistoryAction.REOPENED

    def test_reopen_requires_resolved(self, machine, make_ticket, calendar):
        ticket = make_ticket(at(0, 10))
        with pytest.raises(InvalidTransitionError):
            machine.reopen(ticket, "agent-1", calendar, at(0, 11))


class TestRecompute:

    def test_recompute_picks_up_new_holiday(self, machine, make_ticket, business_hours):
        ticket = make_ticket(at(0, 10))
        assert ticket.sla_due_at == at(1, 17)

        with_holiday = BusinessCalendar(business_hours, holidays=[date(2026, 10, 20)])
        machine.recompute(ticket, "admin", with_holiday, at(0, 12))

        assert ticket.sla_due_at == at(2, 17)
        assert ticket.history[-1].action == HistoryAction.SLA_RECOMPUTED

    def test_recompute_keeps_paused_credit(self, machine, make_ticket, calendar):
        ticket = make_ticket(at(0, 10))
        machine.pause(ticket, "agent-1", calendar, at(0, 11))
        machine.resume(ticket, "agent-1", calendar, at(0, 14))
        shifted = ticket.sla_due_at

        machine.recompute(ticket, "admin", calendar, at(0, 15))
        assert ticket.sla_due_at == shifted

    def test_recompute_does_not_reset_breach(self, machine, make_ticket, calendar):
        ticket = make_ticket(at(0, 10), breach_state=BreachState.RED, escalation_level=1)
        machine.recompute(ticket, "admin", calendar, at(2, 10))
        assert ticket.breach_state == BreachState.RED
        assert ticket.escalation_level == 1
