"""
Ticket State Machine
====================

Owns status transitions, assignment and SLA clock pause/resume.

Lifecycle:
    OPEN -> IN_PROGRESS -> {WAITING_CUSTOMER, ON_HOLD} <-> IN_PROGRESS -> RESOLVED -> CLOSED
    OPEN -> RESOLVED
    any open status -> CLOSED (administrative force, logged)

Pausing records `paused_since`. Leaving a pause-eligible status shifts both
due dates forward by the business minutes spent paused, so the remaining
SLA budget is the same after the pause as before it.
"""

from datetime import datetime
from typing import Dict, FrozenSet

from sla_engine.config import (
    BreachState, HistoryAction, TicketStatus, SYSTEM_ACTOR, PAUSABLE_STATUSES,
)
from sla_engine.core import InvalidTransitionError, TicketLockedError
from sla_engine.shared.infrastructure.logging import get_logger
from sla_engine.sla.domain.calendar import BusinessCalendar
from sla_engine.sla.domain.entities import Ticket
from sla_engine.sla.domain.value_objects import SLACalculator

logger = get_logger(__name__)


ALLOWED_TRANSITIONS: Dict[TicketStatus, FrozenSet[TicketStatus]] = {
    TicketStatus.OPEN: frozenset({TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED}),
    TicketStatus.IN_PROGRESS: frozenset({
        TicketStatus.WAITING_CUSTOMER, TicketStatus.ON_HOLD, TicketStatus.RESOLVED,
    }),
    TicketStatus.WAITING_CUSTOMER: frozenset({TicketStatus.IN_PROGRESS}),
    TicketStatus.ON_HOLD: frozenset({TicketStatus.IN_PROGRESS}),
    TicketStatus.RESOLVED: frozenset({TicketStatus.CLOSED}),
    TicketStatus.CLOSED: frozenset(),
}


class TicketStateMachine:
    """Applies lifecycle operations to a Ticket and records them in its history."""

    @staticmethod
    def can_transition(from_status: TicketStatus, to_status: TicketStatus) -> bool:
        if to_status in ALLOWED_TRANSITIONS[from_status]:
            return True
        # Administrative close from anywhere except CLOSED itself
        return to_status == TicketStatus.CLOSED and from_status != TicketStatus.CLOSED

    def assign(self, ticket: Ticket, assignee_id: str, actor: str, now: datetime) -> Ticket:
        """Set the assignee. Due dates are untouched."""
        if ticket.locked and actor != SYSTEM_ACTOR:
            raise TicketLockedError(ticket.id)

        previous = ticket.assignee_id
        ticket.assignee_id = assignee_id
        ticket.record(
            now, actor, HistoryAction.ASSIGNED,
            note=f"Assigned to {assignee_id}" + (f" (was {previous})" if previous else ""),
        )
        return ticket

    def transition(
        self,
        ticket: Ticket,
        new_status: TicketStatus,
        actor: str,
        calendar: BusinessCalendar,
        now: datetime,
        note: str = "",
        action: HistoryAction = HistoryAction.STATUS_CHANGED
    ) -> Ticket:
        """
        Move the ticket to `new_status`.

        Raises:
            InvalidTransitionError: edge is not in the lifecycle graph
        """
        old_status = ticket.status
        if not self.can_transition(old_status, new_status):
            raise InvalidTransitionError(ticket.id, old_status.value, new_status.value)

        if new_status == TicketStatus.CLOSED and old_status != TicketStatus.RESOLVED:
            logger.warning(
                "Ticket force-closed",
                extra={"ticket_id": ticket.id, "from_status": old_status.value, "actor": actor}
            )

        if new_status in ticket.pause_on:
            if ticket.paused_since is None:
                ticket.paused_since = now
        elif ticket.paused_since is not None:
            resumed_minutes = self._settle_pause(ticket, calendar, now)
            note = note or f"SLA clock resumed after {resumed_minutes:.0f} business minutes"

        if new_status == TicketStatus.IN_PROGRESS and ticket.first_response_at is None:
            ticket.first_response_at = now

        ticket.status = new_status
        ticket.record(
            now, actor, action,
            note=note or f"Status changed from {old_status.value} to {new_status.value}",
            from_status=old_status,
            to_status=new_status,
        )
        return ticket

    def pause(
        self,
        ticket: Ticket,
        actor: str,
        calendar: BusinessCalendar,
        now: datetime,
        status: TicketStatus = TicketStatus.ON_HOLD,
        note: str = ""
    ) -> Ticket:
        if status not in PAUSABLE_STATUSES:
            raise InvalidTransitionError(ticket.id, ticket.status.value, status.value)
        return self.transition(
            ticket, status, actor, calendar, now,
            note=note or "Ticket paused", action=HistoryAction.PAUSED
        )

    def resume(
        self,
        ticket: Ticket,
        actor: str,
        calendar: BusinessCalendar,
        now: datetime,
        note: str = ""
    ) -> Ticket:
        if ticket.status not in PAUSABLE_STATUSES:
            raise InvalidTransitionError(ticket.id, ticket.status.value, TicketStatus.IN_PROGRESS.value)
        return self.transition(
            ticket, TicketStatus.IN_PROGRESS, actor, calendar, now,
            note=note, action=HistoryAction.RESUMED
        )

    def reopen(
        self,
        ticket: Ticket,
        actor: str,
        calendar: BusinessCalendar,
        now: datetime,
        note: str = ""
    ) -> Ticket:
        """
        Reopen a resolved ticket with a fresh SLA clock.

        Breach state, escalation level and the escalation lock are reset;
        due dates restart from `now` with the snapshotted targets.
        """
        if ticket.status != TicketStatus.RESOLVED:
            raise InvalidTransitionError(ticket.id, ticket.status.value, TicketStatus.IN_PROGRESS.value)

        due = SLACalculator.due_dates_from_targets(
            now,
            ticket.first_response_target_minutes,
            ticket.resolution_target_minutes,
            calendar,
        )
        ticket.first_response_due_at = due.first_response_due_at
        ticket.sla_due_at = due.resolution_due_at
        ticket.sla_clock_started_at = now
        ticket.paused_since = None
        ticket.paused_minutes_total = 0.0
        ticket.breach_state = BreachState.NONE
        ticket.escalation_level = 0
        ticket.locked = False
        ticket.status = TicketStatus.IN_PROGRESS
        ticket.record(
            now, actor, HistoryAction.REOPENED,
            note=note or "Ticket reopened",
            from_status=TicketStatus.RESOLVED,
            to_status=TicketStatus.IN_PROGRESS,
        )
        return ticket

    def recompute(
        self,
        ticket: Ticket,
        actor: str,
        calendar: BusinessCalendar,
        now: datetime
    ) -> Ticket:
        """
        Recompute due dates against the current calendar.

        Picks up holidays added since the clock started; paused time already
        credited to the ticket is kept.
        """
        start = ticket.sla_clock_started_at
        credit = ticket.paused_minutes_total
        due = SLACalculator.due_dates_from_targets(
            start,
            ticket.first_response_target_minutes + credit,
            ticket.resolution_target_minutes + credit,
            calendar,
        )
        previous = ticket.sla_due_at
        ticket.first_response_due_at = due.first_response_due_at
        ticket.sla_due_at = due.resolution_due_at
        ticket.record(
            now, actor, HistoryAction.SLA_RECOMPUTED,
            note=f"Resolution due moved from {previous.isoformat()} to {ticket.sla_due_at.isoformat()}",
        )
        return ticket

    @staticmethod
    def _settle_pause(ticket: Ticket, calendar: BusinessCalendar, now: datetime) -> float:
        paused_minutes = calendar.business_minutes_between(ticket.paused_since, now)
        if paused_minutes > 0:
            ticket.first_response_due_at = calendar.add_business_minutes(
                ticket.first_response_due_at, paused_minutes
            )
            ticket.sla_due_at = calendar.add_business_minutes(ticket.sla_due_at, paused_minutes)
            ticket.paused_minutes_total += paused_minutes
        ticket.paused_since = None
        return paused_minutes
