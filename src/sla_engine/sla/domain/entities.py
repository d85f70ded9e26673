"""
SLA Domain Entities
====================

Pure Python domain entities for SLA tracking and escalation.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns. Derived values
(overdue, paused, fired escalations) are computed from stored fields on
demand rather than cached.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, FrozenSet, Iterable, List, Optional, Tuple

from sla_engine.config import (
    BreachState, EscalationTrigger, HistoryAction, Priority, TicketStatus,
    BREACH_STATE_ORDER, CLOSED_STATUSES, OPEN_STATUSES, PAUSABLE_STATUSES,
)


@dataclass(frozen=True)
class HistoryEntry:
    """Immutable audit record appended to a ticket's history."""

    timestamp: datetime
    actor: str
    action: HistoryAction
    from_status: Optional[TicketStatus] = None
    to_status: Optional[TicketStatus] = None
    note: str = ""
    level: Optional[int] = None
    trigger: Optional[EscalationTrigger] = None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor,
            "action": self.action.value,
            "from_status": self.from_status.value if self.from_status else None,
            "to_status": self.to_status.value if self.to_status else None,
            "note": self.note,
            "level": self.level,
            "trigger": self.trigger.value if self.trigger else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HistoryEntry":
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            actor=data["actor"],
            action=HistoryAction(data["action"]),
            from_status=TicketStatus(data["from_status"]) if data.get("from_status") else None,
            to_status=TicketStatus(data["to_status"]) if data.get("to_status") else None,
            note=data.get("note") or "",
            level=data.get("level"),
            trigger=EscalationTrigger(data["trigger"]) if data.get("trigger") else None,
        )


@dataclass
class Ticket:
    """
    Ticket aggregate tracked by the SLA engine.

    Owns its append-only history. `breach_state` and `escalation_level`
    only move forward while the ticket is open; `reopen` is the one place
    that resets them.
    """

    # Identity
    id: str
    ticket_no: str
    customer_id: str
    store_id: str
    created_by: str

    # Lifecycle
    priority: Priority
    status: TicketStatus
    sla_policy_id: str

    # Timestamps
    created_at: datetime
    updated_at: datetime

    # SLA clock
    first_response_due_at: datetime
    sla_due_at: datetime
    first_response_target_minutes: int
    resolution_target_minutes: int
    sla_clock_started_at: Optional[datetime] = None
    paused_since: Optional[datetime] = None
    paused_minutes_total: float = 0.0
    pause_on: List[TicketStatus] = field(default_factory=lambda: list(PAUSABLE_STATUSES))
    first_response_at: Optional[datetime] = None

    # Escalation
    breach_state: BreachState = BreachState.NONE
    escalation_level: int = 0
    locked: bool = False

    # People
    assignee_id: Optional[str] = None
    watchers: List[str] = field(default_factory=list)

    title: str = ""
    description: str = ""
    history: List[HistoryEntry] = field(default_factory=list)
    version: int = 0

    def __post_init__(self):
        if self.updated_at < self.created_at:
            raise ValueError("updated_at cannot be before created_at")
        if self.sla_clock_started_at is None:
            self.sla_clock_started_at = self.created_at

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def is_resolved(self) -> bool:
        return self.status in CLOSED_STATUSES

    @property
    def is_paused(self) -> bool:
        return self.paused_since is not None

    @property
    def is_clock_frozen(self) -> bool:
        """Paused in a status the policy lets pause the clock."""
        return self.is_paused and self.status in self.pause_on

    def is_overdue(self, now: datetime) -> bool:
        return self.is_open and now >= self.sla_due_at

    @property
    def fired_escalations(self) -> FrozenSet[Tuple[int, EscalationTrigger]]:
        """(level, trigger) pairs already fired since creation or last reopen."""
        fired = set()
        for entry in self.history:
            if entry.action == HistoryAction.REOPENED:
                fired.clear()
            elif entry.action == HistoryAction.ESCALATED and entry.level is not None:
                fired.add((entry.level, entry.trigger))
        return frozenset(fired)

    @property
    def first_assigned_at(self) -> Optional[datetime]:
        for entry in self.history:
            if entry.action == HistoryAction.ASSIGNED:
                return entry.timestamp
        return None

    @property
    def last_status_change_at(self) -> Optional[datetime]:
        for entry in reversed(self.history):
            if entry.to_status is not None and entry.from_status != entry.to_status:
                return entry.timestamp
        return None

    def record(
        self,
        at: datetime,
        actor: str,
        action: HistoryAction,
        note: str = "",
        from_status: Optional[TicketStatus] = None,
        to_status: Optional[TicketStatus] = None,
        **extra: Any
    ) -> HistoryEntry:
        """Append an audit entry and bump updated_at."""
        entry = HistoryEntry(
            timestamp=at,
            actor=actor,
            action=action,
            from_status=from_status,
            to_status=to_status,
            note=note,
            **extra
        )
        self.history.append(entry)
        self.updated_at = max(self.updated_at, at)
        return entry

    def raise_breach_state(self, state: BreachState) -> bool:
        """Move breach_state forward; returns False if it would not advance."""
        if BREACH_STATE_ORDER[state] <= BREACH_STATE_ORDER[self.breach_state]:
            return False
        self.breach_state = state
        return True

    def raise_escalation_level(self, level: int) -> None:
        self.escalation_level = max(self.escalation_level, level)

    def add_watchers(self, users: Iterable[str]) -> List[str]:
        """Union users into watchers, keeping order; returns the ones added."""
        added = []
        for user in users:
            if user and user not in self.watchers:
                self.watchers.append(user)
                added.append(user)
        return added
