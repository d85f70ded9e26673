"""
SLA Compliance Reporting
========================

Aggregates compliance, MTTA and MTTR over a set of tickets.
"""

from dataclasses import asdict, dataclass
from typing import Iterable, List

from sla_engine.config import BreachState
from sla_engine.sla.domain.entities import Ticket


@dataclass(frozen=True)
class ComplianceReport:
    """Compliance metrics; MTTA and MTTR are wall-clock minutes."""
    total: int
    resolved: int
    breached: int
    warned: int
    compliance_pct: float
    mtta: float
    mttr: float

    def to_dict(self) -> dict:
        return asdict(self)


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def compliance_report(tickets: Iterable[Ticket]) -> ComplianceReport:
    """
    Compute the compliance report for a ticket set.

    compliance_pct = (total - breached) / total * 100, 0 for an empty set.
    MTTA: creation to first ASSIGNED entry, over tickets that were assigned.
    MTTR: creation to last status change, over resolved/closed tickets.
    """
    tickets = list(tickets)
    total = len(tickets)
    breached = sum(1 for t in tickets if t.breach_state == BreachState.RED)
    warned = sum(1 for t in tickets if t.breach_state == BreachState.WARNING)
    resolved = [t for t in tickets if t.is_resolved]

    acknowledge_minutes = [
        (t.first_assigned_at - t.created_at).total_seconds() / 60
        for t in tickets
        if t.first_assigned_at is not None
    ]
    resolve_minutes = [
        (t.last_status_change_at - t.created_at).total_seconds() / 60
        for t in resolved
        if t.last_status_change_at is not None
    ]

    return ComplianceReport(
        total=total,
        resolved=len(resolved),
        breached=breached,
        warned=warned,
        compliance_pct=((total - breached) / total * 100) if total else 0.0,
        mtta=_mean(acknowledge_minutes),
        mttr=_mean(resolve_minutes),
    )
