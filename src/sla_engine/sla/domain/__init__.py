"""
SLA Domain Layer
================

Domain layer for the SLA engine.

Contains:
- Entities: Ticket and its append-only HistoryEntry records
- Value Objects: SLAPolicy, HolidayCalendar, EscalationRule, EscalationMatrix
- Domain Services: BusinessCalendar, SLACalculator, TicketStateMachine, compliance_report

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from sla_engine.sla.domain.entities import Ticket, HistoryEntry
from sla_engine.sla.domain.value_objects import (
    AutoActions,
    BusinessHours,
    DayWindow,
    DueDates,
    EscalationMatrix,
    EscalationRule,
    HolidayCalendar,
    ReassignTarget,
    SLACalculator,
    SLAPolicy,
    SLATargets,
)
from sla_engine.sla.domain.calendar import BusinessCalendar, as_utc
from sla_engine.sla.domain.state_machine import TicketStateMachine, ALLOWED_TRANSITIONS
from sla_engine.sla.domain.reporting import ComplianceReport, compliance_report

__all__ = [
    # Entities
    "Ticket",
    "HistoryEntry",
    # Value Objects
    "AutoActions",
    "BusinessHours",
    "DayWindow",
    "DueDates",
    "EscalationMatrix",
    "EscalationRule",
    "HolidayCalendar",
    "ReassignTarget",
    "SLAPolicy",
    "SLATargets",
    # Domain Services
    "BusinessCalendar",
    "as_utc",
    "SLACalculator",
    "TicketStateMachine",
    "ALLOWED_TRANSITIONS",
    "ComplianceReport",
    "compliance_report",
]
