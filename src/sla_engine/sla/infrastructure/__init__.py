"""
SLA Infrastructure Layer
=========================

Infrastructure implementations for the SLA engine:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer
- External: Notification webhook, user directory, seed watcher, scheduler, sweep locks
"""

from sla_engine.sla.infrastructure.models import (
    TicketModel,
    SLAPolicyModel,
    HolidayCalendarModel,
    EscalationRuleModel,
)
from sla_engine.sla.infrastructure.repositories import (
    SQLAlchemyTicketRepository,
    SQLAlchemySLAPolicyRepository,
    SQLAlchemyHolidayCalendarRepository,
    SQLAlchemyEscalationRuleRepository,
)

__all__ = [
    "TicketModel",
    "SLAPolicyModel",
    "HolidayCalendarModel",
    "EscalationRuleModel",
    "SQLAlchemyTicketRepository",
    "SQLAlchemySLAPolicyRepository",
    "SQLAlchemyHolidayCalendarRepository",
    "SQLAlchemyEscalationRuleRepository",
]
