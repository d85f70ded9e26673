"""
SLA Application Layer
======================

Application layer for the SLA engine.

Contains:
- Services: Orchestrate business logic and coordinate with repositories
- DTOs: Data transfer objects for API serialization
- Interfaces for repositories and external collaborators

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from sla_engine.sla.application.dto import (
    TicketCreateDTO,
    AssignTicketDTO,
    StatusChangeDTO,
    PauseTicketDTO,
    NoteDTO,
    TicketQueryDTO,
    HistoryEntryResponse,
    TicketResponse,
    TicketListResponse,
    ComplianceReportResponse,
    SweepResponse,
)
from sla_engine.sla.application.services import (
    CalendarService,
    TicketService,
    EscalationExecutor,
    EscalationSweeper,
    SweepResult,
    ReportingService,
    PolicyAdminService,
    ITicketRepository,
    ISLAPolicyRepository,
    IHolidayCalendarRepository,
    IEscalationRuleRepository,
    IUserDirectory,
    INotificationDispatcher,
    ISweepLock,
)

__all__ = [
    # DTOs
    "TicketCreateDTO",
    "AssignTicketDTO",
    "StatusChangeDTO",
    "PauseTicketDTO",
    "NoteDTO",
    "TicketQueryDTO",
    "HistoryEntryResponse",
    "TicketResponse",
    "TicketListResponse",
    "ComplianceReportResponse",
    "SweepResponse",
    # Services
    "CalendarService",
    "TicketService",
    "EscalationExecutor",
    "EscalationSweeper",
    "SweepResult",
    "ReportingService",
    "PolicyAdminService",
    # Repository Interfaces
    "ITicketRepository",
    "ISLAPolicyRepository",
    "IHolidayCalendarRepository",
    "IEscalationRuleRepository",
    # Collaborator Interfaces
    "IUserDirectory",
    "INotificationDispatcher",
    "ISweepLock",
]
