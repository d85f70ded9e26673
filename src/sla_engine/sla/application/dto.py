"""
SLA Application DTOs
=====================

Data Transfer Objects for the ticket and reporting API.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from sla_engine.config import (
    BreachState, EscalationTrigger, HistoryAction, Priority, TicketStatus,
    PAUSABLE_STATUSES,
)
from sla_engine.sla.domain import ComplianceReport, HistoryEntry, Ticket


# ========== Request DTOs ==========

class TicketCreateDTO(BaseModel):
    """Request body for opening a ticket."""
    customer_id: str = Field(..., min_length=1, description="Customer reference")
    store_id: str = Field(..., min_length=1, description="Store reference")
    priority: Priority = Field(..., description="P1 (most urgent) to P3")
    sla_policy_id: str = Field(..., min_length=1, description="SLA policy to apply")
    title: str = Field(default="", description="Short summary")
    description: str = Field(default="", description="Ticket details")
    watchers: List[str] = Field(default_factory=list, description="Initial watchers")


class AssignTicketDTO(BaseModel):
    assignee_id: str = Field(..., min_length=1)


class StatusChangeDTO(BaseModel):
    status: TicketStatus
    note: str = ""


class PauseTicketDTO(BaseModel):
    status: TicketStatus = Field(
        default=TicketStatus.ON_HOLD,
        description="Pause status: WAITING_CUSTOMER or ON_HOLD"
    )
    note: str = ""

    @field_validator("status")
    @classmethod
    def validate_pause_status(cls, v: TicketStatus) -> TicketStatus:
        if v not in PAUSABLE_STATUSES:
            raise ValueError("pause status must be WAITING_CUSTOMER or ON_HOLD")
        return v


class NoteDTO(BaseModel):
    note: str = ""


class TicketQueryDTO(BaseModel):
    """Filters for the ticket listing."""
    status: Optional[TicketStatus] = None
    breach_state: Optional[BreachState] = None
    priority: Optional[Priority] = None
    assignee_id: Optional[str] = None
    store_id: Optional[str] = None
    customer_id: Optional[str] = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)

    def filters(self) -> dict:
        return self.model_dump(exclude_none=True, exclude={"limit", "offset"})


# ========== Response DTOs ==========

class HistoryEntryResponse(BaseModel):
    timestamp: datetime
    actor: str
    action: HistoryAction
    from_status: Optional[TicketStatus] = None
    to_status: Optional[TicketStatus] = None
    note: str = ""
    level: Optional[int] = None
    trigger: Optional[EscalationTrigger] = None

    @classmethod
    def from_domain(cls, entry: HistoryEntry) -> "HistoryEntryResponse":
        return cls(**entry.__dict__)


class TicketResponse(BaseModel):
    """Ticket with its SLA clock and escalation state."""
    id: str
    ticket_no: str
    customer_id: str
    store_id: str
    assignee_id: Optional[str] = None
    watchers: List[str] = Field(default_factory=list)
    priority: Priority
    status: TicketStatus
    sla_policy_id: str
    title: str = ""
    description: str = ""
    created_by: str
    created_at: datetime
    updated_at: datetime
    first_response_due_at: datetime
    sla_due_at: datetime
    first_response_at: Optional[datetime] = None
    breach_state: BreachState
    escalation_level: int
    paused_since: Optional[datetime] = None
    locked: bool = False
    is_overdue: bool = False
    history: List[HistoryEntryResponse] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, ticket: Ticket, now: datetime) -> "TicketResponse":
        return cls(
            id=ticket.id,
            ticket_no=ticket.ticket_no,
            customer_id=ticket.customer_id,
            store_id=ticket.store_id,
            assignee_id=ticket.assignee_id,
            watchers=list(ticket.watchers),
            priority=ticket.priority,
            status=ticket.status,
            sla_policy_id=ticket.sla_policy_id,
            title=ticket.title,
            description=ticket.description,
            created_by=ticket.created_by,
            created_at=ticket.created_at,
            updated_at=ticket.updated_at,
            first_response_due_at=ticket.first_response_due_at,
            sla_due_at=ticket.sla_due_at,
            first_response_at=ticket.first_response_at,
            breach_state=ticket.breach_state,
            escalation_level=ticket.escalation_level,
            paused_since=ticket.paused_since,
            locked=ticket.locked,
            is_overdue=ticket.is_overdue(now),
            history=[HistoryEntryResponse.from_domain(e) for e in ticket.history],
        )


class TicketListResponse(BaseModel):
    tickets: List[TicketResponse]
    total_count: int = Field(..., description="Number of tickets in this page")


class ComplianceReportResponse(BaseModel):
    """Compliance metrics over tickets created in [from, to]."""
    period_from: datetime
    period_to: datetime
    total: int
    resolved: int
    breached: int
    warned: int
    compliance_pct: float
    mtta: float = Field(..., description="Mean minutes from creation to first assignment")
    mttr: float = Field(..., description="Mean minutes from creation to resolution")

    @classmethod
    def from_domain(
        cls, report: ComplianceReport, period_from: datetime, period_to: datetime
    ) -> "ComplianceReportResponse":
        return cls(period_from=period_from, period_to=period_to, **report.to_dict())


class SweepResponse(BaseModel):
    executed: bool = Field(..., description="False when another worker held the sweep lock")
    tickets_scanned: int = 0
    skipped_paused: int = 0
    warnings: int = 0
    breaches: int = 0
    escalations: int = 0
    errors: int = 0
