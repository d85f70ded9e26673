"""
SLA Controllers (API Routes)
=============================

FastAPI routes for tickets, reports, SLA administration and the manual sweep.

Controllers are thin - they delegate to application services. Domain errors
propagate to the application exception handler, which maps them to HTTP
statuses. Shared collaborators (user directory, notifier, sweep lock, clock)
live on `app.state` and are set up by the application lifespan.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from sla_engine.config import BreachState, Priority, TicketStatus
from sla_engine.infrastructure.database import get_session
from sla_engine.shared.infrastructure.logging import get_logger
from sla_engine.sla.application import (
    AssignTicketDTO,
    CalendarService,
    ComplianceReportResponse,
    EscalationExecutor,
    EscalationSweeper,
    INotificationDispatcher,
    IUserDirectory,
    NoteDTO,
    PauseTicketDTO,
    PolicyAdminService,
    ReportingService,
    StatusChangeDTO,
    SweepResponse,
    TicketCreateDTO,
    TicketListResponse,
    TicketQueryDTO,
    TicketResponse,
    TicketService,
)
from sla_engine.sla.application.services import Clock, utc_now
from sla_engine.sla.domain import EscalationRule, HolidayCalendar, SLAPolicy, as_utc
from sla_engine.sla.infrastructure import (
    SQLAlchemyEscalationRuleRepository,
    SQLAlchemyHolidayCalendarRepository,
    SQLAlchemySLAPolicyRepository,
    SQLAlchemyTicketRepository,
)

logger = get_logger(__name__)
sla_router = APIRouter()


# ========== Dependencies ==========

def get_actor(x_actor_id: str = Header(default="anonymous")) -> str:
    """Caller identity; authentication happens in front of this service."""
    return x_actor_id


def get_clock(request: Request) -> Clock:
    return getattr(request.app.state, "clock", None) or utc_now


def build_calendar_service(session: AsyncSession) -> CalendarService:
    return CalendarService(
        SQLAlchemySLAPolicyRepository(session),
        SQLAlchemyHolidayCalendarRepository(session),
    )


def build_escalation_sweeper(
    session: AsyncSession,
    user_directory: IUserDirectory,
    notifier: INotificationDispatcher,
    clock: Optional[Clock] = None
) -> EscalationSweeper:
    """Wire a sweeper onto one session; used by the API and the scheduler job."""
    return EscalationSweeper(
        SQLAlchemyTicketRepository(session),
        build_calendar_service(session),
        SQLAlchemyEscalationRuleRepository(session),
        EscalationExecutor(user_directory, notifier),
        clock=clock,
    )


async def get_ticket_service(
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock)
) -> TicketService:
    return TicketService(
        SQLAlchemyTicketRepository(session),
        build_calendar_service(session),
        clock=clock,
    )


async def get_reporting_service(
    session: AsyncSession = Depends(get_session)
) -> ReportingService:
    return ReportingService(SQLAlchemyTicketRepository(session))


async def get_admin_service(
    session: AsyncSession = Depends(get_session)
) -> PolicyAdminService:
    return PolicyAdminService(
        SQLAlchemySLAPolicyRepository(session),
        SQLAlchemyHolidayCalendarRepository(session),
        SQLAlchemyEscalationRuleRepository(session),
    )


# ========== Tickets ==========

@sla_router.post(
    "/tickets",
    response_model=TicketResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Tickets"],
    summary="Open a ticket",
    description="""
    Open a ticket and compute its first-response and resolution due dates
    from the SLA policy's targets, business hours and holidays.

    Fails with 404 when the policy is unknown, inactive or has no target for
    the priority, and with 422 when the policy has no open business time.
    """
)
async def create_ticket(
    dto: TicketCreateDTO,
    actor: str = Depends(get_actor),
    clock: Clock = Depends(get_clock),
    service: TicketService = Depends(get_ticket_service)
):
    ticket = await service.create_ticket(dto, actor)
    return TicketResponse.from_domain(ticket, clock())


@sla_router.get(
    "/tickets",
    response_model=TicketListResponse,
    tags=["Tickets"],
    summary="List tickets"
)
async def list_tickets(
    status_filter: Optional[TicketStatus] = Query(None, alias="status"),
    breach_state: Optional[BreachState] = Query(None),
    priority: Optional[Priority] = Query(None),
    assignee_id: Optional[str] = Query(None),
    store_id: Optional[str] = Query(None),
    customer_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    clock: Clock = Depends(get_clock),
    service: TicketService = Depends(get_ticket_service)
):
    query = TicketQueryDTO(
        status=status_filter,
        breach_state=breach_state,
        priority=priority,
        assignee_id=assignee_id,
        store_id=store_id,
        customer_id=customer_id,
        limit=limit,
        offset=offset,
    )
    tickets = await service.list_tickets(query)
    now = clock()
    return TicketListResponse(
        tickets=[TicketResponse.from_domain(t, now) for t in tickets],
        total_count=len(tickets),
    )


@sla_router.get("/tickets/{ticket_id}", response_model=TicketResponse, tags=["Tickets"])
async def get_ticket(
    ticket_id: str,
    clock: Clock = Depends(get_clock),
    service: TicketService = Depends(get_ticket_service)
):
    ticket = await service.get_ticket(ticket_id)
    return TicketResponse.from_domain(ticket, clock())


@sla_router.patch(
    "/tickets/{ticket_id}/assign",
    response_model=TicketResponse,
    tags=["Tickets"],
    summary="Assign a ticket",
    description="Set the assignee. Due dates are unchanged. Locked tickets return 409."
)
async def assign_ticket(
    ticket_id: str,
    dto: AssignTicketDTO,
    actor: str = Depends(get_actor),
    clock: Clock = Depends(get_clock),
    service: TicketService = Depends(get_ticket_service)
):
    ticket = await service.assign(ticket_id, dto.assignee_id, actor)
    return TicketResponse.from_domain(ticket, clock())


@sla_router.patch(
    "/tickets/{ticket_id}/status",
    response_model=TicketResponse,
    tags=["Tickets"],
    summary="Change ticket status",
    description="""
    Move the ticket along its lifecycle:

    OPEN -> IN_PROGRESS -> {WAITING_CUSTOMER, ON_HOLD} <-> IN_PROGRESS -> RESOLVED -> CLOSED

    Entering a pause-eligible status freezes the SLA clock; leaving it shifts
    both due dates by the business minutes spent paused. Edges outside the
    graph return 409.
    """
)
async def change_status(
    ticket_id: str,
    dto: StatusChangeDTO,
    actor: str = Depends(get_actor),
    clock: Clock = Depends(get_clock),
    service: TicketService = Depends(get_ticket_service)
):
    ticket = await service.change_status(ticket_id, dto.status, actor, dto.note)
    return TicketResponse.from_domain(ticket, clock())


@sla_router.patch("/tickets/{ticket_id}/pause", response_model=TicketResponse, tags=["Tickets"])
async def pause_ticket(
    ticket_id: str,
    dto: Optional[PauseTicketDTO] = None,
    actor: str = Depends(get_actor),
    clock: Clock = Depends(get_clock),
    service: TicketService = Depends(get_ticket_service)
):
    dto = dto or PauseTicketDTO()
    ticket = await service.pause(ticket_id, actor, status=dto.status, note=dto.note)
    return TicketResponse.from_domain(ticket, clock())


@sla_router.patch("/tickets/{ticket_id}/resume", response_model=TicketResponse, tags=["Tickets"])
async def resume_ticket(
    ticket_id: str,
    dto: Optional[NoteDTO] = None,
    actor: str = Depends(get_actor),
    clock: Clock = Depends(get_clock),
    service: TicketService = Depends(get_ticket_service)
):
    ticket = await service.resume(ticket_id, actor, note=dto.note if dto else "")
    return TicketResponse.from_domain(ticket, clock())


@sla_router.patch(
    "/tickets/{ticket_id}/reopen",
    response_model=TicketResponse,
    tags=["Tickets"],
    summary="Reopen a resolved ticket",
    description="Restarts the SLA clock and resets breach state, escalation level and lock."
)
async def reopen_ticket(
    ticket_id: str,
    dto: Optional[NoteDTO] = None,
    actor: str = Depends(get_actor),
    clock: Clock = Depends(get_clock),
    service: TicketService = Depends(get_ticket_service)
):
    ticket = await service.reopen(ticket_id, actor, note=dto.note if dto else "")
    return TicketResponse.from_domain(ticket, clock())


@sla_router.post(
    "/tickets/{ticket_id}/recompute",
    response_model=TicketResponse,
    tags=["Tickets"],
    summary="Recompute due dates",
    description="Recompute due dates against the policy's current business hours and holidays."
)
async def recompute_ticket(
    ticket_id: str,
    actor: str = Depends(get_actor),
    clock: Clock = Depends(get_clock),
    service: TicketService = Depends(get_ticket_service)
):
    ticket = await service.recompute(ticket_id, actor)
    return TicketResponse.from_domain(ticket, clock())


# ========== Reports ==========

@sla_router.get(
    "/reports/sla",
    response_model=ComplianceReportResponse,
    tags=["Reports"],
    summary="SLA compliance report",
    description="Compliance %, MTTA and MTTR (minutes) over tickets created in [from, to]."
)
async def sla_report(
    period_from: datetime = Query(..., alias="from"),
    period_to: datetime = Query(..., alias="to"),
    service: ReportingService = Depends(get_reporting_service)
):
    period_from, period_to = as_utc(period_from), as_utc(period_to)
    report = await service.compliance_report(period_from, period_to)
    return ComplianceReportResponse.from_domain(report, period_from, period_to)


@sla_router.get(
    "/reports/red-alert",
    response_model=TicketListResponse,
    tags=["Reports"],
    summary="Open tickets in breach, most overdue first"
)
async def red_alert_dashboard(
    clock: Clock = Depends(get_clock),
    service: ReportingService = Depends(get_reporting_service)
):
    tickets = await service.red_alert_dashboard()
    now = clock()
    return TicketListResponse(
        tickets=[TicketResponse.from_domain(t, now) for t in tickets],
        total_count=len(tickets),
    )


# ========== Administration ==========

@sla_router.post(
    "/policies",
    response_model=SLAPolicy,
    status_code=status.HTTP_201_CREATED,
    tags=["Administration"],
    summary="Create or replace an SLA policy"
)
async def upsert_policy(
    policy: SLAPolicy,
    service: PolicyAdminService = Depends(get_admin_service)
):
    return await service.upsert_policy(policy)


@sla_router.get("/policies", response_model=List[SLAPolicy], tags=["Administration"])
async def list_policies(service: PolicyAdminService = Depends(get_admin_service)):
    return await service.list_policies()


@sla_router.post(
    "/holiday-calendars",
    response_model=HolidayCalendar,
    status_code=status.HTTP_201_CREATED,
    tags=["Administration"]
)
async def upsert_holiday_calendar(
    calendar: HolidayCalendar,
    service: PolicyAdminService = Depends(get_admin_service)
):
    return await service.upsert_holiday_calendar(calendar)


@sla_router.get(
    "/holiday-calendars/{calendar_id}",
    response_model=HolidayCalendar,
    tags=["Administration"]
)
async def get_holiday_calendar(
    calendar_id: str,
    service: PolicyAdminService = Depends(get_admin_service)
):
    return await service.get_holiday_calendar(calendar_id)


@sla_router.post(
    "/escalation-matrix",
    response_model=EscalationRule,
    status_code=status.HTTP_201_CREATED,
    tags=["Administration"],
    summary="Add or replace an escalation rule",
    description="""
    Add a rule to the escalation matrix, or replace the rule with the same
    `rule_id`. The resulting matrix must keep at most one active rule per
    (level, trigger) with levels running 1..n; otherwise 422.
    """
)
async def upsert_escalation_rule(
    rule: EscalationRule,
    service: PolicyAdminService = Depends(get_admin_service)
):
    return await service.upsert_escalation_rule(rule)


@sla_router.get("/escalation-matrix", response_model=List[EscalationRule], tags=["Administration"])
async def get_escalation_matrix(service: PolicyAdminService = Depends(get_admin_service)):
    matrix = await service.get_escalation_matrix()
    return matrix.rules


# ========== Sweep ==========

@sla_router.post(
    "/sla/sweep",
    response_model=SweepResponse,
    tags=["SLA Sweep"],
    summary="Run an escalation sweep now",
    description="""
    Runs the same sweep as the scheduler. Skipped (`executed: false`) when
    another worker holds the sweep lock.
    """
)
async def run_sweep(
    request: Request,
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock)
):
    state = request.app.state
    sweeper = build_escalation_sweeper(session, state.user_directory, state.notifier, clock)
    result = await sweeper.run(state.sweep_lock)
    if result is None:
        return SweepResponse(executed=False)
    return SweepResponse(executed=True, **result.to_dict())
