"""
SLA Infrastructure Models
==========================

SQLAlchemy ORM models for the SLA engine.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
Nested configuration (business hours, targets, rule actions) is stored
as a JSON document next to the columns that queries filter on.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from sla_engine.infrastructure.database import Base
from sla_engine.config import BreachState, Priority, TicketStatus


class TicketModel(Base):
    """
    Database model for Ticket entity.

    Maps to the 'tickets' table. `version` is the optimistic lock: every
    flush increments it and a stale write raises.
    """
    __tablename__ = "tickets"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Human-readable identifier
    ticket_no: Mapped[str] = mapped_column(String(32), unique=True, index=True, nullable=False)

    # References
    customer_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    store_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    assignee_id: Mapped[Optional[str]] = mapped_column(String(255), index=True, nullable=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    watchers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Lifecycle
    priority: Mapped[Priority] = mapped_column(String(10), nullable=False)
    status: Mapped[TicketStatus] = mapped_column(String(50), index=True, nullable=False, default=TicketStatus.OPEN)
    sla_policy_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Ticket content
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    # SLA clock
    first_response_due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sla_due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    first_response_target_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    resolution_target_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    sla_clock_started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paused_since: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paused_minutes_total: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    pause_on: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    first_response_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Escalation
    breach_state: Mapped[BreachState] = mapped_column(String(20), index=True, nullable=False, default=BreachState.NONE)
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Append-only audit trail
    history: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class SLAPolicyModel(Base):
    """
    Database model for SLA policies.

    Maps to the 'sla_policies' table.
    """
    __tablename__ = "sla_policies"

    policy_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    document: Mapped[dict] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


class HolidayCalendarModel(Base):
    __tablename__ = "holiday_calendars"

    calendar_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    dates: Mapped[list] = mapped_column(JSON, nullable=False, default=list)


class EscalationRuleModel(Base):
    """
    Database model for escalation matrix rows.

    Maps to the 'escalation_rules' table.
    """
    __tablename__ = "escalation_rules"

    rule_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    level: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    trigger: Mapped[str] = mapped_column(String(50), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    document: Mapped[dict] = mapped_column(JSON, nullable=False)
