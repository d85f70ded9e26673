"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="sla-engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/retail_ops",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== SLA Engine ==========
    sla_seed_path: Path = Field(
        default=Path("sla_seed.yaml"),
        description="YAML file with policies, holiday calendars and escalation rules"
    )
    sweep_interval_seconds: int = Field(
        default=120,
        description="Seconds between escalation sweeps (0 disables the scheduler)",
        ge=0
    )
    sweeper_enabled: bool = Field(
        default=True,
        description="Whether this replica is allowed to run escalation sweeps"
    )
    sweep_lock_key: int = Field(
        default=724_311,
        description="Postgres advisory lock key guarding the sweep"
    )
    default_warning_threshold_pct: int = Field(
        default=75,
        description="Elapsed-percentage warning threshold when no WARNING rule applies",
        ge=0,
        le=100
    )
    default_timezone: str = Field(
        default="UTC",
        description="Timezone for business hours when a policy does not name one"
    )

    # ========== Collaborators ==========
    notification_webhook_url: Optional[str] = Field(
        default=None,
        description="Notification service webhook URL"
    )
    notification_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for notification calls",
        ge=0.1,
        le=30
    )
    user_directory_url: Optional[str] = Field(
        default=None,
        description="Base URL of the user/role directory service"
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "test", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

SYSTEM_ACTOR = "SYSTEM"


class Priority(str, Enum):
    """Ticket priority levels (P1 is the most urgent)."""
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"


class TicketStatus(str, Enum):
    """Ticket lifecycle statuses."""
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    WAITING_CUSTOMER = "WAITING_CUSTOMER"
    ON_HOLD = "ON_HOLD"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class BreachState(str, Enum):
    """SLA breach states, ordered by severity."""
    NONE = "NONE"
    WARNING = "WARNING"
    RED = "RED"


class EscalationTrigger(str, Enum):
    """What causes an escalation rule to fire."""
    WARNING_THRESHOLD = "WARNING_THRESHOLD"
    BREACH = "BREACH"


class NotificationChannel(str, Enum):
    """Channels understood by the notification service."""
    APP_INBOX = "APP_INBOX"
    EMAIL = "EMAIL"
    WHATSAPP = "WHATSAPP"
    SMS = "SMS"


class Role(str, Enum):
    """Operational roles that escalation rules can target."""
    STORE_MANAGER = "STORE_MANAGER"
    AREA_MANAGER = "AREA_MANAGER"
    OPS_HEAD = "OPS_HEAD"
    ADMIN = "ADMIN"
    SUPERADMIN = "SUPERADMIN"


class HistoryAction(str, Enum):
    """Audit actions recorded on a ticket's history."""
    CREATED = "CREATED"
    ASSIGNED = "ASSIGNED"
    STATUS_CHANGED = "STATUS_CHANGED"
    PAUSED = "PAUSED"
    RESUMED = "RESUMED"
    ESCALATED = "ESCALATED"
    REOPENED = "REOPENED"
    SLA_RECOMPUTED = "SLA_RECOMPUTED"


# ========== Lists for validation ==========

CLOSED_STATUSES = [TicketStatus.RESOLVED, TicketStatus.CLOSED]
OPEN_STATUSES = [s for s in TicketStatus if s not in CLOSED_STATUSES]
PAUSABLE_STATUSES = [TicketStatus.WAITING_CUSTOMER, TicketStatus.ON_HOLD]
BREACH_STATE_ORDER = {BreachState.NONE: 0, BreachState.WARNING: 1, BreachState.RED: 2}
