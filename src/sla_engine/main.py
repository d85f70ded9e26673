"""
SLA Engine - Main Application
==============================

SLA clock and escalation service for retail operations tickets.

The service computes due dates over business hours, freezes clocks while a
ticket waits on the customer, escalates warnings and breaches on a schedule
and reports compliance.

Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities, value objects, calendar and state machine
- Infrastructure: Database, notification webhook, user directory, scheduler
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from sla_engine.config import settings
from sla_engine.core import ApplicationException, ValidationException
from sla_engine.infrastructure.database import (
    close_database, create_tables, get_engine, get_session_context, init_database,
)
from sla_engine.sla.infrastructure.external import (
    EscalationSweepScheduler,
    HTTPUserDirectory,
    LocalSweepLock,
    PostgresAdvisorySweepLock,
    SeedConfigManager,
    StaticUserDirectory,
    WebhookNotificationDispatcher,
    apply_seed,
)
from sla_engine.sla.interfaces import sla_router
from sla_engine.sla.interfaces.controllers import build_escalation_sweeper
from sla_engine.shared.infrastructure.logging import setup_logging, get_logger
from sla_engine.shared.api.middleware import (
    CorrelationIDMiddleware,
    MetricsMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
    request_metrics,
)

logger = get_logger(__name__)


async def _prepare_database() -> bool:
    """Create tables; False means the API runs without storage until restarted."""
    init_database()
    try:
        await create_tables()
    except Exception as e:
        logger.warning("Database unavailable, sweeps and seeding disabled", extra={"error": str(e)})
        return False
    return True


def _wire_collaborators(app: FastAPI, seed_manager: SeedConfigManager) -> None:
    if settings.user_directory_url:
        app.state.user_directory = HTTPUserDirectory(settings.user_directory_url)
    else:
        app.state.user_directory = StaticUserDirectory(seed_manager)

    app.state.notifier = WebhookNotificationDispatcher()

    # Advisory locks keep replicas from sweeping concurrently; SQLite runs single-process.
    if settings.database_url.startswith("postgresql"):
        app.state.sweep_lock = PostgresAdvisorySweepLock(get_engine())
    else:
        app.state.sweep_lock = LocalSweepLock()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Startup loads the seed into the database, wires the collaborators onto
    `app.state` and schedules the escalation sweep. Shutdown reverses it,
    draining queued notifications before the database goes away.
    """
    setup_logging(settings.log_level, settings.environment, settings.app_name)
    logger.info("Starting SLA engine", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    database_ready = await _prepare_database()

    seed_manager = SeedConfigManager()
    seed = seed_manager.load(settings.sla_seed_path)
    if database_ready:
        try:
            await apply_seed(seed)
        except ValidationException as e:
            # Stored configuration stays in force until the seed file is fixed
            logger.error("SLA seed rejected", extra={"errors": e.details.get("errors", [])})
        seed_manager.start_watching(asyncio.get_running_loop(), apply_seed)
    app.state.seed_manager = seed_manager

    _wire_collaborators(app, seed_manager)

    async def escalation_sweep_job() -> None:
        async with get_session_context() as session:
            sweeper = build_escalation_sweeper(session, app.state.user_directory, app.state.notifier)
            await sweeper.run(app.state.sweep_lock)

    scheduler = None
    if settings.sweeper_enabled and settings.sweep_interval_seconds > 0 and database_ready:
        scheduler = EscalationSweepScheduler(interval_seconds=settings.sweep_interval_seconds)
        await scheduler.start(escalation_sweep_job)
    else:
        logger.info("Escalation sweep scheduler disabled on this replica")
    app.state.scheduler = scheduler

    yield

    logger.info("Shutting down SLA engine")
    if scheduler:
        await scheduler.stop()
    seed_manager.stop_watching()

    await app.state.notifier.close()
    if isinstance(app.state.user_directory, HTTPUserDirectory):
        await app.state.user_directory.close()

    await close_database()
    logger.info("SLA engine stopped")


app = FastAPI(
    title="SLA Engine API",
    description="""
    ## SLA Clock & Escalation Engine

    Computes SLA due dates over business hours and holidays, freezes clocks
    while tickets wait on the customer, and escalates warnings and breaches
    through a multi-level escalation matrix.

    **Tickets:** `POST /tickets`, `GET /tickets`, `GET /tickets/{id}`,
    `PATCH /tickets/{id}/assign|status|pause|resume|reopen`, `POST /tickets/{id}/recompute`

    **Reports:** `GET /reports/sla?from=&to=`, `GET /reports/red-alert`

    **Administration:** `POST|GET /policies`, `POST /holiday-calendars`,
    `GET /holiday-calendars/{id}`, `POST|GET /escalation-matrix`

    **Sweep:** `POST /sla/sweep` runs the escalation sweep on demand.
    """,
    version=settings.app_version,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIDMiddleware)
app.add_middleware(MetricsMiddleware)
app.add_middleware(LoggingMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

app.include_router(sla_router)


@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """Liveness plus the state of the sweep scheduler and request counters."""
    state = request.app.state
    scheduler = getattr(state, "scheduler", None)
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": {
            "sla_seed": "loaded" if getattr(state, "seed_manager", None) else "not_loaded",
            "sweep_scheduler": "running" if scheduler and scheduler.is_running else "stopped",
            "notifications": "configured" if settings.notification_webhook_url else "not_configured",
        },
        "requests": request_metrics.snapshot(),
    }


@app.get("/", tags=["Root"])
async def root():
    return {"service": "SLA Engine", "version": settings.app_version, "docs": "/docs", "health": "/health"}
