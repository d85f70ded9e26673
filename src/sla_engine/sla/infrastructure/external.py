"""
SLA External Service Integrations
==================================

External services for the SLA engine:
- Notification webhook dispatcher (fire-and-forget, circuit breaker, retries)
- User/role directory clients (HTTP, or static from the seed file)
- YAML seed file loader with watchdog hot-reload
- APScheduler job for the escalation sweep
- Sweep locks enforcing a single active sweeper
"""

import asyncio
import threading
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Set

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from sla_engine.config import NotificationChannel, Role, settings
from sla_engine.core import ExternalServiceException, NotificationDeliveryFailed
from sla_engine.infrastructure.database import get_session_context
from sla_engine.shared.infrastructure.logging import get_logger
from sla_engine.sla.application.services import (
    INotificationDispatcher, ISweepLock, IUserDirectory, PolicyAdminService,
)
from sla_engine.sla.domain import EscalationRule, HolidayCalendar, SLAPolicy
from sla_engine.sla.infrastructure.repositories import (
    SQLAlchemyEscalationRuleRepository, SQLAlchemyHolidayCalendarRepository,
    SQLAlchemySLAPolicyRepository,
)

logger = get_logger(__name__)


# ========== Seed file ==========

class SLASeed(BaseModel):
    """Contents of the YAML seed file."""
    policies: List[SLAPolicy] = Field(default_factory=list)
    holiday_calendars: List[HolidayCalendar] = Field(default_factory=list)
    escalation_rules: List[EscalationRule] = Field(default_factory=list)
    role_directory: Dict[Role, List[str]] = Field(default_factory=dict)


class SeedFileHandler(FileSystemEventHandler):
    """Watchdog event handler for seed file changes."""

    def __init__(self, seed_manager: "SeedConfigManager", seed_path: Path):
        self.seed_manager = seed_manager
        self.seed_path = seed_path
        super().__init__()

    def on_modified(self, event):
        """Handle file modification event."""
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.seed_path.resolve():
            logger.info(f"Seed file changed: {event.src_path}")
            self.seed_manager.reload()


class SeedConfigManager:
    """
    Thread-safe holder of the YAML seed with hot-reload support.

    Uses watchdog to monitor the file. A successful reload is handed to the
    `on_reload` coroutine on the application's event loop, which upserts it
    into the store.
    """

    def __init__(self):
        self._seed: Optional[SLASeed] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._on_reload: Optional[Callable[[SLASeed], Awaitable[None]]] = None

    def load(self, path: Path) -> SLASeed:
        """Initial seed load."""
        self._path = path
        self._seed = self._load_from_file(path)
        return self._seed

    def _load_from_file(self, path: Path) -> SLASeed:
        if not path.exists():
            logger.warning(f"SLA seed file not found: {path}, starting with an empty seed")
            return SLASeed()

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        seed = SLASeed(**data)
        # Seeded rules need stable IDs so re-applying the file replaces rather than duplicates
        seed.escalation_rules = [
            rule if rule.rule_id else rule.model_copy(
                update={"rule_id": f"seed-{rule.trigger.value.lower()}-l{rule.level}"}
            )
            for rule in seed.escalation_rules
        ]
        return seed

    def reload(self) -> bool:
        """Reload the seed from file and schedule it to be applied."""
        if self._path is None:
            return False

        try:
            new_seed = self._load_from_file(self._path)
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error(f"Failed to reload SLA seed: {e}")
            return False

        with self._lock:
            self._seed = new_seed
        logger.info("SLA seed reloaded successfully")

        if self._loop is not None and self._on_reload is not None:
            future = asyncio.run_coroutine_threadsafe(self._on_reload(new_seed), self._loop)
            future.add_done_callback(self._log_apply_failure)
        return True

    @staticmethod
    def _log_apply_failure(future) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.error(f"Failed to apply reloaded SLA seed: {future.exception()}")

    def start_watching(
        self,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        on_reload: Optional[Callable[[SLASeed], Awaitable[None]]] = None
    ) -> None:
        """
        Start watching the seed file for changes.

        Skips watching if the file doesn't exist or inotify is unavailable.
        """
        if self._path is None:
            raise RuntimeError("Seed not loaded. Call load() first.")

        self._loop = loop
        self._on_reload = on_reload

        if not self._path.exists():
            logger.info(f"Seed file doesn't exist, skipping file watch: {self._path}")
            return

        try:
            self._observer = Observer()
            handler = SeedFileHandler(self, self._path)
            self._observer.schedule(handler, str(self._path.parent), recursive=False)
            self._observer.start()
            logger.info(f"Started watching seed file: {self._path}")
        except OSError as e:
            # File watching not supported (e.g., in Docker containers)
            logger.warning(f"File watching not available, using static seed: {e}")
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching the seed file (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    @property
    def seed(self) -> SLASeed:
        if self._seed is None:
            raise RuntimeError("SLA seed not loaded")
        with self._lock:
            return self._seed


async def apply_seed(seed: SLASeed) -> None:
    """
    Upsert seeded calendars, policies and escalation rules in one transaction.

    Raises:
        ValidationException: the seeded rules clash with rules stored through the API;
            nothing from this seed is written
    """
    async with get_session_context() as session:
        admin = PolicyAdminService(
            SQLAlchemySLAPolicyRepository(session),
            SQLAlchemyHolidayCalendarRepository(session),
            SQLAlchemyEscalationRuleRepository(session),
        )
        for calendar in seed.holiday_calendars:
            await admin.upsert_holiday_calendar(calendar)
        for policy in seed.policies:
            await admin.upsert_policy(policy)
        await admin.sync_seeded_rules(seed.escalation_rules)

    logger.info(
        "SLA seed applied",
        extra={
            "policies": len(seed.policies),
            "holiday_calendars": len(seed.holiday_calendars),
            "escalation_rules": len(seed.escalation_rules),
        }
    )


# ========== Resilience ==========

class CircuitState:
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Stops hammering the notification webhook once it keeps failing.

    After `failure_threshold` consecutive failures the breaker opens and
    notifications fail fast. Once `recovery_timeout` seconds have passed it
    goes half-open and lets the next delivery probe the webhook; a success
    closes it again.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return CircuitState.CLOSED
        if time.monotonic() - self._opened_at >= self.recovery_timeout:
            return CircuitState.HALF_OPEN
        return CircuitState.OPEN

    def allow_request(self) -> bool:
        return self.state != CircuitState.OPEN

    def record_success(self) -> None:
        self._consecutive_failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._consecutive_failures < self.failure_threshold:
            return
        # A failed half-open probe restarts the cool-down
        self._opened_at = time.monotonic()
        logger.warning(
            "Notification circuit opened",
            extra={
                "consecutive_failures": self._consecutive_failures,
                "recovery_timeout": self.recovery_timeout
            }
        )


# ========== Notification dispatch ==========

class WebhookNotificationDispatcher(INotificationDispatcher):
    """
    Posts notifications to the notification service webhook.

    `notify` only schedules delivery and returns; the POST, its retries with
    exponential backoff and failure logging happen in a background task so
    the sweep loop never waits on the network.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self._webhook_url = webhook_url if webhook_url is not None else settings.notification_webhook_url
        self._timeout = timeout_seconds or settings.notification_timeout_seconds
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._circuit_breaker = circuit_breaker or CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        self._http_client = http_client
        self._pending: Set[asyncio.Task] = set()

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def notify(self, recipients: List[str], channel: NotificationChannel, payload: dict) -> None:
        if not self._webhook_url:
            logger.debug("Notification webhook URL not configured, skipping notification")
            return

        if not self._circuit_breaker.allow_request():
            raise NotificationDeliveryFailed(
                "Circuit breaker open",
                {"channel": channel.value, "ticket_id": payload.get("ticket_id")}
            )

        body = {"recipients": recipients, "channel": channel.value, "payload": payload}
        task = asyncio.create_task(self._deliver(body))
        self._pending.add(task)
        task.add_done_callback(self._delivery_finished)

    async def _deliver(self, body: dict) -> bool:
        ticket_id = body["payload"].get("ticket_id")

        for attempt in range(self._max_retries):
            try:
                response = await self._get_client().post(self._webhook_url, json=body)
                if response.is_success:
                    self._circuit_breaker.record_success()
                    logger.info(
                        "Notification sent",
                        extra={"ticket_id": ticket_id, "channel": body["channel"]}
                    )
                    return True
                logger.warning(
                    "Notification webhook returned non-2xx",
                    extra={"status_code": response.status_code, "attempt": attempt + 1}
                )
            except httpx.HTTPError as e:
                logger.warning(
                    "Notification attempt failed",
                    extra={"error": str(e), "attempt": attempt + 1, "ticket_id": ticket_id}
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._backoff_base * 2 ** attempt)

        self._circuit_breaker.record_failure()
        failure = NotificationDeliveryFailed(
            f"gave up after {self._max_retries} attempts",
            {"ticket_id": ticket_id, "channel": body["channel"]}
        )
        logger.error(failure.message, extra=failure.details)
        return False

    def _delivery_finished(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Notification delivery crashed",
                extra={"error": str(task.exception())},
                exc_info=task.exception(),
            )

    async def drain(self) -> None:
        """Wait for in-flight deliveries."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


# ========== User directory ==========

class HTTPUserDirectory(IUserDirectory):
    """
    Resolves role members from the platform's user service.

    Expects `GET {base_url}/users?role=ROLE` to return a JSON list of user
    objects carrying an `id`.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self._base_url = base_url.rstrip("/")
        self._http_client = http_client or httpx.AsyncClient(
            timeout=timeout_seconds or settings.notification_timeout_seconds
        )

    async def resolve_users_by_role(self, roles: Iterable[Role]) -> List[str]:
        users: List[str] = []
        for role in roles:
            try:
                response = await self._http_client.get(f"{self._base_url}/users", params={"role": role.value})
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise ExternalServiceException(
                    "User Directory", f"role lookup failed for {role.value}", {"error": str(e)}
                ) from e

            for user in response.json():
                user_id = user["id"] if isinstance(user, dict) else str(user)
                if user_id not in users:
                    users.append(user_id)
        return users

    async def close(self) -> None:
        await self._http_client.aclose()


class StaticUserDirectory(IUserDirectory):
    """Role members taken from the seed file's role_directory."""

    def __init__(self, seed_manager: SeedConfigManager):
        self._seed_manager = seed_manager

    async def resolve_users_by_role(self, roles: Iterable[Role]) -> List[str]:
        directory = self._seed_manager.seed.role_directory
        users: List[str] = []
        for role in roles:
            for user_id in directory.get(role, []):
                if user_id not in users:
                    users.append(user_id)
        return users


# ========== Sweep locks ==========

class LocalSweepLock(ISweepLock):
    """In-process lock; enough when exactly one replica runs sweeps."""

    def __init__(self):
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[bool]:
        if self._lock.locked():
            yield False
            return
        async with self._lock:
            yield True


class PostgresAdvisorySweepLock(ISweepLock):
    """
    Session-level Postgres advisory lock shared by every replica.

    Held on a dedicated connection for the length of the sweep.
    """

    def __init__(self, engine: AsyncEngine, key: Optional[int] = None):
        self._engine = engine
        self._key = key if key is not None else settings.sweep_lock_key

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[bool]:
        async with self._engine.connect() as conn:
            result = await conn.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": self._key})
            acquired = bool(result.scalar())
            try:
                yield acquired
            finally:
                if acquired:
                    await conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": self._key})


# ========== Scheduling ==========

class EscalationSweepScheduler:
    """
    Wrapper for APScheduler running the escalation sweep.

    Manages the lifecycle of the scheduler and its single job.
    """

    def __init__(self, interval_seconds: int = 120):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[None]]) -> None:
        """Start the scheduler with the given job function."""
        if self._running:
            logger.warning("Escalation sweep scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id="escalation_sweep",
            name="Escalation Sweep Job",
            misfire_grace_time=60,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._scheduler.start()
        self._running = True

        logger.info(
            "Escalation sweep scheduler started",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("Escalation sweep scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
