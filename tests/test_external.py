"""Tests for the seed loader, collaborator clients and sweep infrastructure."""

import logging
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from sla_engine.config import EscalationTrigger, NotificationChannel, Role
from sla_engine.core import ExternalServiceException, NotificationDeliveryFailed, ValidationException
from sla_engine.infrastructure.database import (
    close_database, create_tables, get_session_context, init_database,
)
from sla_engine.sla.application.services import PolicyAdminService
from sla_engine.sla.domain import EscalationRule
from sla_engine.sla.infrastructure import (
    SQLAlchemyEscalationRuleRepository, SQLAlchemyHolidayCalendarRepository, SQLAlchemySLAPolicyRepository,
)
from sla_engine.sla.infrastructure.external import (
    CircuitBreaker,
    CircuitState,
    EscalationSweepScheduler,
    HTTPUserDirectory,
    SeedConfigManager,
    StaticUserDirectory,
    WebhookNotificationDispatcher,
    apply_seed,
)

SHIPPED_SEED = Path(__file__).resolve().parent.parent / "sla_seed.yaml"

MINIMAL_SEED = """
policies:
  - policy_id: kiosk
    name: Kiosk
    targets:
      first_response_minutes: {P1: 15}
      resolution_minutes: {P1: 120}
    business_hours:
      monday: {open: "08:00", close: "20:00"}
escalation_rules:
  - level: 1
    trigger: BREACH
    notify_roles: [OPS_HEAD]
role_directory:
  OPS_HEAD: [u-ops]
"""


@pytest_asyncio.fixture
async def database():
    init_database("sqlite+aiosqlite:///:memory:")
    await create_tables()
    yield
    await close_database()


class TestSeedConfigManager:

    def test_shipped_seed_is_valid(self):
        seed = SeedConfigManager().load(SHIPPED_SEED)
        assert [p.policy_id for p in seed.policies] == ["retail-standard"]
        assert seed.policies[0].business_hours.sunday.is_closed
        assert {r.rule_id for r in seed.escalation_rules} == {"warn-l1", "breach-l1", "breach-l2"}

    def test_rules_without_id_get_stable_ids(self, tmp_path):
        path = tmp_path / "seed.yaml"
        path.write_text(MINIMAL_SEED)
        seed = SeedConfigManager().load(path)
        assert seed.escalation_rules[0].rule_id == "seed-breach-l1"

    def test_missing_file_gives_empty_seed(self, tmp_path):
        seed = SeedConfigManager().load(tmp_path / "absent.yaml")
        assert seed.policies == []
        assert seed.escalation_rules == []

    def test_reload_keeps_last_good_seed(self, tmp_path):
        path = tmp_path / "seed.yaml"
        path.write_text(MINIMAL_SEED)
        manager = SeedConfigManager()
        manager.load(path)

        path.write_text("policies: [{policy_id: broken}]")
        assert manager.reload() is False
        assert manager.seed.policies[0].policy_id == "kiosk"

    def test_seed_before_load(self):
        with pytest.raises(RuntimeError):
            SeedConfigManager().seed

    @pytest.mark.asyncio
    async def test_static_directory(self, tmp_path):
        path = tmp_path / "seed.yaml"
        path.write_text(MINIMAL_SEED)
        manager = SeedConfigManager()
        manager.load(path)

        directory = StaticUserDirectory(manager)
        assert await directory.resolve_users_by_role([Role.OPS_HEAD, Role.AREA_MANAGER]) == ["u-ops"]


class TestApplySeed:

    @pytest.mark.asyncio
    async def test_apply_is_repeatable(self, database):
        seed = SeedConfigManager().load(SHIPPED_SEED)
        await apply_seed(seed)
        await apply_seed(seed)

        async with get_session_context() as session:
            policies = await SQLAlchemySLAPolicyRepository(session).list()
            rules = await SQLAlchemyEscalationRuleRepository(session).list_all()

        assert [p.policy_id for p in policies] == ["retail-standard"]
        assert len(rules) == 3

    @pytest.mark.asyncio
    async def test_clash_with_api_rule_writes_nothing(self, database, tmp_path):
        async with get_session_context() as session:
            admin = PolicyAdminService(
                SQLAlchemySLAPolicyRepository(session),
                SQLAlchemyHolidayCalendarRepository(session),
                SQLAlchemyEscalationRuleRepository(session),
            )
            await admin.upsert_escalation_rule(
                EscalationRule(rule_id="custom-b1", level=1, trigger=EscalationTrigger.BREACH)
            )

        path = tmp_path / "seed.yaml"
        path.write_text(MINIMAL_SEED)
        with pytest.raises(ValidationException):
            await apply_seed(SeedConfigManager().load(path))

        async with get_session_context() as session:
            rules = await SQLAlchemyEscalationRuleRepository(session).list_all()
            policies = await SQLAlchemySLAPolicyRepository(session).list()

        assert [r.rule_id for r in rules] == ["custom-b1"]
        assert policies == []


def _dispatcher(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("backoff_base", 0)
    return WebhookNotificationDispatcher(
        webhook_url="http://notify.test/hook", http_client=client, **kwargs
    )


class TestWebhookNotificationDispatcher:

    @pytest.mark.asyncio
    async def test_posts_notification(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(202)

        dispatcher = _dispatcher(handler)
        await dispatcher.notify(["u-1"], NotificationChannel.EMAIL, {"ticket_id": "t-1"})
        await dispatcher.close()

        assert len(requests) == 1
        assert b'"channel":"EMAIL"' in requests[0].content.replace(b" ", b"")

    @pytest.mark.asyncio
    async def test_retries_then_opens_breaker(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(503)

        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=60)
        dispatcher = _dispatcher(handler, max_retries=3, circuit_breaker=breaker)
        await dispatcher.notify(["u-1"], NotificationChannel.SMS, {"ticket_id": "t-1"})
        await dispatcher.drain()

        assert len(attempts) == 3
        assert breaker.state == CircuitState.OPEN
        with pytest.raises(NotificationDeliveryFailed):
            await dispatcher.notify(["u-1"], NotificationChannel.SMS, {"ticket_id": "t-1"})
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_without_url_does_nothing(self):
        dispatcher = WebhookNotificationDispatcher(webhook_url="")
        await dispatcher.notify(["u-1"], NotificationChannel.EMAIL, {"ticket_id": "t-1"})
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_crashed_delivery_is_logged(self, caplog):
        dispatcher = _dispatcher(lambda request: httpx.Response(202))
        with caplog.at_level(logging.ERROR):
            await dispatcher.notify(["u-1"], NotificationChannel.EMAIL, {"ticket_id": "t-1", "raw": object()})
            await dispatcher.close()

        assert "Notification delivery crashed" in caplog.messages


class TestCircuitBreaker:

    def test_half_open_after_timeout(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=0)
        breaker.record_failure()
        assert breaker.allow_request()
        breaker.record_failure()
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED


class TestHTTPUserDirectory:

    @pytest.mark.asyncio
    async def test_resolves_roles(self):
        def handler(request):
            members = {"AREA_MANAGER": [{"id": "u-a"}, {"id": "u-b"}], "OPS_HEAD": [{"id": "u-a"}]}
            return httpx.Response(200, json=members[request.url.params["role"]])

        directory = HTTPUserDirectory(
            "http://users.test/", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
        )
        assert await directory.resolve_users_by_role([Role.AREA_MANAGER, Role.OPS_HEAD]) == ["u-a", "u-b"]
        await directory.close()

    @pytest.mark.asyncio
    async def test_lookup_failure(self):
        directory = HTTPUserDirectory(
            "http://users.test",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))),
        )
        with pytest.raises(ExternalServiceException):
            await directory.resolve_users_by_role([Role.OPS_HEAD])
        await directory.close()


class TestEscalationSweepScheduler:

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        async def job():
            pass

        scheduler = EscalationSweepScheduler(interval_seconds=60)
        await scheduler.start(job)
        assert scheduler.is_running
        await scheduler.stop()
        assert not scheduler.is_running
