from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from responder_gateway.adapters.storage import InMemoryQuotaLog, InMemoryTenantStore
from responder_gateway.cache.tenant_cache import TenantCache
from responder_gateway.config import Settings
from responder_gateway.domain.errors import DeliveryError
from responder_gateway.domain.models import (
    CreateTenantRequest,
    InboundEvent,
    ResponderEntry,
    SessionState,
    SessionStatus,
    SubscriptionState,
)
from responder_gateway.policies.quota import QuotaTracker
from responder_gateway.routing.gates import RENEWAL_NOTICE, RATE_LIMIT_NOTICE, START_ACK, STOP_ACK
from responder_gateway.routing.matcher import DEFAULT_RESPONSE
from responder_gateway.routing.pipeline import PipelineOutcome, RoutingPipeline
from responder_gateway.services.subscriptions import SubscriptionService
from responder_gateway.services.tenants import TenantService


CUSTOMER = "2348011111111@s.whatsapp.net"
OPERATOR = "2348099999999@s.whatsapp.net"


def _settings(**overrides) -> Settings:
    base = Settings(
        app_env="dev",
        tenant_store_dsn="",
        quota_backend="memory",
        quota_redis_url="",
        quota_redis_key_prefix="gateway:quota",
        quota_redis_fail_open=True,
        credentials_dir="",
        session_transport_factory="",
        pairing_timeout_seconds=1,
        reconnect_delay_seconds=0.01,
        sync_failure_reconnect_delay_seconds=0.01,
        health_probe_timeout_seconds=0.2,
        health_recent_activity_seconds=300,
        send_timeout_seconds=1,
        tenant_cache_ttl_seconds=300,
        tenant_cache_max_entries=100,
        cache_sweep_interval_seconds=600,
        subscription_check_interval_seconds=3600,
        echo_suppression_seconds=10,
        closed_weekdays=(5, 6),
        default_country_code="234",
        gateway_autostart=False,
        jwt_shared_secret="",
        jwt_algorithm="HS256",
        log_level="INFO",
    )
    return Settings(**{**base.__dict__, **overrides})


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class _FakeSessions:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail_with: Exception | None = None

    async def send(self, tenant_id: str, address: str, text: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((tenant_id, address, text))

    async def status(self, tenant_id: str) -> SessionStatus:
        return SessionStatus(tenant_id=tenant_id, state=SessionState.CONNECTED)


class _Harness:
    def __init__(self) -> None:
        # Wednesday 13:00 in Lagos
        self.clock = _Clock(datetime(2026, 3, 4, 12, tzinfo=timezone.utc))
        self.monotonic = 1000.0
        self.store = InMemoryTenantStore()
        self.cache = TenantCache(self.store.get_tenant)
        self.tenants = TenantService(self.store, self.cache, clock=self.clock)
        self.subscriptions = SubscriptionService(self.tenants, clock=self.clock)
        self.quota_log = InMemoryQuotaLog()
        self.quota = QuotaTracker(self.quota_log, clock=lambda: datetime(2026, 3, 4, 13))
        self.sessions = _FakeSessions()
        self.pipeline = RoutingPipeline(
            _settings(),
            self.tenants,
            self.subscriptions,
            self.quota,
            self.sessions,
            clock=self.clock,
            monotonic=lambda: self.monotonic,
        )
        self.tenants.create_tenant(
            CreateTenantRequest(
                name="Acme Stores",
                identities=["08000000001"],
                responders=[
                    ResponderEntry(keywords=["price", "cost"], answer="₦5,000 per bag", category="pricing"),
                    ResponderEntry(keywords=["location"], answer="12 Marina Road, Lagos", category="location"),
                ],
                operator_identities=["08099999999"],
            ),
            tenant_id="t1",
        )

    def handle(self, text: str, sender: str = CUSTOMER, tenant_id: str = "t1", is_group: bool = False):
        event = InboundEvent(tenant_id=tenant_id, sender=sender, text=text, is_group=is_group)
        return asyncio.run(self.pipeline.handle(event))


def test_keyword_match_replies_to_raw_sender_address_and_records() -> None:
    harness = _Harness()

    result = harness.handle("How much does it COST?")

    assert result.outcome == PipelineOutcome.ANSWERED
    assert result.category == "pricing"
    assert harness.sessions.sent == [("t1", CUSTOMER, "₦5,000 per bag")]
    assert len(harness.quota_log.records) == 1
    record = harness.quota_log.records[0]
    assert record.sender == "+2348011111111"
    assert record.outcome == "answered"
    assert record.category == "pricing"


def test_unmatched_text_gets_default_reply() -> None:
    harness = _Harness()

    result = harness.handle("do you deliver on sundays")

    assert result.outcome == PipelineOutcome.DEFAULT_REPLY
    assert harness.sessions.sent[-1][2] == DEFAULT_RESPONSE


def test_after_hours_uses_fallback_message() -> None:
    harness = _Harness()
    harness.clock.now = datetime(2026, 3, 4, 19, tzinfo=timezone.utc)

    result = harness.handle("price")

    assert result.outcome == PipelineOutcome.AFTER_HOURS
    assert harness.sessions.sent[-1][2] == harness.tenants.get("t1").fallback_message


def test_closed_weekday_is_after_hours() -> None:
    harness = _Harness()
    harness.clock.now = datetime(2026, 3, 7, 12, tzinfo=timezone.utc)

    assert harness.handle("price").outcome == PipelineOutcome.AFTER_HOURS


def test_lapsed_trial_is_blocked_and_expired() -> None:
    harness = _Harness()
    harness.tenants.get("t1")
    harness.clock.now += timedelta(days=8)

    result = harness.handle("price")

    assert result.outcome == PipelineOutcome.SUBSCRIPTION_BLOCKED
    assert harness.sessions.sent[-1][2] == RENEWAL_NOTICE
    assert harness.store.get_tenant("t1").subscription.state == SubscriptionState.EXPIRED
    assert harness.tenants.get("t1").subscription.state == SubscriptionState.EXPIRED


def test_cancelled_subscription_blocks_without_expiring() -> None:
    harness = _Harness()
    harness.subscriptions.cancel("t1")

    result = harness.handle("price")

    assert result.outcome == PipelineOutcome.SUBSCRIPTION_BLOCKED
    assert harness.store.get_tenant("t1").subscription.state == SubscriptionState.CANCELLED


def test_quota_exhausted_sends_rate_limit_notice() -> None:
    harness = _Harness()
    for _ in range(100):
        harness.quota.record_message("t1", "+2348011111111", "answered")

    result = harness.handle("price")

    assert result.outcome == PipelineOutcome.RATE_LIMITED
    assert harness.sessions.sent[-1][2] == RATE_LIMIT_NOTICE
    other = harness.handle("price", sender="2348022222222@s.whatsapp.net")
    assert other.outcome == PipelineOutcome.ANSWERED


def test_stop_and_start_are_acknowledged_without_recording() -> None:
    harness = _Harness()

    assert harness.handle(" stop ").outcome == PipelineOutcome.UNSUBSCRIBED
    assert harness.handle("START").outcome == PipelineOutcome.RESUBSCRIBED
    assert [text for _, _, text in harness.sessions.sent] == [STOP_ACK, START_ACK]
    assert harness.quota_log.records == []


def test_operator_status_report() -> None:
    harness = _Harness()

    result = harness.handle("STATUS", sender=OPERATOR)

    assert result.outcome == PipelineOutcome.OPERATOR_STATUS
    assert result.reply.startswith("📊 Status")
    assert "Connection: connected" in result.reply
    assert "FAQs: 2" in result.reply
    assert "Subscription: trial" in result.reply


def test_status_from_customer_is_not_a_command() -> None:
    harness = _Harness()

    assert harness.handle("STATUS").outcome == PipelineOutcome.DEFAULT_REPLY


def test_operator_reload_reads_fresh_record() -> None:
    harness = _Harness()
    harness.tenants.get("t1")
    tenant = harness.store.get_tenant("t1")
    tenant.responders = tenant.responders[:1]
    harness.store.upsert_tenant(tenant)

    result = harness.handle("/reload", sender=OPERATOR)

    assert result.outcome == PipelineOutcome.OPERATOR_RELOAD
    assert result.reply == "✅ FAQs reloaded (1 entries)."
    assert len(harness.tenants.get("t1").responders) == 1


def test_group_self_invalid_and_unknown_events_are_dropped() -> None:
    harness = _Harness()

    assert harness.handle("price", sender="120363000000@g.us").outcome == PipelineOutcome.IGNORED_GROUP
    assert harness.handle("price", is_group=True).outcome == PipelineOutcome.IGNORED_GROUP
    assert (
        harness.handle("price", sender="2348000000001@s.whatsapp.net").outcome == PipelineOutcome.IGNORED_SELF
    )
    assert harness.handle("price", sender="status@broadcast").outcome == PipelineOutcome.IGNORED_INVALID_SENDER
    assert harness.handle("price", tenant_id="ghost").outcome == PipelineOutcome.UNRESOLVED
    assert harness.sessions.sent == []
    assert harness.quota_log.records == []


def test_echo_of_recent_reply_is_suppressed() -> None:
    harness = _Harness()
    harness.handle("location")

    echoed = harness.handle("12 Marina Road, Lagos")
    assert echoed.outcome == PipelineOutcome.IGNORED_ECHO

    harness.monotonic += 11
    assert harness.handle("12 Marina Road, Lagos").outcome != PipelineOutcome.IGNORED_ECHO


def test_send_failure_still_records_outcome() -> None:
    harness = _Harness()
    harness.sessions.fail_with = DeliveryError("send failed")

    result = harness.handle("price")

    assert result.outcome == PipelineOutcome.ANSWERED
    assert len(harness.quota_log.records) == 1
