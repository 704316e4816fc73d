from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pydantic import ValidationError
import pytest

from responder_gateway.adapters.storage import InMemoryTenantStore
from responder_gateway.cache.tenant_cache import TenantCache
from responder_gateway.domain.errors import (
    IdentityAlreadyRegisteredError,
    InvalidIdentityError,
    TenantNotFoundError,
)
from responder_gateway.domain.models import (
    CreateTenantRequest,
    OperatingHours,
    QuotaTier,
    ResponderEntry,
    SubscriptionState,
    UpdateTenantConfigRequest,
)
from responder_gateway.services.subscriptions import SubscriptionService, add_months
from responder_gateway.services.tenants import TenantService


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _services(now: datetime | None = None) -> tuple[TenantService, SubscriptionService, _Clock]:
    clock = _Clock(now or datetime(2026, 3, 4, 12, tzinfo=timezone.utc))
    store = InMemoryTenantStore()
    cache = TenantCache(store.get_tenant)
    tenants = TenantService(store, cache, clock=clock)
    return tenants, SubscriptionService(tenants, clock=clock), clock


def _create(tenants: TenantService, tenant_id: str = "t1", identities: list[str] | None = None):
    return tenants.create_tenant(
        CreateTenantRequest(
            name="Acme",
            identities=identities or ["08000000001"],
            responders=[ResponderEntry(keywords=["price"], answer="₦5,000/month")],
            operator_identities=["08099999999"],
        ),
        tenant_id=tenant_id,
    )


def test_create_tenant_normalizes_identities_and_starts_trial() -> None:
    tenants, _, clock = _services()
    tenant = _create(tenants)

    assert tenant.identities == ["+2348000000001"]
    assert tenant.operator_identities == ["+2348099999999"]
    assert tenant.subscription.state == SubscriptionState.TRIAL
    assert tenant.subscription.trial_ends_at == clock.now + timedelta(days=7)
    assert tenant.hours.closed_weekdays == [5, 6]


def test_create_tenant_rejects_taken_identity() -> None:
    tenants, _, _ = _services()
    _create(tenants, "t1", ["08000000001"])
    with pytest.raises(IdentityAlreadyRegisteredError, match="already registered"):
        _create(tenants, "t2", ["+2348000000001"])


def test_create_tenant_rejects_malformed_identity() -> None:
    tenants, _, _ = _services()
    with pytest.raises(InvalidIdentityError):
        _create(tenants, "t1", ["not-a-number"])


def test_update_config_is_visible_on_next_read() -> None:
    tenants, _, _ = _services()
    _create(tenants)
    assert tenants.get("t1").responders[0].answer == "₦5,000/month"

    tenants.update_config(
        "t1",
        UpdateTenantConfigRequest(
            responders=[ResponderEntry(keywords=["price"], answer="₦7,500/month")],
            hours=OperatingHours(start_hour=8, end_hour=20),
        ),
    )

    reread = tenants.get("t1")
    assert reread.responders[0].answer == "₦7,500/month"
    assert reread.hours.start_hour == 8


def test_unknown_timezone_is_rejected_before_it_reaches_the_store() -> None:
    tenants, _, _ = _services()
    _create(tenants)

    with pytest.raises(ValidationError):
        UpdateTenantConfigRequest.model_validate({"hours": {"timezone": "Mars/Olympus"}})

    tenants.update_config("t1", UpdateTenantConfigRequest(hours=OperatingHours(timezone="Europe/London")))
    assert tenants.get("t1").hours.timezone == "Europe/London"


def test_writes_invalidate_cache_before_listeners_run() -> None:
    tenants, _, _ = _services()
    _create(tenants)
    tenants.get("t1")
    seen: list[bool] = []
    tenants.subscribe(lambda tenant: seen.append(tenant.tenant_id in tenants.cache))

    tenants.update_config("t1", UpdateTenantConfigRequest(name="Renamed"))

    assert seen == [False]
    assert tenants.get("t1").name == "Renamed"


def test_identity_add_and_remove() -> None:
    tenants, _, _ = _services()
    _create(tenants)

    tenant = tenants.add_identity("t1", "08000000002")
    assert tenant.identities == ["+2348000000001", "+2348000000002"]

    tenant = tenants.remove_identity("t1", "+2348000000001")
    assert tenant.identities == ["+2348000000002"]

    with pytest.raises(InvalidIdentityError):
        tenants.remove_identity("t1", "+2348000000002")


def test_require_unknown_tenant() -> None:
    tenants, _, _ = _services()
    with pytest.raises(TenantNotFoundError):
        tenants.require("ghost")


def test_expire_lapsed_moves_trial_and_active_to_expired() -> None:
    tenants, subscriptions, clock = _services()
    _create(tenants, "t1", ["08000000001"])
    _create(tenants, "t2", ["08000000002"])
    _create(tenants, "t3", ["08000000003"])
    subscriptions.activate("t2", tier=QuotaTier.STARTER, amount=5000, reference="ref-1")

    clock.now += timedelta(days=8)
    assert subscriptions.expire_lapsed() == ["t1", "t3"]
    assert tenants.get("t1").subscription.state == SubscriptionState.EXPIRED
    assert tenants.get("t2").subscription.state == SubscriptionState.ACTIVE

    clock.now += timedelta(days=31)
    assert subscriptions.expire_lapsed() == ["t2"]


def test_activate_sets_tier_and_period() -> None:
    tenants, subscriptions, clock = _services()
    _create(tenants)

    tenant = subscriptions.activate("t1", tier=QuotaTier.PROFESSIONAL, amount=15000, reference="pay-1", months=2)

    assert tenant.quota_tier == QuotaTier.PROFESSIONAL
    assert tenant.subscription.state == SubscriptionState.ACTIVE
    assert tenant.subscription.period_ends_at == datetime(2026, 5, 4, 12, tzinfo=timezone.utc)
    assert tenant.subscription.last_payment_reference == "pay-1"
    assert tenants.get("t1").quota_tier == QuotaTier.PROFESSIONAL


def test_extend_builds_on_remaining_period() -> None:
    tenants, subscriptions, _ = _services()
    _create(tenants)
    subscriptions.activate("t1", tier=QuotaTier.STARTER, amount=5000, reference="pay-1")

    tenant = subscriptions.extend("t1", months=1)
    assert tenant.subscription.period_ends_at == datetime(2026, 5, 4, 12, tzinfo=timezone.utc)


def test_cancel_and_restart_trial() -> None:
    tenants, subscriptions, clock = _services()
    _create(tenants)

    assert subscriptions.cancel("t1").subscription.state == SubscriptionState.CANCELLED
    tenant = subscriptions.start_trial("t1", days=3)
    assert tenant.subscription.state == SubscriptionState.TRIAL
    assert tenant.subscription.trial_ends_at == clock.now + timedelta(days=3)


def test_expiring_soon() -> None:
    tenants, subscriptions, clock = _services()
    _create(tenants, "t1", ["08000000001"])
    _create(tenants, "t2", ["08000000002"])
    subscriptions.activate("t2", tier=QuotaTier.STARTER, amount=5000, reference="pay-1")

    clock.now += timedelta(days=5)
    assert [tenant.tenant_id for tenant in subscriptions.expiring_soon(days=3)] == ["t1"]


def test_add_months_clamps_day() -> None:
    assert add_months(datetime(2026, 1, 31), 1) == datetime(2026, 2, 28)
    assert add_months(datetime(2026, 11, 15), 3) == datetime(2027, 2, 15)
