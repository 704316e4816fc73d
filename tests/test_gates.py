from __future__ import annotations

from datetime import datetime, timedelta, timezone

from responder_gateway.domain.models import OperatingHours, Subscription, SubscriptionState, Tenant
from responder_gateway.routing.gates import Command, check_subscription, is_open, is_operator, parse_command

# Africa/Lagos is UTC+1 with no DST
_LAGOS = OperatingHours(start_hour=9, end_hour=17, timezone="Africa/Lagos")


def _utc_for_lagos(year: int, month: int, day: int, hour: int) -> datetime:
    return datetime(year, month, day, hour, 0, tzinfo=timezone.utc) - timedelta(hours=1)


def test_open_during_business_hours_on_weekday() -> None:
    # 2026-03-04 is a Wednesday
    assert is_open(_LAGOS, _utc_for_lagos(2026, 3, 4, 10))
    assert is_open(_LAGOS, _utc_for_lagos(2026, 3, 4, 9))


def test_closed_at_end_hour_and_in_the_evening() -> None:
    assert not is_open(_LAGOS, _utc_for_lagos(2026, 3, 4, 17))
    assert not is_open(_LAGOS, _utc_for_lagos(2026, 3, 4, 20))


def test_closed_on_weekend_days() -> None:
    # Saturday and Sunday
    assert not is_open(_LAGOS, _utc_for_lagos(2026, 3, 7, 10))
    assert not is_open(_LAGOS, _utc_for_lagos(2026, 3, 8, 10))


def test_custom_closed_weekdays() -> None:
    hours = OperatingHours(start_hour=9, end_hour=17, timezone="Africa/Lagos", closed_weekdays=[4])
    assert not is_open(hours, _utc_for_lagos(2026, 3, 6, 10))
    assert is_open(hours, _utc_for_lagos(2026, 3, 7, 10))


def test_overnight_window() -> None:
    hours = OperatingHours(start_hour=22, end_hour=6, timezone="Africa/Lagos", closed_weekdays=[])
    assert is_open(hours, _utc_for_lagos(2026, 3, 4, 23))
    assert is_open(hours, _utc_for_lagos(2026, 3, 4, 2))
    assert not is_open(hours, _utc_for_lagos(2026, 3, 4, 12))


def test_equal_start_and_end_is_always_open() -> None:
    hours = OperatingHours(start_hour=0, end_hour=0, timezone="Africa/Lagos", closed_weekdays=[])
    assert is_open(hours, _utc_for_lagos(2026, 3, 4, 3))


def test_parse_command() -> None:
    assert parse_command(" status ") == Command.STATUS
    assert parse_command("/reload") == Command.RELOAD
    assert parse_command("STOP") == Command.STOP
    assert parse_command("start") == Command.START
    assert parse_command("stop sending me things") is None
    assert parse_command("") is None


def test_operator_predicate_is_exact() -> None:
    tenant = Tenant(tenant_id="t1", name="Acme", identities=["+2348000000001"], operator_identities=["+2348099999999"])
    assert is_operator(tenant, "+2348099999999")
    assert not is_operator(tenant, "+2348099999998")


def test_subscription_decisions() -> None:
    now = datetime(2026, 3, 4, 12, tzinfo=timezone.utc)
    live_trial = Tenant(
        tenant_id="t1",
        name="Acme",
        identities=["+2348000000001"],
        subscription=Subscription(state=SubscriptionState.TRIAL, trial_ends_at=now + timedelta(days=1)),
    )
    lapsed_trial = live_trial.model_copy(
        update={"subscription": Subscription(state=SubscriptionState.TRIAL, trial_ends_at=now - timedelta(days=1))}
    )
    lapsed_active = live_trial.model_copy(
        update={"subscription": Subscription(state=SubscriptionState.ACTIVE, period_ends_at=now - timedelta(seconds=1))}
    )
    cancelled = live_trial.model_copy(update={"subscription": Subscription(state=SubscriptionState.CANCELLED)})

    assert check_subscription(live_trial, now).allowed
    assert check_subscription(lapsed_trial, now).lapsed
    assert check_subscription(lapsed_active, now).lapsed
    decision = check_subscription(cancelled, now)
    assert not decision.allowed
    assert not decision.lapsed


def test_only_trial_and_active_permit_service() -> None:
    now = datetime(2026, 3, 4, 12, tzinfo=timezone.utc)
    assert [state for state in SubscriptionState if state.permits_service] == [
        SubscriptionState.TRIAL,
        SubscriptionState.ACTIVE,
    ]
    # an already expired tenant is refused outright, not reported as lapsing again
    expired = Tenant(
        tenant_id="t1",
        name="Acme",
        identities=["+2348000000001"],
        subscription=Subscription(state=SubscriptionState.EXPIRED, period_ends_at=now - timedelta(days=3)),
    )
    decision = check_subscription(expired, now)
    assert not decision.allowed
    assert not decision.lapsed
