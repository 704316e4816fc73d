from __future__ import annotations

import calendar
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable

from responder_gateway.domain.models import QuotaTier, SubscriptionState, Tenant
from responder_gateway.routing.gates import check_subscription
from responder_gateway.services.tenants import TenantService
from responder_gateway.telemetry import log_event


_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class SubscriptionService:
    """Subscription transitions; all writes go through :class:`TenantService`."""

    def __init__(self, tenants: TenantService, clock: Callable[[], datetime] = _utcnow) -> None:
        self.tenants = tenants
        self._clock = clock

    def expire(self, tenant_id: str) -> Tenant:
        tenant = self.tenants.set_subscription_state(tenant_id, SubscriptionState.EXPIRED)
        log_event(_logger, "subscription_expired", tenant_id=tenant_id)
        return tenant

    def expire_lapsed(self, now: datetime | None = None) -> list[str]:
        moment = now or self._clock()
        expired: list[str] = []
        for tenant in self.tenants.list_by_subscription_states({SubscriptionState.TRIAL, SubscriptionState.ACTIVE}):
            if check_subscription(tenant, moment).lapsed:
                self.expire(tenant.tenant_id)
                expired.append(tenant.tenant_id)
        if expired:
            _logger.info("expired %d lapsed subscription(s)", len(expired))
        return expired

    def start_trial(self, tenant_id: str, days: int = 7) -> Tenant:
        tenant = self.tenants.require(tenant_id, fresh=True)
        now = self._clock()
        subscription = tenant.subscription.model_copy(
            update={
                "state": SubscriptionState.TRIAL,
                "trial_started_at": now,
                "trial_ends_at": now + timedelta(days=days),
            }
        )
        return self.tenants.update_subscription(tenant_id, subscription)

    def activate(
        self,
        tenant_id: str,
        tier: QuotaTier,
        amount: float,
        reference: str,
        months: int = 1,
    ) -> Tenant:
        tenant = self.tenants.require(tenant_id, fresh=True)
        now = self._clock()
        subscription = tenant.subscription.model_copy(
            update={
                "state": SubscriptionState.ACTIVE,
                "period_started_at": now,
                "period_ends_at": add_months(now, months),
                "last_payment_at": now,
                "last_payment_amount": amount,
                "last_payment_reference": reference,
            }
        )
        log_event(_logger, "subscription_activated", tenant_id=tenant_id, tier=tier.value, reference=reference)
        return self.tenants.update_subscription(tenant_id, subscription, quota_tier=tier)

    def extend(self, tenant_id: str, months: int = 1) -> Tenant:
        tenant = self.tenants.require(tenant_id, fresh=True)
        now = self._clock()
        current_end = tenant.subscription.period_ends_at
        base = current_end if current_end is not None and current_end > now else now
        subscription = tenant.subscription.model_copy(
            update={
                "state": SubscriptionState.ACTIVE,
                "period_started_at": tenant.subscription.period_started_at or now,
                "period_ends_at": add_months(base, months),
            }
        )
        return self.tenants.update_subscription(tenant_id, subscription)

    def cancel(self, tenant_id: str) -> Tenant:
        tenant = self.tenants.set_subscription_state(tenant_id, SubscriptionState.CANCELLED)
        log_event(_logger, "subscription_cancelled", tenant_id=tenant_id)
        return tenant

    def expiring_soon(self, days: int = 3) -> list[Tenant]:
        now = self._clock()
        horizon = now + timedelta(days=days)
        expiring: list[Tenant] = []
        for tenant in self.tenants.list_by_subscription_states({SubscriptionState.TRIAL, SubscriptionState.ACTIVE}):
            subscription = tenant.subscription
            if subscription.state == SubscriptionState.TRIAL:
                ends_at = subscription.trial_ends_at
            else:
                ends_at = subscription.period_ends_at
            if ends_at is not None and now < ends_at <= horizon:
                expiring.append(tenant)
        return expiring
