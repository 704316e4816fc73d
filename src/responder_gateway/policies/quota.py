from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from responder_gateway.domain.interfaces import QuotaLog
from responder_gateway.domain.models import LimitDecision, QuotaRemaining, QuotaTier, QuotaWindowRecord


UNLIMITED = -1


@dataclass(frozen=True)
class TierLimits:
    hourly: int
    daily: int
    monthly: int


TIER_LIMITS: dict[QuotaTier, TierLimits] = {
    QuotaTier.TRIAL: TierLimits(hourly=100, daily=1000, monthly=5000),
    QuotaTier.STARTER: TierLimits(hourly=200, daily=2000, monthly=10000),
    QuotaTier.PROFESSIONAL: TierLimits(hourly=500, daily=10000, monthly=50000),
    QuotaTier.ENTERPRISE: TierLimits(hourly=UNLIMITED, daily=UNLIMITED, monthly=UNLIMITED),
}


def bucket_keys(moment: datetime) -> tuple[str, str, str]:
    return moment.strftime("%Y-%m-%dT%H"), moment.strftime("%Y-%m-%d"), moment.strftime("%Y-%m")


def _remaining(limit: int, count: int) -> int | None:
    if limit == UNLIMITED:
        return None
    return max(limit - count, 0)


def _exceeded(limit: int, count: int) -> bool:
    return limit != UNLIMITED and count >= limit


class QuotaTracker:
    """Per tenant+sender counters over hour/day/month windows.

    Windows follow the server-local wall clock; ``clock`` defaults to the
    naive local ``datetime.now``.
    """

    def __init__(self, log: QuotaLog, clock: Callable[[], datetime] = datetime.now) -> None:
        self._log = log
        self._clock = clock

    def record_message(
        self,
        tenant_id: str,
        sender: str,
        outcome: str | None = None,
        category: str | None = None,
    ) -> QuotaWindowRecord:
        moment = self._clock()
        hour_key, day_key, month_key = bucket_keys(moment)
        record = QuotaWindowRecord(
            tenant_id=tenant_id,
            sender=sender,
            hour_key=hour_key,
            day_key=day_key,
            month_key=month_key,
            outcome=outcome,
            category=category,
            created_at=moment.astimezone(),
        )
        self._log.append(record)
        return record

    def check_limit(self, tenant_id: str, sender: str, tier: QuotaTier) -> LimitDecision:
        limits = TIER_LIMITS[tier]
        hour_key, day_key, month_key = bucket_keys(self._clock())
        hourly = self._log.count_hour(tenant_id, sender, hour_key)
        daily = self._log.count_day(tenant_id, sender, day_key)
        monthly = self._log.count_month(tenant_id, sender, month_key)

        remaining = QuotaRemaining(
            hourly=_remaining(limits.hourly, hourly),
            daily=_remaining(limits.daily, daily),
            monthly=_remaining(limits.monthly, monthly),
        )
        if _exceeded(limits.hourly, hourly):
            return LimitDecision(
                allowed=False,
                window="hourly",
                reason=f"Too many messages this hour ({hourly}/{limits.hourly})",
                remaining=remaining,
            )
        if _exceeded(limits.daily, daily):
            return LimitDecision(
                allowed=False,
                window="daily",
                reason=f"Daily limit reached ({daily}/{limits.daily})",
                remaining=remaining,
            )
        if _exceeded(limits.monthly, monthly):
            return LimitDecision(
                allowed=False,
                window="monthly",
                reason=f"Monthly limit reached ({monthly}/{limits.monthly})",
                remaining=remaining,
            )
        return LimitDecision(allowed=True, remaining=remaining)

    def monthly_usage(self, tenant_id: str, month: str | None = None) -> int:
        month_key = month or bucket_keys(self._clock())[2]
        return self._log.count_tenant_month(tenant_id, month_key)
