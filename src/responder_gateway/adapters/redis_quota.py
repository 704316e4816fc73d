from __future__ import annotations

import logging

from responder_gateway.domain.interfaces import QuotaLog
from responder_gateway.domain.models import QuotaWindowRecord


_logger = logging.getLogger(__name__)

_HOUR_TTL_SECONDS = 2 * 3600
_DAY_TTL_SECONDS = 2 * 86400
_MONTH_TTL_SECONDS = 32 * 86400


class RedisQuotaLog(QuotaLog):
    """Quota log backed by a Redis stream plus per-bucket counters.

    The stream is the append-only record; the counters exist so that window
    checks stay O(1). Counter reads fail open when ``fail_open`` is set, the
    same way the fixed-window limiter does. Appends always raise on failure
    so an event is never silently dropped.
    """

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "gateway:quota",
        fail_open: bool = True,
        redis_client: object | None = None,
    ) -> None:
        self.key_prefix = key_prefix.strip() or "gateway:quota"
        self.fail_open = fail_open

        if redis_client is not None:
            self._redis = redis_client
            return

        try:
            import redis
        except ModuleNotFoundError as err:
            raise RuntimeError("Redis quota log requires 'redis' package") from err

        self._redis = redis.Redis.from_url(redis_url)

    def append(self, record: QuotaWindowRecord) -> None:
        fields = {
            "tenant_id": record.tenant_id,
            "sender": record.sender,
            "hour_key": record.hour_key,
            "day_key": record.day_key,
            "month_key": record.month_key,
            "outcome": record.outcome or "",
            "category": record.category or "",
            "created_at": record.created_at.isoformat(),
        }
        self._redis.xadd(f"{self.key_prefix}:events", fields)
        self._bump(self._key("h", record.tenant_id, record.sender, record.hour_key), _HOUR_TTL_SECONDS)
        self._bump(self._key("d", record.tenant_id, record.sender, record.day_key), _DAY_TTL_SECONDS)
        self._bump(self._key("m", record.tenant_id, record.sender, record.month_key), _MONTH_TTL_SECONDS)
        self._bump(self._key("tm", record.tenant_id, "*", record.month_key), _MONTH_TTL_SECONDS)

    def count_hour(self, tenant_id: str, sender: str, hour_key: str) -> int:
        return self._read(self._key("h", tenant_id, sender, hour_key))

    def count_day(self, tenant_id: str, sender: str, day_key: str) -> int:
        return self._read(self._key("d", tenant_id, sender, day_key))

    def count_month(self, tenant_id: str, sender: str, month_key: str) -> int:
        return self._read(self._key("m", tenant_id, sender, month_key))

    def count_tenant_month(self, tenant_id: str, month_key: str) -> int:
        return self._read(self._key("tm", tenant_id, "*", month_key))

    def _key(self, window: str, tenant_id: str, sender: str, bucket: str) -> str:
        return f"{self.key_prefix}:{window}:{tenant_id}:{sender}:{bucket}"

    def _bump(self, key: str, ttl_seconds: int) -> None:
        count = int(self._redis.incr(key))
        if count == 1:
            self._redis.expire(key, ttl_seconds)

    def _read(self, key: str) -> int:
        try:
            raw = self._redis.get(key)
        except Exception as err:
            if self.fail_open:
                _logger.warning("redis_quota_fail_open key=%s err=%s", key, err)
                return 0
            raise
        return int(raw) if raw is not None else 0
