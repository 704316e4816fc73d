from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
import time
from typing import Callable

from responder_gateway.domain.models import Tenant
from responder_gateway.telemetry import log_event


_logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    tenant: Tenant
    loaded_at: float


class TenantCache:
    """Read-through TTL cache in front of the tenant store.

    A per-tenant generation counter is bumped on every invalidation so that a
    load that started before an invalidation never repopulates stale data.
    """

    def __init__(
        self,
        loader: Callable[[str], Tenant | None],
        ttl_seconds: float = 300,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(max_entries, 1)
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._generations: dict[str, int] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, tenant_id: str) -> Tenant | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(tenant_id)
            if entry is not None and now - entry.loaded_at < self.ttl_seconds:
                self.hits += 1
                return entry.tenant.model_copy(deep=True)
            if entry is not None:
                del self._entries[tenant_id]
            self.misses += 1
            generation = self._generations.get(tenant_id, 0)

        tenant = self._loader(tenant_id)
        if tenant is None:
            return None

        with self._lock:
            if self._generations.get(tenant_id, 0) == generation:
                if tenant_id not in self._entries and len(self._entries) >= self.max_entries:
                    self._evict_oldest()
                self._entries[tenant_id] = _Entry(tenant=tenant.model_copy(deep=True), loaded_at=self._clock())
        return tenant

    def invalidate(self, tenant_id: str) -> None:
        with self._lock:
            self._entries.pop(tenant_id, None)
            self._generations[tenant_id] = self._generations.get(tenant_id, 0) + 1

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            for tenant_id in list(self._generations):
                self._generations[tenant_id] += 1

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [
                tenant_id
                for tenant_id, entry in self._entries.items()
                if now - entry.loaded_at >= self.ttl_seconds
            ]
            for tenant_id in expired:
                del self._entries[tenant_id]
        if expired:
            log_event(_logger, "cache_swept", removed=len(expired))
        return len(expired)

    def stats(self) -> dict[str, float | int]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "hits": self.hits,
                "misses": self.misses,
                "size": len(self._entries),
                "hit_rate": round(self.hits / total, 4) if total else 0.0,
            }

    def __contains__(self, tenant_id: str) -> bool:
        with self._lock:
            return tenant_id in self._entries

    def _evict_oldest(self) -> None:
        oldest = min(self._entries, key=lambda tenant_id: self._entries[tenant_id].loaded_at)
        del self._entries[oldest]
