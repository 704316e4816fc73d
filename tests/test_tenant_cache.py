from __future__ import annotations

from responder_gateway.cache.tenant_cache import TenantCache
from responder_gateway.domain.models import Tenant


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class _Loader:
    def __init__(self) -> None:
        self.tenants: dict[str, Tenant] = {}
        self.calls: list[str] = []

    def __call__(self, tenant_id: str) -> Tenant | None:
        self.calls.append(tenant_id)
        tenant = self.tenants.get(tenant_id)
        return tenant.model_copy(deep=True) if tenant is not None else None


def _tenant(tenant_id: str, name: str = "Acme") -> Tenant:
    return Tenant(tenant_id=tenant_id, name=name, identities=[f"+23480000000{tenant_id[-1]}"])


def test_read_through_then_hit() -> None:
    loader = _Loader()
    loader.tenants["t1"] = _tenant("t1")
    cache = TenantCache(loader, ttl_seconds=300, clock=_Clock())

    assert cache.get("t1").name == "Acme"
    assert cache.get("t1").name == "Acme"
    assert loader.calls == ["t1"]
    assert cache.stats() == {"hits": 1, "misses": 1, "size": 1, "hit_rate": 0.5}


def test_entry_is_not_trusted_past_ttl() -> None:
    loader = _Loader()
    loader.tenants["t1"] = _tenant("t1")
    clock = _Clock()
    cache = TenantCache(loader, ttl_seconds=300, clock=clock)

    cache.get("t1")
    loader.tenants["t1"] = _tenant("t1", name="Renamed")
    clock.now += 299
    assert cache.get("t1").name == "Acme"
    clock.now += 1
    assert cache.get("t1").name == "Renamed"


def test_invalidate_forces_reload() -> None:
    loader = _Loader()
    loader.tenants["t1"] = _tenant("t1")
    cache = TenantCache(loader, clock=_Clock())

    cache.get("t1")
    loader.tenants["t1"] = _tenant("t1", name="Updated")
    cache.invalidate("t1")
    assert cache.get("t1").name == "Updated"


def test_missing_tenant_is_not_cached() -> None:
    loader = _Loader()
    cache = TenantCache(loader, clock=_Clock())

    assert cache.get("ghost") is None
    assert "ghost" not in cache
    assert cache.get("ghost") is None
    assert loader.calls == ["ghost", "ghost"]


def test_capacity_evicts_single_oldest_entry() -> None:
    loader = _Loader()
    for index in range(1, 4):
        loader.tenants[f"t{index}"] = _tenant(f"t{index}")
    clock = _Clock()
    cache = TenantCache(loader, max_entries=2, clock=clock)

    cache.get("t1")
    clock.now += 1
    cache.get("t2")
    clock.now += 1
    cache.get("t3")

    assert "t1" not in cache
    assert "t2" in cache
    assert "t3" in cache
    assert cache.stats()["size"] == 2


def test_sweep_removes_only_expired_entries() -> None:
    loader = _Loader()
    loader.tenants["t1"] = _tenant("t1")
    loader.tenants["t2"] = _tenant("t2")
    clock = _Clock()
    cache = TenantCache(loader, ttl_seconds=100, clock=clock)

    cache.get("t1")
    clock.now += 60
    cache.get("t2")
    clock.now += 50

    assert cache.sweep() == 1
    assert "t1" not in cache
    assert "t2" in cache


def test_invalidation_during_load_is_not_overwritten_by_stale_result() -> None:
    clock = _Clock()
    stale = _tenant("t1", name="Stale")
    cache: TenantCache

    def loader(tenant_id: str) -> Tenant | None:
        # a writer lands between the miss and the load completing
        cache.invalidate(tenant_id)
        return stale

    cache = TenantCache(loader, clock=clock)
    assert cache.get("t1").name == "Stale"
    assert "t1" not in cache


def test_returned_snapshots_are_copies() -> None:
    loader = _Loader()
    loader.tenants["t1"] = _tenant("t1")
    cache = TenantCache(loader, clock=_Clock())

    first = cache.get("t1")
    first.name = "mutated"
    assert cache.get("t1").name == "Acme"
