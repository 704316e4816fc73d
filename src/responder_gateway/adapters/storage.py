from __future__ import annotations

from collections import Counter
import threading

from responder_gateway.domain.errors import IdentityAlreadyRegisteredError, TenantAlreadyExistsError
from responder_gateway.domain.interfaces import ConnectionStatusStore, QuotaLog, TenantStore
from responder_gateway.domain.models import QuotaWindowRecord, SessionState, SessionStatus, SubscriptionState, Tenant


class InMemoryTenantStore(TenantStore):
    def __init__(self) -> None:
        self._tenants: dict[str, Tenant] = {}
        self._identity_index: dict[str, str] = {}
        self._lock = threading.Lock()

    def create_tenant(self, tenant: Tenant) -> None:
        with self._lock:
            if tenant.tenant_id in self._tenants:
                raise TenantAlreadyExistsError(tenant.tenant_id)
            self._check_identities(tenant)
            self._write(tenant)

    def upsert_tenant(self, tenant: Tenant) -> None:
        with self._lock:
            self._check_identities(tenant)
            previous = self._tenants.get(tenant.tenant_id)
            if previous is not None:
                for identity in previous.identities:
                    self._identity_index.pop(identity, None)
            self._write(tenant)

    def get_tenant(self, tenant_id: str) -> Tenant | None:
        with self._lock:
            tenant = self._tenants.get(tenant_id)
            return tenant.model_copy(deep=True) if tenant is not None else None

    def find_by_identity(self, identity: str) -> Tenant | None:
        with self._lock:
            tenant_id = self._identity_index.get(identity)
            if tenant_id is None:
                return None
            return self._tenants[tenant_id].model_copy(deep=True)

    def list_tenants(self, states: set[SubscriptionState] | None = None) -> list[Tenant]:
        with self._lock:
            tenants = [
                tenant.model_copy(deep=True)
                for tenant in self._tenants.values()
                if states is None or tenant.subscription.state in states
            ]
        return sorted(tenants, key=lambda tenant: tenant.tenant_id)

    def _check_identities(self, tenant: Tenant) -> None:
        for identity in tenant.identities:
            owner = self._identity_index.get(identity)
            if owner is not None and owner != tenant.tenant_id:
                raise IdentityAlreadyRegisteredError(identity)

    def _write(self, tenant: Tenant) -> None:
        stored = tenant.model_copy(deep=True)
        self._tenants[stored.tenant_id] = stored
        for identity in stored.identities:
            self._identity_index[identity] = stored.tenant_id


class InMemoryConnectionStatusStore(ConnectionStatusStore):
    def __init__(self) -> None:
        self._statuses: dict[str, SessionStatus] = {}
        self._lock = threading.Lock()

    def save_status(self, status: SessionStatus) -> None:
        with self._lock:
            self._statuses[status.tenant_id] = status.model_copy()

    def get_status(self, tenant_id: str) -> SessionStatus | None:
        with self._lock:
            status = self._statuses.get(tenant_id)
            return status.model_copy() if status is not None else None

    def list_statuses(self, states: set[SessionState] | None = None) -> list[SessionStatus]:
        with self._lock:
            return [
                self._statuses[tenant_id].model_copy()
                for tenant_id in sorted(self._statuses)
                if states is None or self._statuses[tenant_id].state in states
            ]

    def mark_notified(self, tenant_id: str) -> bool:
        with self._lock:
            status = self._statuses.get(tenant_id)
            if status is None:
                return False
            status.notified = True
            return True


class InMemoryQuotaLog(QuotaLog):
    def __init__(self) -> None:
        self.records: list[QuotaWindowRecord] = []
        self._hours: Counter[tuple[str, str, str]] = Counter()
        self._days: Counter[tuple[str, str, str]] = Counter()
        self._months: Counter[tuple[str, str, str]] = Counter()
        self._tenant_months: Counter[tuple[str, str]] = Counter()
        self._lock = threading.Lock()

    def append(self, record: QuotaWindowRecord) -> None:
        with self._lock:
            self.records.append(record)
            self._hours[(record.tenant_id, record.sender, record.hour_key)] += 1
            self._days[(record.tenant_id, record.sender, record.day_key)] += 1
            self._months[(record.tenant_id, record.sender, record.month_key)] += 1
            self._tenant_months[(record.tenant_id, record.month_key)] += 1

    def count_hour(self, tenant_id: str, sender: str, hour_key: str) -> int:
        with self._lock:
            return self._hours[(tenant_id, sender, hour_key)]

    def count_day(self, tenant_id: str, sender: str, day_key: str) -> int:
        with self._lock:
            return self._days[(tenant_id, sender, day_key)]

    def count_month(self, tenant_id: str, sender: str, month_key: str) -> int:
        with self._lock:
            return self._months[(tenant_id, sender, month_key)]

    def count_tenant_month(self, tenant_id: str, month_key: str) -> int:
        with self._lock:
            return self._tenant_months[(tenant_id, month_key)]

