from __future__ import annotations

from abc import ABC, abstractmethod

from responder_gateway.domain.models import (
    QuotaWindowRecord,
    SessionState,
    SessionStatus,
    SubscriptionState,
    Tenant,
)


class TenantStore(ABC):
    @abstractmethod
    def create_tenant(self, tenant: Tenant) -> None:
        """Insert a new tenant; raises TenantAlreadyExistsError or IdentityAlreadyRegisteredError on a collision."""
        raise NotImplementedError

    @abstractmethod
    def upsert_tenant(self, tenant: Tenant) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_tenant(self, tenant_id: str) -> Tenant | None:
        raise NotImplementedError

    @abstractmethod
    def find_by_identity(self, identity: str) -> Tenant | None:
        raise NotImplementedError

    @abstractmethod
    def list_tenants(self, states: set[SubscriptionState] | None = None) -> list[Tenant]:
        raise NotImplementedError


class ConnectionStatusStore(ABC):
    @abstractmethod
    def save_status(self, status: SessionStatus) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_status(self, tenant_id: str) -> SessionStatus | None:
        raise NotImplementedError

    @abstractmethod
    def list_statuses(self, states: set[SessionState] | None = None) -> list[SessionStatus]:
        raise NotImplementedError

    @abstractmethod
    def mark_notified(self, tenant_id: str) -> bool:
        """Flag a tenant's dropped session as reported. False when no row exists."""
        raise NotImplementedError


class QuotaLog(ABC):
    @abstractmethod
    def append(self, record: QuotaWindowRecord) -> None:
        raise NotImplementedError

    @abstractmethod
    def count_hour(self, tenant_id: str, sender: str, hour_key: str) -> int:
        raise NotImplementedError

    @abstractmethod
    def count_day(self, tenant_id: str, sender: str, day_key: str) -> int:
        raise NotImplementedError

    @abstractmethod
    def count_month(self, tenant_id: str, sender: str, month_key: str) -> int:
        raise NotImplementedError

    @abstractmethod
    def count_tenant_month(self, tenant_id: str, month_key: str) -> int:
        raise NotImplementedError


class CredentialStore(ABC):
    """Opaque per-tenant credential blobs; the core only checks presence."""

    @abstractmethod
    def has_credentials(self, tenant_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def credentials_ref(self, tenant_id: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def clear(self, tenant_id: str) -> None:
        raise NotImplementedError
