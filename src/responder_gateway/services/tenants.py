from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import uuid
from typing import Callable

from responder_gateway.cache.tenant_cache import TenantCache
from responder_gateway.domain.errors import InvalidIdentityError, TenantNotFoundError
from responder_gateway.domain.identities import DEFAULT_COUNTRY_CODE, normalize_identity
from responder_gateway.domain.interfaces import TenantStore
from responder_gateway.domain.models import (
    DEFAULT_AFTER_HOURS_MESSAGE,
    CreateTenantRequest,
    OperatingHours,
    QuotaTier,
    Subscription,
    SubscriptionState,
    Tenant,
    UpdateTenantConfigRequest,
)
from responder_gateway.telemetry import log_event


_logger = logging.getLogger(__name__)

TenantListener = Callable[[Tenant], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TenantService:
    """The single write path for tenant records.

    Every mutation is store write, then cache invalidation, then listener
    notification, so a read issued after a write returns has to see the new
    record or load it fresh.
    """

    def __init__(
        self,
        store: TenantStore,
        cache: TenantCache,
        country_code: str = DEFAULT_COUNTRY_CODE,
        closed_weekdays: tuple[int, ...] = (5, 6),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.country_code = country_code
        self.closed_weekdays = closed_weekdays
        self._clock = clock
        self._listeners: list[TenantListener] = []

    def subscribe(self, listener: TenantListener) -> None:
        self._listeners.append(listener)

    def _normalize_all(self, identities: list[str]) -> list[str]:
        normalized: list[str] = []
        for raw in identities:
            identity = normalize_identity(raw, self.country_code)
            if identity not in normalized:
                normalized.append(identity)
        return normalized

    def create_tenant(self, request: CreateTenantRequest, tenant_id: str | None = None) -> Tenant:
        identities = self._normalize_all(request.identities)
        if not identities:
            raise InvalidIdentityError("a tenant needs at least one identity")

        now = self._clock()
        hours = request.hours or OperatingHours(closed_weekdays=list(self.closed_weekdays))
        tenant = Tenant(
            tenant_id=tenant_id or uuid.uuid4().hex,
            name=request.name,
            identities=identities,
            quota_tier=request.quota_tier,
            subscription=Subscription(
                state=SubscriptionState.TRIAL,
                trial_started_at=now,
                trial_ends_at=now + timedelta(days=request.trial_days),
            ),
            hours=hours,
            fallback_message=request.fallback_message or DEFAULT_AFTER_HOURS_MESSAGE,
            responders=list(request.responders),
            operator_identities=self._normalize_all(request.operator_identities),
            created_at=now,
            updated_at=now,
        )
        self.store.create_tenant(tenant)
        self._after_write(tenant, "tenant_created")
        return tenant

    def update_config(self, tenant_id: str, request: UpdateTenantConfigRequest) -> Tenant:
        tenant = self.require(tenant_id, fresh=True)
        updates: dict[str, object] = {}
        if request.name is not None:
            updates["name"] = request.name
        if request.hours is not None:
            updates["hours"] = request.hours
        if request.fallback_message is not None:
            updates["fallback_message"] = request.fallback_message
        if request.responders is not None:
            updates["responders"] = list(request.responders)
        if request.operator_identities is not None:
            updates["operator_identities"] = self._normalize_all(request.operator_identities)
        return self._save(tenant.model_copy(update=updates), "tenant_config_updated")

    def add_identity(self, tenant_id: str, identity: str) -> Tenant:
        tenant = self.require(tenant_id, fresh=True)
        normalized = normalize_identity(identity, self.country_code)
        if normalized in tenant.identities:
            return tenant
        return self._save(
            tenant.model_copy(update={"identities": [*tenant.identities, normalized]}),
            "tenant_identity_added",
        )

    def remove_identity(self, tenant_id: str, identity: str) -> Tenant:
        tenant = self.require(tenant_id, fresh=True)
        normalized = normalize_identity(identity, self.country_code)
        if normalized not in tenant.identities:
            return tenant
        if len(tenant.identities) == 1:
            raise InvalidIdentityError("cannot remove the last identity of a tenant")
        remaining = [value for value in tenant.identities if value != normalized]
        return self._save(tenant.model_copy(update={"identities": remaining}), "tenant_identity_removed")

    def set_subscription_state(self, tenant_id: str, state: SubscriptionState) -> Tenant:
        tenant = self.require(tenant_id, fresh=True)
        subscription = tenant.subscription.model_copy(update={"state": state})
        return self._save(tenant.model_copy(update={"subscription": subscription}), "tenant_subscription_changed")

    def update_subscription(
        self,
        tenant_id: str,
        subscription: Subscription,
        quota_tier: QuotaTier | None = None,
    ) -> Tenant:
        tenant = self.require(tenant_id, fresh=True)
        updates: dict[str, object] = {"subscription": subscription}
        if quota_tier is not None:
            updates["quota_tier"] = quota_tier
        return self._save(tenant.model_copy(update=updates), "tenant_subscription_changed")

    def invalidate(self, tenant_id: str) -> None:
        self.cache.invalidate(tenant_id)

    def get(self, tenant_id: str) -> Tenant | None:
        return self.cache.get(tenant_id)

    def require(self, tenant_id: str, fresh: bool = False) -> Tenant:
        tenant = self.store.get_tenant(tenant_id) if fresh else self.cache.get(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        return tenant

    def list_by_subscription_states(self, states: set[SubscriptionState]) -> list[Tenant]:
        return self.store.list_tenants(states)

    def _save(self, tenant: Tenant, event: str) -> Tenant:
        tenant = tenant.model_copy(update={"updated_at": self._clock()})
        self.store.upsert_tenant(tenant)
        self._after_write(tenant, event)
        return tenant

    def _after_write(self, tenant: Tenant, event: str) -> None:
        self.cache.invalidate(tenant.tenant_id)
        log_event(_logger, event, tenant_id=tenant.tenant_id)
        for listener in list(self._listeners):
            try:
                listener(tenant)
            except Exception:
                _logger.exception("tenant_listener_failed tenant_id=%s", tenant.tenant_id)
