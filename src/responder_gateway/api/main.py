from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
import re

from fastapi import FastAPI, Header, HTTPException

from responder_gateway.adapters.credentials import FileCredentialStore, InMemoryCredentialStore
from responder_gateway.adapters.storage import InMemoryConnectionStatusStore, InMemoryQuotaLog, InMemoryTenantStore
from responder_gateway.cache.tenant_cache import TenantCache
from responder_gateway.config import Settings, get_settings
from responder_gateway.domain.errors import (
    AlreadyConnectedError,
    GatewayError,
    IdentityAlreadyRegisteredError,
    InvalidIdentityError,
    NotConnectedError,
    PairingTimeoutError,
    SessionError,
    TenantAlreadyExistsError,
    TenantNotFoundError,
)
from responder_gateway.domain.interfaces import ConnectionStatusStore, CredentialStore, QuotaLog, TenantStore
from responder_gateway.domain.models import (
    ActivateSubscriptionRequest,
    AddIdentityRequest,
    ConnectResponse,
    CreateTenantRequest,
    HealthReport,
    SessionStatus,
    Tenant,
    UpdateTenantConfigRequest,
    UsageSummary,
)
from responder_gateway.policies.auth import AdminAuthService, AdminPrincipal
from responder_gateway.policies.quota import QuotaTracker
from responder_gateway.routing.pipeline import RoutingPipeline
from responder_gateway.runtime import GatewayRuntime
from responder_gateway.services.subscriptions import SubscriptionService
from responder_gateway.services.tenants import TenantService
from responder_gateway.sessions.manager import SessionLifecycleManager
from responder_gateway.sessions.transport import SessionTransport, resolve_transport
from responder_gateway.telemetry import span_set_attributes, start_span, telemetry_tags


@dataclass
class AppContext:
    settings: Settings
    tenant_store: TenantStore
    status_store: ConnectionStatusStore
    quota_log: QuotaLog
    credentials: CredentialStore
    cache: TenantCache
    tenants: TenantService
    subscriptions: SubscriptionService
    quota: QuotaTracker
    sessions: SessionLifecycleManager
    pipeline: RoutingPipeline
    runtime: GatewayRuntime
    admin_auth: AdminAuthService


_MONTH_PATTERN = re.compile(r"^\d{4}-\d{2}$")

TENANT_ROLES = {"platform_admin", "tenant_admin"}


def _normalize_month(month: str | None) -> str | None:
    if month is None:
        return None
    text = month.strip()
    if not _MONTH_PATTERN.match(text):
        raise HTTPException(status_code=400, detail="month must be YYYY-MM")
    try:
        datetime.strptime(text, "%Y-%m")
    except ValueError as err:
        raise HTTPException(status_code=400, detail="month must be YYYY-MM") from err
    return text


def _http_error(err: GatewayError) -> HTTPException:
    if isinstance(err, TenantNotFoundError):
        return HTTPException(status_code=404, detail="tenant not found")
    if isinstance(err, TenantAlreadyExistsError):
        return HTTPException(status_code=409, detail=str(err))
    if isinstance(err, IdentityAlreadyRegisteredError):
        return HTTPException(status_code=409, detail=str(err))
    if isinstance(err, InvalidIdentityError):
        return HTTPException(status_code=422, detail=str(err))
    if isinstance(err, (AlreadyConnectedError, NotConnectedError)):
        return HTTPException(status_code=409, detail=str(err))
    if isinstance(err, PairingTimeoutError):
        return HTTPException(status_code=504, detail=str(err))
    if isinstance(err, SessionError):
        return HTTPException(status_code=502, detail=str(err))
    return HTTPException(status_code=400, detail=str(err))


def _build_stores(settings: Settings) -> tuple[TenantStore, ConnectionStatusStore, QuotaLog]:
    if settings.tenant_store_dsn:
        try:
            from responder_gateway.adapters.postgres import (
                PostgresConnectionStatusStore,
                PostgresQuotaLog,
                PostgresSessionFactory,
                PostgresTenantStore,
            )
        except ModuleNotFoundError as err:
            raise RuntimeError(
                "Database mode requires SQLAlchemy/Alembic dependencies. "
                "Install project dependencies before setting TENANT_STORE_DSN."
            ) from err

        sf = PostgresSessionFactory(settings.tenant_store_dsn)
        return PostgresTenantStore(sf), PostgresConnectionStatusStore(sf), PostgresQuotaLog(sf)

    return InMemoryTenantStore(), InMemoryConnectionStatusStore(), InMemoryQuotaLog()


def _resolve_quota_log(settings: Settings, base_log: QuotaLog) -> QuotaLog:
    backend = (settings.quota_backend or "").strip().lower()
    if backend in {"", "database"}:
        return base_log

    if backend == "redis":
        if not settings.quota_redis_url:
            return base_log
        from responder_gateway.adapters.redis_quota import RedisQuotaLog

        return RedisQuotaLog(
            redis_url=settings.quota_redis_url,
            key_prefix=settings.quota_redis_key_prefix,
            fail_open=settings.quota_redis_fail_open,
        )

    raise RuntimeError(f"Unsupported QUOTA_BACKEND: {settings.quota_backend}")


def _resolve_credentials(settings: Settings) -> CredentialStore:
    if settings.credentials_dir:
        return FileCredentialStore(settings.credentials_dir)
    return InMemoryCredentialStore()


def build_context(
    settings: Settings,
    transport: SessionTransport | None = None,
    credentials: CredentialStore | None = None,
) -> AppContext:
    tenant_store, status_store, base_quota_log = _build_stores(settings)
    quota_log = _resolve_quota_log(settings, base_quota_log)
    credential_store = credentials or _resolve_credentials(settings)

    cache = TenantCache(
        loader=tenant_store.get_tenant,
        ttl_seconds=settings.tenant_cache_ttl_seconds,
        max_entries=settings.tenant_cache_max_entries,
    )
    tenants = TenantService(
        store=tenant_store,
        cache=cache,
        country_code=settings.default_country_code,
        closed_weekdays=settings.closed_weekdays,
    )
    subscriptions = SubscriptionService(tenants)
    quota = QuotaTracker(quota_log)
    sessions = SessionLifecycleManager(
        settings=settings,
        transport=transport or resolve_transport(settings),
        tenant_store=tenant_store,
        status_store=status_store,
        credential_store=credential_store,
    )
    pipeline = RoutingPipeline(
        settings=settings,
        tenants=tenants,
        subscriptions=subscriptions,
        quota=quota,
        sessions=sessions,
    )
    runtime = GatewayRuntime(
        settings=settings,
        tenants=tenants,
        subscriptions=subscriptions,
        sessions=sessions,
        pipeline=pipeline,
        cache=cache,
    )
    return AppContext(
        settings=settings,
        tenant_store=tenant_store,
        status_store=status_store,
        quota_log=quota_log,
        credentials=credential_store,
        cache=cache,
        tenants=tenants,
        subscriptions=subscriptions,
        quota=quota,
        sessions=sessions,
        pipeline=pipeline,
        runtime=runtime,
        admin_auth=AdminAuthService(settings),
    )


def create_app(
    settings: Settings | None = None,
    transport: SessionTransport | None = None,
    credentials: CredentialStore | None = None,
) -> FastAPI:
    active_settings = settings or get_settings()
    ctx = build_context(active_settings, transport=transport, credentials=credentials)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if ctx.settings.gateway_autostart:
            await ctx.runtime.start()
        try:
            yield
        finally:
            await ctx.runtime.stop()

    app = FastAPI(title="Responder Gateway", version="0.1.0", lifespan=lifespan)
    app.state.ctx = ctx

    def _authorize_admin(
        *,
        authorization: str,
        required_roles: set[str] | None = None,
        required_scopes: set[str] | None = None,
        tenant_id: str | None = None,
    ) -> AdminPrincipal:
        principal = ctx.admin_auth.authenticate(authorization=authorization)
        ctx.admin_auth.authorize(
            principal=principal,
            required_roles=required_roles,
            required_scopes=required_scopes,
            tenant_id=tenant_id,
        )
        return principal

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/v1/tenants", status_code=201)
    def create_tenant(
        request: CreateTenantRequest,
        authorization: str = Header(default="", alias="Authorization"),
    ) -> dict:
        _authorize_admin(
            authorization=authorization,
            required_roles={"platform_admin"},
            required_scopes={"tenants.write"},
        )
        with start_span("api.tenants.create", {"environment": ctx.settings.app_env}) as span:
            try:
                tenant = ctx.tenants.create_tenant(request)
            except GatewayError as err:
                span_set_attributes(span, telemetry_tags(failure_type=type(err).__name__))
                raise _http_error(err) from err
            span_set_attributes(span, telemetry_tags(tenant_id=tenant.tenant_id))
            return tenant.model_dump(mode="json")

    @app.get("/v1/tenants/{tenant_id}")
    def get_tenant(
        tenant_id: str,
        authorization: str = Header(default="", alias="Authorization"),
    ) -> dict:
        _authorize_admin(
            authorization=authorization,
            required_roles=TENANT_ROLES,
            required_scopes={"tenants.read"},
            tenant_id=tenant_id,
        )
        tenant = ctx.tenants.get(tenant_id)
        if tenant is None:
            raise HTTPException(status_code=404, detail="tenant not found")
        return tenant.model_dump(mode="json")

    @app.patch("/v1/tenants/{tenant_id}/config")
    def update_config(
        tenant_id: str,
        request: UpdateTenantConfigRequest,
        authorization: str = Header(default="", alias="Authorization"),
    ) -> dict:
        _authorize_admin(
            authorization=authorization,
            required_roles=TENANT_ROLES,
            required_scopes={"tenants.write"},
            tenant_id=tenant_id,
        )
        try:
            tenant = ctx.tenants.update_config(tenant_id, request)
        except GatewayError as err:
            raise _http_error(err) from err
        return tenant.model_dump(mode="json")

    @app.post("/v1/tenants/{tenant_id}/identities")
    def add_identity(
        tenant_id: str,
        request: AddIdentityRequest,
        authorization: str = Header(default="", alias="Authorization"),
    ) -> dict:
        _authorize_admin(
            authorization=authorization,
            required_roles=TENANT_ROLES,
            required_scopes={"tenants.write"},
            tenant_id=tenant_id,
        )
        try:
            tenant = ctx.tenants.add_identity(tenant_id, request.identity)
        except GatewayError as err:
            raise _http_error(err) from err
        return tenant.model_dump(mode="json")

    @app.delete("/v1/tenants/{tenant_id}/identities/{identity}")
    def remove_identity(
        tenant_id: str,
        identity: str,
        authorization: str = Header(default="", alias="Authorization"),
    ) -> dict:
        _authorize_admin(
            authorization=authorization,
            required_roles=TENANT_ROLES,
            required_scopes={"tenants.write"},
            tenant_id=tenant_id,
        )
        try:
            tenant = ctx.tenants.remove_identity(tenant_id, identity)
        except GatewayError as err:
            raise _http_error(err) from err
        return tenant.model_dump(mode="json")

    @app.post("/v1/tenants/{tenant_id}/cache/invalidate")
    def invalidate_cache(
        tenant_id: str,
        authorization: str = Header(default="", alias="Authorization"),
    ) -> dict[str, bool]:
        _authorize_admin(
            authorization=authorization,
            required_roles=TENANT_ROLES,
            required_scopes={"tenants.write"},
            tenant_id=tenant_id,
        )
        ctx.tenants.invalidate(tenant_id)
        return {"invalidated": True}

    @app.post("/v1/tenants/{tenant_id}/session/connect", response_model=ConnectResponse)
    async def connect_session(
        tenant_id: str,
        authorization: str = Header(default="", alias="Authorization"),
    ) -> ConnectResponse:
        _authorize_admin(
            authorization=authorization,
            required_roles=TENANT_ROLES,
            required_scopes={"sessions.write"},
            tenant_id=tenant_id,
        )
        try:
            pairing_code = await ctx.sessions.connect(tenant_id)
        except GatewayError as err:
            raise _http_error(err) from err
        status = await ctx.sessions.status(tenant_id)
        return ConnectResponse(tenant_id=tenant_id, state=status.state, pairing_code=pairing_code)

    @app.get("/v1/tenants/{tenant_id}/session/status", response_model=SessionStatus)
    async def session_status(
        tenant_id: str,
        authorization: str = Header(default="", alias="Authorization"),
    ) -> SessionStatus:
        _authorize_admin(
            authorization=authorization,
            required_roles=TENANT_ROLES,
            required_scopes={"sessions.read"},
            tenant_id=tenant_id,
        )
        return await ctx.sessions.status(tenant_id)

    @app.get("/v1/tenants/{tenant_id}/session/health", response_model=HealthReport)
    async def session_health(
        tenant_id: str,
        authorization: str = Header(default="", alias="Authorization"),
    ) -> HealthReport:
        _authorize_admin(
            authorization=authorization,
            required_roles=TENANT_ROLES,
            required_scopes={"sessions.read"},
            tenant_id=tenant_id,
        )
        return await ctx.sessions.health_check(tenant_id)

    @app.post("/v1/tenants/{tenant_id}/session/disconnect")
    async def disconnect_session(
        tenant_id: str,
        authorization: str = Header(default="", alias="Authorization"),
    ) -> dict[str, bool]:
        _authorize_admin(
            authorization=authorization,
            required_roles=TENANT_ROLES,
            required_scopes={"sessions.write"},
            tenant_id=tenant_id,
        )
        await ctx.sessions.disconnect(tenant_id)
        return {"ok": True}

    @app.get("/v1/tenants/{tenant_id}/usage", response_model=UsageSummary)
    def tenant_usage(
        tenant_id: str,
        month: str | None = None,
        authorization: str = Header(default="", alias="Authorization"),
    ) -> UsageSummary:
        _authorize_admin(
            authorization=authorization,
            required_roles={"platform_admin", "tenant_admin", "billing_reader"},
            required_scopes={"tenant.usage.read", "billing.read"},
            tenant_id=tenant_id,
        )
        if ctx.tenants.get(tenant_id) is None:
            raise HTTPException(status_code=404, detail="tenant not found")
        normalized_month = _normalize_month(month) or datetime.now().strftime("%Y-%m")
        return UsageSummary(
            tenant_id=tenant_id,
            month=normalized_month,
            messages_used=ctx.quota.monthly_usage(tenant_id, normalized_month),
        )

    @app.post("/v1/admin/tenants/{tenant_id}/subscription/activate")
    def activate_subscription(
        tenant_id: str,
        request: ActivateSubscriptionRequest,
        authorization: str = Header(default="", alias="Authorization"),
    ) -> dict:
        _authorize_admin(
            authorization=authorization,
            required_roles={"platform_admin", "billing_admin"},
            required_scopes={"subscriptions.write"},
            tenant_id=tenant_id,
        )
        try:
            tenant: Tenant = ctx.subscriptions.activate(
                tenant_id,
                tier=request.tier,
                amount=request.amount,
                reference=request.reference,
                months=request.months,
            )
        except GatewayError as err:
            raise _http_error(err) from err
        return tenant.model_dump(mode="json")

    @app.post("/v1/admin/tenants/{tenant_id}/subscription/cancel")
    def cancel_subscription(
        tenant_id: str,
        authorization: str = Header(default="", alias="Authorization"),
    ) -> dict:
        _authorize_admin(
            authorization=authorization,
            required_roles={"platform_admin", "billing_admin"},
            required_scopes={"subscriptions.write"},
            tenant_id=tenant_id,
        )
        try:
            tenant = ctx.subscriptions.cancel(tenant_id)
        except GatewayError as err:
            raise _http_error(err) from err
        return tenant.model_dump(mode="json")

    @app.post("/v1/admin/subscriptions/expire-lapsed")
    def expire_lapsed(
        authorization: str = Header(default="", alias="Authorization"),
    ) -> dict[str, list[str]]:
        _authorize_admin(
            authorization=authorization,
            required_roles={"platform_admin", "billing_admin"},
            required_scopes={"subscriptions.write"},
        )
        return {"expired": ctx.subscriptions.expire_lapsed()}

    @app.get("/v1/admin/sessions", response_model=list[SessionStatus])
    def list_sessions(
        authorization: str = Header(default="", alias="Authorization"),
    ) -> list[SessionStatus]:
        _authorize_admin(
            authorization=authorization,
            required_roles={"platform_admin"},
            required_scopes={"sessions.read"},
        )
        return ctx.sessions.list_sessions()

    @app.get("/v1/admin/sessions/disconnected", response_model=list[SessionStatus])
    async def unnotified_disconnects(
        authorization: str = Header(default="", alias="Authorization"),
    ) -> list[SessionStatus]:
        _authorize_admin(
            authorization=authorization,
            required_roles={"platform_admin"},
            required_scopes={"sessions.read"},
        )
        return await ctx.sessions.unnotified_disconnects()

    @app.post("/v1/admin/tenants/{tenant_id}/session/notified")
    async def mark_session_notified(
        tenant_id: str,
        authorization: str = Header(default="", alias="Authorization"),
    ) -> dict[str, bool]:
        _authorize_admin(
            authorization=authorization,
            required_roles={"platform_admin"},
            required_scopes={"sessions.write"},
            tenant_id=tenant_id,
        )
        if not await ctx.sessions.mark_notified(tenant_id):
            raise HTTPException(status_code=404, detail="no session status recorded for tenant")
        return {"notified": True}

    @app.get("/v1/admin/sessions/stats")
    async def session_stats(
        authorization: str = Header(default="", alias="Authorization"),
    ) -> dict[str, int]:
        _authorize_admin(
            authorization=authorization,
            required_roles={"platform_admin"},
            required_scopes={"sessions.read"},
        )
        return await ctx.sessions.connection_stats()

    return app
