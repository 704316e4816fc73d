from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from responder_gateway.cache.tenant_cache import TenantCache
from responder_gateway.config import Settings
from responder_gateway.domain.models import InboundEvent, Tenant
from responder_gateway.routing.pipeline import RoutingPipeline
from responder_gateway.services.subscriptions import SubscriptionService
from responder_gateway.services.tenants import TenantService
from responder_gateway.sessions.manager import SessionLifecycleManager
from responder_gateway.telemetry import log_event


_logger = logging.getLogger(__name__)


class GatewayRuntime:
    """Owns the background side of the gateway: inbound routing and periodic upkeep."""

    def __init__(
        self,
        settings: Settings,
        tenants: TenantService,
        subscriptions: SubscriptionService,
        sessions: SessionLifecycleManager,
        pipeline: RoutingPipeline,
        cache: TenantCache,
    ) -> None:
        self.settings = settings
        self.tenants = tenants
        self.subscriptions = subscriptions
        self.sessions = sessions
        self.pipeline = pipeline
        self.cache = cache
        self._tasks: list[asyncio.Task] = []
        self._started = False
        self.sessions.subscribe(self._on_inbound)
        self.tenants.subscribe(self._on_tenant_changed)

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        await self.sessions.reconnect_all()
        self._tasks = [
            asyncio.create_task(
                self._periodic(self.settings.cache_sweep_interval_seconds, self._sweep_cache, run_first=False),
                name="tenant-cache-sweep",
            ),
            asyncio.create_task(
                self._periodic(self.settings.subscription_check_interval_seconds, self._expire_lapsed, run_first=True),
                name="subscription-expiry",
            ),
        ]
        _logger.info("gateway runtime started")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.sessions.shutdown()
        self._started = False
        _logger.info("gateway runtime stopped")

    async def _on_inbound(self, event: InboundEvent) -> None:
        await self.pipeline.handle(event)

    def _on_tenant_changed(self, tenant: Tenant) -> None:
        log_event(
            _logger,
            "tenant_changed",
            level=logging.DEBUG,
            tenant_id=tenant.tenant_id,
            subscription_state=tenant.subscription.state.value,
        )
        self.sessions.refresh_tenant(tenant)

    async def _sweep_cache(self) -> None:
        self.cache.sweep()

    async def _expire_lapsed(self) -> None:
        await asyncio.to_thread(self.subscriptions.expire_lapsed)

    async def _periodic(
        self,
        interval: float,
        job: Callable[[], Awaitable[None]],
        run_first: bool,
    ) -> None:
        if not run_first:
            await asyncio.sleep(interval)
        while True:
            try:
                await job()
            except Exception:
                _logger.exception("periodic_job_failed job=%s", getattr(job, "__name__", job))
            await asyncio.sleep(interval)
