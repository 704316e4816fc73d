"""Per-tenant session supervision.

Every tenant gets one :class:`SessionWorker`: a small actor that owns the
tenant's lifecycle state and processes connect/disconnect commands and
transport events strictly in order from its inbox. Workers never share state,
so a tenant stuck on a slow transport or store call only delays itself.

Transport events are tagged with the attempt generation that produced them;
anything from a superseded attempt is dropped.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
import logging
from typing import Awaitable, Callable

from responder_gateway.config import Settings
from responder_gateway.domain.errors import (
    AlreadyConnectedError,
    ConnectFailedError,
    DeliveryError,
    NotConnectedError,
    PairingTimeoutError,
    SessionClosedError,
    TenantNotFoundError,
    TransportError,
)
from responder_gateway.domain.identities import address_for_identity
from responder_gateway.domain.interfaces import ConnectionStatusStore, CredentialStore, TenantStore
from responder_gateway.domain.models import (
    HealthReport,
    HealthStatus,
    InboundEvent,
    SessionState,
    SessionStatus,
    SubscriptionState,
    Tenant,
)
from responder_gateway.sessions.failures import Failure, FailureKind, classify_failure
from responder_gateway.sessions.states import transition
from responder_gateway.sessions.transport import (
    InboundMessage,
    PairingChallenge,
    SessionClosed,
    SessionHandle,
    SessionOpened,
    SessionTransport,
    TransportEvent,
)
from responder_gateway.telemetry import log_event, span_record_error, start_span


_logger = logging.getLogger(__name__)

InboundHandler = Callable[[InboundEvent], Awaitable[None]]

HEALTH_PROBE_TEXT = "HEALTH_CHECK"
MANUAL_DISCONNECT_REASON = "Manual disconnect"
DROPPED_STATES = {SessionState.DISCONNECTED, SessionState.RECONNECTING, SessionState.TERMINAL}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Connect:
    future: asyncio.Future
    handle: SessionHandle


@dataclass
class _Disconnect:
    future: asyncio.Future


@dataclass
class _Event:
    generation: int
    event: TransportEvent


@dataclass
class _PairingTimeout:
    generation: int


@dataclass
class _ReconnectDue:
    generation: int


class SessionWorker:
    def __init__(self, tenant_id: str, manager: SessionLifecycleManager) -> None:
        self.tenant_id = tenant_id
        self.status = SessionStatus(tenant_id=tenant_id)
        self.handle: SessionHandle | None = None
        self.generation = 0
        self.pairing_code: str | None = None
        self._manager = manager
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._dispatch_queue: asyncio.Queue = asyncio.Queue()
        self._waiters: list[asyncio.Future] = []
        self._awaiting_first_open = False
        self._pump_task: asyncio.Task | None = None
        self._pairing_timer: asyncio.Task | None = None
        self._reconnect_timer: asyncio.Task | None = None
        self._runner: asyncio.Task | None = None
        self._dispatcher: asyncio.Task | None = None
        self._stopped = False

    @property
    def state(self) -> SessionState:
        return self.status.state

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_timer is not None and not self._reconnect_timer.done()

    def start(self) -> None:
        self._runner = asyncio.create_task(self._run(), name=f"session-worker:{self.tenant_id}")
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name=f"session-dispatch:{self.tenant_id}")

    async def submit(self, item: object) -> None:
        await self._inbox.put(item)

    async def _run(self) -> None:
        while not self._stopped:
            item = await self._inbox.get()
            try:
                await self._handle(item)
            except Exception as exc:
                _logger.exception("session_worker_item_failed tenant_id=%s item=%s", self.tenant_id, type(item).__name__)
                self._fail_waiters(ConnectFailedError(str(exc)))
                if isinstance(item, (_Connect, _Disconnect)) and not item.future.done():
                    item.future.set_exception(exc)

    async def _handle(self, item: object) -> None:
        if isinstance(item, _Connect):
            await self._on_connect(item)
        elif isinstance(item, _Disconnect):
            await self._on_disconnect(item)
        elif isinstance(item, _Event):
            if item.generation != self.generation:
                return
            await self._on_transport_event(item.event)
        elif isinstance(item, _PairingTimeout):
            if item.generation != self.generation or self.state != SessionState.CONNECTING:
                return
            await self._on_pairing_timeout()
        elif isinstance(item, _ReconnectDue):
            if item.generation != self.generation or self.state != SessionState.RECONNECTING:
                return
            self._reconnect_timer = None
            log_event(_logger, "session_reconnect_attempt", tenant_id=self.tenant_id)
            await self._start_attempt()

    async def _on_connect(self, command: _Connect) -> None:
        state = self.state
        if state == SessionState.CONNECTED:
            command.future.set_exception(AlreadyConnectedError("Session is already connected"))
            return
        if state == SessionState.CONNECTING:
            # join the in-flight attempt
            if self.pairing_code is not None:
                command.future.set_result(self.pairing_code)
            else:
                self._waiters.append(command.future)
            return
        if state == SessionState.TERMINAL:
            self._set_state(SessionState.IDLE)

        self._cancel_reconnect_timer()
        self.handle = command.handle
        self._waiters.append(command.future)
        self._awaiting_first_open = True
        await self._start_attempt()

    async def _start_attempt(self) -> None:
        self._set_state(SessionState.CONNECTING)
        self.generation += 1
        self.pairing_code = None
        generation = self.generation
        self._cancel_pump()
        self._pump_task = asyncio.create_task(self._pump(self.handle, generation))
        self._cancel_pairing_timer()
        self._pairing_timer = asyncio.create_task(
            self._fire_after(self._manager.settings.pairing_timeout_seconds, _PairingTimeout(generation))
        )
        await self._persist()

    async def _pump(self, handle: SessionHandle, generation: int) -> None:
        try:
            async for event in self._manager.transport.open(handle):
                await self._inbox.put(_Event(generation, event))
                if isinstance(event, SessionClosed):
                    return
            await self._inbox.put(_Event(generation, SessionClosed("connection_closed", "Transport stream ended")))
        except asyncio.CancelledError:
            raise
        except TransportError as exc:
            await self._inbox.put(_Event(generation, SessionClosed(exc.code, exc.message)))
        except Exception as exc:
            _logger.exception("session_transport_crashed tenant_id=%s", self.tenant_id)
            await self._inbox.put(_Event(generation, SessionClosed(None, str(exc))))

    async def _fire_after(self, delay: float, item: object) -> None:
        await asyncio.sleep(delay)
        await self._inbox.put(item)

    async def _on_transport_event(self, event: TransportEvent) -> None:
        if isinstance(event, PairingChallenge):
            self.pairing_code = event.code
            if self._waiters:
                self._cancel_pairing_timer()
            for waiter in self._take_waiters():
                waiter.set_result(event.code)
            # the caller has its code; later closes follow the reconnect policy
            self._awaiting_first_open = False
            log_event(_logger, "session_pairing_challenge", tenant_id=self.tenant_id)
            return

        if isinstance(event, SessionOpened):
            self._cancel_pairing_timer()
            self.pairing_code = None
            self._awaiting_first_open = False
            now = self._manager.now()
            self._set_state(SessionState.CONNECTED)
            self.status.last_connected_at = now
            self.status.disconnect_reason = None
            self.status.notified = False
            for waiter in self._take_waiters():
                waiter.set_result(None)
            await self._persist()
            return

        if isinstance(event, InboundMessage):
            if self.state != SessionState.CONNECTED:
                return
            self.status.last_inbound_at = self._manager.now()
            await self._dispatch_queue.put(
                InboundEvent(
                    tenant_id=self.tenant_id,
                    sender=event.sender,
                    text=event.text,
                    is_group=event.is_group,
                    received_at=event.received_at,
                )
            )
            return

        if isinstance(event, SessionClosed):
            self._pump_task = None
            self._cancel_pairing_timer()
            await self._on_failure(classify_failure(event.code, event.message))

    async def _on_pairing_timeout(self) -> None:
        self._pairing_timer = None
        failure = Failure(
            kind=FailureKind.TIMEOUT,
            user_message="Timed out waiting for a pairing code. Please try again.",
            code="pairing_timeout",
        )
        self.generation += 1
        self._cancel_pump()
        await self._close_transport(logout=False)
        if self._awaiting_first_open:
            self._fail_waiters(PairingTimeoutError(failure.user_message, failure))
            await self._settle(SessionState.DISCONNECTED, failure.user_message)
            return
        await self._on_failure(failure)

    async def _on_failure(self, failure: Failure) -> None:
        reason = failure.user_message
        if failure.is_terminal:
            self._fail_waiters(ConnectFailedError(reason, failure))
            await asyncio.to_thread(self._manager.credential_store.clear, self.tenant_id)
            await self._settle(SessionState.TERMINAL, reason)
            log_event(
                _logger,
                "session_terminal",
                level=logging.WARNING,
                tenant_id=self.tenant_id,
                failure_type=failure.kind.value,
                reason=reason,
            )
            self._manager._forget(self)
            self._stop_tasks()
            return

        if self._awaiting_first_open:
            self._fail_waiters(ConnectFailedError(reason, failure))
            await self._settle(SessionState.DISCONNECTED, reason)
            return

        if not failure.is_retryable:
            self._fail_waiters(ConnectFailedError(reason, failure))
            await self._settle(SessionState.DISCONNECTED, reason)
            log_event(
                _logger,
                "session_reconnect_skipped",
                level=logging.WARNING,
                tenant_id=self.tenant_id,
                failure_type=failure.kind.value,
            )
            return

        self._fail_waiters(ConnectFailedError(reason, failure))
        settings = self._manager.settings
        if failure.kind == FailureKind.SYNC_FAILED:
            delay = settings.sync_failure_reconnect_delay_seconds
        else:
            delay = settings.reconnect_delay_seconds
        await self._settle(SessionState.RECONNECTING, reason)
        self._reconnect_timer = asyncio.create_task(self._fire_after(delay, _ReconnectDue(self.generation)))
        log_event(
            _logger,
            "session_reconnect_scheduled",
            tenant_id=self.tenant_id,
            failure_type=failure.kind.value,
            delay_seconds=delay,
        )

    async def _on_disconnect(self, command: _Disconnect) -> None:
        if self.state in {SessionState.IDLE, SessionState.DISCONNECTED, SessionState.TERMINAL}:
            command.future.set_result(None)
            return

        self._set_state(SessionState.DISCONNECTING)
        self._cancel_reconnect_timer()
        self._cancel_pairing_timer()
        self.generation += 1
        self._cancel_pump()
        self._fail_waiters(SessionClosedError("Session was disconnected"))
        await self._close_transport(logout=True)
        await asyncio.to_thread(self._manager.credential_store.clear, self.tenant_id)
        await self._settle(SessionState.DISCONNECTED, MANUAL_DISCONNECT_REASON)
        command.future.set_result(None)

    async def _settle(self, state: SessionState, reason: str) -> None:
        self._set_state(state)
        self.pairing_code = None
        self._awaiting_first_open = False
        self.status.last_disconnected_at = self._manager.now()
        self.status.disconnect_reason = reason
        await self._persist()

    async def _close_transport(self, *, logout: bool) -> None:
        if self.handle is None:
            return
        try:
            await asyncio.wait_for(
                self._manager.transport.close(self.handle, logout=logout),
                timeout=self._manager.settings.send_timeout_seconds,
            )
        except (TransportError, asyncio.TimeoutError) as exc:
            _logger.warning("session_close_failed tenant_id=%s err=%s", self.tenant_id, exc)

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self._dispatch_queue.get()
            for handler in list(self._manager.handlers):
                try:
                    await handler(event)
                except Exception:
                    _logger.exception("inbound_handler_failed tenant_id=%s", self.tenant_id)

    def _set_state(self, state: SessionState) -> None:
        previous = self.status.state
        self.status.state = transition(previous, state)
        self.status.updated_at = self._manager.now()
        log_event(
            _logger,
            "session_state_changed",
            tenant_id=self.tenant_id,
            previous=previous.value,
            session_state=state.value,
        )

    async def _persist(self) -> None:
        snapshot = self.status.model_copy()
        try:
            await asyncio.to_thread(self._manager.status_store.save_status, snapshot)
        except Exception:
            _logger.exception("session_status_persist_failed tenant_id=%s", self.tenant_id)

    def _take_waiters(self) -> list[asyncio.Future]:
        waiters = [waiter for waiter in self._waiters if not waiter.done()]
        self._waiters = []
        return waiters

    def _fail_waiters(self, error: Exception) -> None:
        for waiter in self._take_waiters():
            waiter.set_exception(error)

    def _cancel_pump(self) -> None:
        if self._pump_task is not None:
            self._pump_task.cancel()
            self._pump_task = None

    def _cancel_pairing_timer(self) -> None:
        if self._pairing_timer is not None:
            self._pairing_timer.cancel()
            self._pairing_timer = None

    def _cancel_reconnect_timer(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def _stop_tasks(self) -> None:
        self._stopped = True
        self._cancel_pump()
        self._cancel_pairing_timer()
        self._cancel_reconnect_timer()
        if self._dispatcher is not None:
            self._dispatcher.cancel()

    async def shutdown(self) -> None:
        self.generation += 1
        self._stop_tasks()
        self._fail_waiters(SessionClosedError("Gateway is shutting down"))
        if self.state in {SessionState.CONNECTING, SessionState.CONNECTED}:
            await self._close_transport(logout=False)
        tasks = [task for task in (self._runner, self._dispatcher) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class SessionLifecycleManager:
    def __init__(
        self,
        settings: Settings,
        transport: SessionTransport,
        tenant_store: TenantStore,
        status_store: ConnectionStatusStore,
        credential_store: CredentialStore,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.tenant_store = tenant_store
        self.status_store = status_store
        self.credential_store = credential_store
        self.handlers: list[InboundHandler] = []
        self._clock = clock
        self._workers: dict[str, SessionWorker] = {}

    def now(self) -> datetime:
        return self._clock()

    def subscribe(self, handler: InboundHandler) -> None:
        self.handlers.append(handler)

    def _worker(self, tenant_id: str) -> SessionWorker:
        worker = self._workers.get(tenant_id)
        if worker is None:
            worker = SessionWorker(tenant_id, self)
            self._workers[tenant_id] = worker
            worker.start()
        return worker

    def _forget(self, worker: SessionWorker) -> None:
        if self._workers.get(worker.tenant_id) is worker:
            del self._workers[worker.tenant_id]

    async def connect(self, tenant_id: str) -> str | None:
        """Start (or join) a connection attempt.

        Resolves to the pairing code once the far end issues one, or to
        ``None`` when the session opens straight from stored credentials.
        """
        with start_span("session.connect", {"tenant_id": tenant_id}) as span:
            try:
                tenant = await asyncio.to_thread(self.tenant_store.get_tenant, tenant_id)
                if tenant is None:
                    raise TenantNotFoundError(tenant_id)
                credentials_ref = await asyncio.to_thread(self.credential_store.credentials_ref, tenant_id)
                handle = SessionHandle(
                    tenant_id=tenant_id,
                    identity=tenant.primary_identity,
                    credentials_ref=credentials_ref,
                )
                future = asyncio.get_running_loop().create_future()
                await self._worker(tenant_id).submit(_Connect(future=future, handle=handle))
                return await future
            except Exception as exc:
                span_record_error(span, exc, failure_type=type(exc).__name__)
                raise

    async def send(self, tenant_id: str, recipient: str, text: str) -> None:
        worker = self._workers.get(tenant_id)
        if worker is None or worker.state != SessionState.CONNECTED or worker.handle is None:
            raise NotConnectedError("Session is not connected")

        with start_span("session.send", {"tenant_id": tenant_id}) as span:
            try:
                await asyncio.wait_for(
                    self.transport.send(worker.handle, recipient, text),
                    timeout=self.settings.send_timeout_seconds,
                )
            except TransportError as exc:
                failure = classify_failure(exc.code, exc.message)
                span_record_error(span, exc, failure_type=failure.kind.value)
                raise DeliveryError(failure.user_message, failure) from exc
            except asyncio.TimeoutError as exc:
                failure = classify_failure("timed_out")
                span_record_error(span, exc, failure_type=failure.kind.value)
                raise DeliveryError(failure.user_message, failure) from exc
        worker.status.last_successful_outbound_at = self.now()

    async def health_check(self, tenant_id: str) -> HealthReport:
        worker = self._workers.get(tenant_id)
        if worker is None:
            mirror = await asyncio.to_thread(self.status_store.get_status, tenant_id)
            return HealthReport(
                tenant_id=tenant_id,
                status=HealthStatus.UNKNOWN,
                error="Session is not connected",
                last_successful_outbound_at=mirror.last_successful_outbound_at if mirror else None,
                last_inbound_at=mirror.last_inbound_at if mirror else None,
                checked_at=self.now(),
            )

        status = worker.status
        report = HealthReport(
            tenant_id=tenant_id,
            status=HealthStatus.UNKNOWN,
            last_successful_outbound_at=status.last_successful_outbound_at,
            last_inbound_at=status.last_inbound_at,
            checked_at=self.now(),
        )
        if worker.state != SessionState.CONNECTED or worker.handle is None:
            report.error = "Session is not connected"
            return report
        if not worker.handle.identity:
            report.error = "Tenant has no identity to probe"
            return report

        with start_span("session.health_check", {"tenant_id": tenant_id}) as span:
            try:
                await asyncio.wait_for(
                    self.transport.send(
                        worker.handle, address_for_identity(worker.handle.identity), HEALTH_PROBE_TEXT
                    ),
                    timeout=self.settings.health_probe_timeout_seconds,
                )
            except (TransportError, asyncio.TimeoutError) as exc:
                span_record_error(span, exc, failure_type="health_probe_failed")
                report.error = str(exc) or "Health probe timed out"
                last_outbound = status.last_successful_outbound_at
                recent = timedelta(seconds=self.settings.health_recent_activity_seconds)
                if last_outbound is not None and self.now() - last_outbound <= recent:
                    report.status = HealthStatus.DEGRADED
                return report

        report.status = HealthStatus.OPERATIONAL
        return report

    async def disconnect(self, tenant_id: str) -> None:
        worker = self._workers.get(tenant_id)
        if worker is None:
            return
        future = asyncio.get_running_loop().create_future()
        await worker.submit(_Disconnect(future=future))
        await future

    async def status(self, tenant_id: str) -> SessionStatus:
        worker = self._workers.get(tenant_id)
        if worker is not None:
            return worker.status.model_copy()
        mirror = await asyncio.to_thread(self.status_store.get_status, tenant_id)
        if mirror is not None:
            return mirror
        return SessionStatus(tenant_id=tenant_id)

    def list_sessions(self) -> list[SessionStatus]:
        return [self._workers[tenant_id].status.model_copy() for tenant_id in sorted(self._workers)]

    def refresh_tenant(self, tenant: Tenant) -> None:
        """Point a live session at the tenant's current primary identity."""
        worker = self._workers.get(tenant.tenant_id)
        if worker is None or worker.handle is None:
            return
        if worker.handle.identity != tenant.primary_identity:
            worker.handle = replace(worker.handle, identity=tenant.primary_identity)
            _logger.info("session_identity_refreshed tenant_id=%s", tenant.tenant_id)

    async def unnotified_disconnects(self) -> list[SessionStatus]:
        """Mirror rows for sessions that dropped and nobody has been told about yet."""
        statuses = await asyncio.to_thread(self.status_store.list_statuses, DROPPED_STATES)
        return [status for status in statuses if not status.notified]

    async def mark_notified(self, tenant_id: str) -> bool:
        worker = self._workers.get(tenant_id)
        if worker is not None:
            worker.status.notified = True
        return await asyncio.to_thread(self.status_store.mark_notified, tenant_id)

    async def connection_stats(self) -> dict[str, int]:
        statuses = await asyncio.to_thread(self.status_store.list_statuses)
        stats = {state.value: 0 for state in SessionState}
        for status in statuses:
            stats[status.state.value] += 1
        stats["total"] = len(statuses)
        return stats

    def reconnect_pending(self, tenant_id: str) -> bool:
        worker = self._workers.get(tenant_id)
        return worker is not None and worker.reconnect_pending

    async def reconnect_all(self) -> list[str]:
        """Reconnect every trial/active tenant that has stored credentials."""
        tenants = await asyncio.to_thread(
            self.tenant_store.list_tenants, {SubscriptionState.TRIAL, SubscriptionState.ACTIVE}
        )
        candidates: list[str] = []
        for tenant in tenants:
            if tenant.tenant_id in self._workers:
                continue
            has_credentials = await asyncio.to_thread(self.credential_store.has_credentials, tenant.tenant_id)
            if not has_credentials:
                _logger.info("reconnect_skipped_no_credentials tenant_id=%s", tenant.tenant_id)
                continue
            candidates.append(tenant.tenant_id)

        results = await asyncio.gather(*(self.connect(tenant_id) for tenant_id in candidates), return_exceptions=True)
        for tenant_id, result in zip(candidates, results):
            if isinstance(result, BaseException):
                log_event(
                    _logger,
                    "reconnect_failed",
                    level=logging.WARNING,
                    tenant_id=tenant_id,
                    error=str(result),
                )
        log_event(_logger, "reconnect_all_completed", attempted=len(candidates), total=len(tenants))
        return candidates

    async def shutdown(self) -> None:
        workers = list(self._workers.values())
        self._workers.clear()
        await asyncio.gather(*(worker.shutdown() for worker in workers), return_exceptions=True)
