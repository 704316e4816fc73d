from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
import logging
import time
from typing import Callable

from responder_gateway.config import Settings
from responder_gateway.domain.errors import InvalidIdentityError, SessionError
from responder_gateway.domain.identities import identity_from_address, is_group_address
from responder_gateway.domain.models import InboundEvent, Tenant
from responder_gateway.policies.quota import QuotaTracker
from responder_gateway.routing.gates import (
    OPERATOR_COMMANDS,
    RATE_LIMIT_NOTICE,
    RENEWAL_NOTICE,
    START_ACK,
    STOP_ACK,
    Command,
    check_subscription,
    is_open,
    is_operator,
    local_time,
    parse_command,
)
from responder_gateway.routing.matcher import find_match
from responder_gateway.services.subscriptions import SubscriptionService
from responder_gateway.services.tenants import TenantService
from responder_gateway.sessions.manager import SessionLifecycleManager
from responder_gateway.telemetry import log_event, span_set_attributes, start_span, telemetry_tags


_logger = logging.getLogger(__name__)

_ECHO_PRUNE_THRESHOLD = 1000


class PipelineOutcome(str, Enum):
    IGNORED_GROUP = "ignored_group"
    IGNORED_INVALID_SENDER = "ignored_invalid_sender"
    UNRESOLVED = "unresolved"
    IGNORED_SELF = "ignored_self"
    IGNORED_ECHO = "ignored_echo"
    OPERATOR_STATUS = "operator_status"
    OPERATOR_RELOAD = "operator_reload"
    UNSUBSCRIBED = "unsubscribed"
    RESUBSCRIBED = "resubscribed"
    SUBSCRIPTION_BLOCKED = "subscription_blocked"
    RATE_LIMITED = "rate_limited"
    AFTER_HOURS = "after_hours"
    ANSWERED = "answered"
    DEFAULT_REPLY = "default_reply"


@dataclass(frozen=True)
class PipelineResult:
    outcome: PipelineOutcome
    reply: str | None = None
    category: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RoutingPipeline:
    def __init__(
        self,
        settings: Settings,
        tenants: TenantService,
        subscriptions: SubscriptionService,
        quota: QuotaTracker,
        sessions: SessionLifecycleManager,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.tenants = tenants
        self.subscriptions = subscriptions
        self.quota = quota
        self.sessions = sessions
        self._clock = clock
        self._monotonic = monotonic
        self._recent_replies: dict[tuple[str, str], tuple[str, float]] = {}

    async def handle(self, event: InboundEvent) -> PipelineResult:
        started = time.perf_counter()
        with start_span("pipeline.inbound.handle", {"tenant_id": event.tenant_id}) as span:
            result = await self._route(event)
            span_set_attributes(span, {"outcome": result.outcome.value, "category": result.category})
        log_event(
            _logger,
            "pipeline_outcome",
            **telemetry_tags(
                tenant_id=event.tenant_id,
                outcome=result.outcome.value,
                category=result.category,
                environment=self.settings.app_env,
                latency_ms=int((time.perf_counter() - started) * 1000),
            ),
        )
        return result

    async def _route(self, event: InboundEvent) -> PipelineResult:
        if event.is_group or is_group_address(event.sender):
            return PipelineResult(PipelineOutcome.IGNORED_GROUP)

        try:
            sender = identity_from_address(event.sender, self.settings.default_country_code)
        except InvalidIdentityError:
            return PipelineResult(PipelineOutcome.IGNORED_INVALID_SENDER)

        try:
            tenant = await asyncio.to_thread(self.tenants.get, event.tenant_id)
        except Exception:
            _logger.exception("tenant_lookup_failed tenant_id=%s", event.tenant_id)
            return PipelineResult(PipelineOutcome.UNRESOLVED)
        if tenant is None:
            _logger.warning("tenant_unresolved tenant_id=%s", event.tenant_id)
            return PipelineResult(PipelineOutcome.UNRESOLVED)

        if sender in tenant.identities:
            return PipelineResult(PipelineOutcome.IGNORED_SELF)
        if self._is_echo(tenant.tenant_id, sender, event.text):
            return PipelineResult(PipelineOutcome.IGNORED_ECHO)

        command = parse_command(event.text)
        if command in OPERATOR_COMMANDS and is_operator(tenant, sender):
            return await self._operator_command(tenant, event, sender, command)
        if command == Command.STOP:
            await self._reply(tenant.tenant_id, event.sender, sender, STOP_ACK)
            return PipelineResult(PipelineOutcome.UNSUBSCRIBED, reply=STOP_ACK)
        if command == Command.START:
            await self._reply(tenant.tenant_id, event.sender, sender, START_ACK)
            return PipelineResult(PipelineOutcome.RESUBSCRIBED, reply=START_ACK)

        now = self._clock()
        subscription = check_subscription(tenant, now)
        if not subscription.allowed:
            if subscription.lapsed:
                await asyncio.to_thread(self.subscriptions.expire, tenant.tenant_id)
            return await self._finish(tenant, event, sender, PipelineOutcome.SUBSCRIPTION_BLOCKED, RENEWAL_NOTICE)

        decision = await asyncio.to_thread(self.quota.check_limit, tenant.tenant_id, sender, tenant.quota_tier)
        if not decision.allowed:
            _logger.info(
                "quota_denied tenant_id=%s window=%s reason=%s", tenant.tenant_id, decision.window, decision.reason
            )
            return await self._finish(tenant, event, sender, PipelineOutcome.RATE_LIMITED, RATE_LIMIT_NOTICE)

        if not is_open(tenant.hours, now):
            return await self._finish(tenant, event, sender, PipelineOutcome.AFTER_HOURS, tenant.fallback_message)

        match = find_match(event.text, tenant.responders)
        outcome = PipelineOutcome.ANSWERED if match.matched else PipelineOutcome.DEFAULT_REPLY
        return await self._finish(tenant, event, sender, outcome, match.answer, match.category)

    async def _finish(
        self,
        tenant: Tenant,
        event: InboundEvent,
        sender: str,
        outcome: PipelineOutcome,
        reply: str,
        category: str | None = None,
    ) -> PipelineResult:
        await self._reply(tenant.tenant_id, event.sender, sender, reply)
        await asyncio.to_thread(
            self.quota.record_message,
            tenant.tenant_id,
            sender,
            outcome.value,
            category,
        )
        return PipelineResult(outcome, reply=reply, category=category)

    async def _reply(self, tenant_id: str, address: str, sender: str, text: str) -> bool:
        try:
            await self.sessions.send(tenant_id, address, text)
        except SessionError as exc:
            _logger.warning("reply_failed tenant_id=%s err=%s", tenant_id, exc)
            return False
        self._remember_reply(tenant_id, sender, text)
        return True

    def _remember_reply(self, tenant_id: str, sender: str, text: str) -> None:
        now = self._monotonic()
        if len(self._recent_replies) >= _ECHO_PRUNE_THRESHOLD:
            window = self.settings.echo_suppression_seconds
            self._recent_replies = {
                key: value for key, value in self._recent_replies.items() if now - value[1] <= window
            }
        self._recent_replies[(tenant_id, sender)] = (text.strip(), now)

    def _is_echo(self, tenant_id: str, sender: str, text: str) -> bool:
        recent = self._recent_replies.get((tenant_id, sender))
        if recent is None:
            return False
        last_text, sent_at = recent
        if self._monotonic() - sent_at > self.settings.echo_suppression_seconds:
            return False
        return last_text == (text or "").strip()

    async def _operator_command(
        self,
        tenant: Tenant,
        event: InboundEvent,
        sender: str,
        command: Command,
    ) -> PipelineResult:
        if command == Command.RELOAD:
            self.tenants.invalidate(tenant.tenant_id)
            reloaded = await asyncio.to_thread(self.tenants.get, tenant.tenant_id)
            count = len(reloaded.responders) if reloaded is not None else 0
            reply = f"✅ FAQs reloaded ({count} entries)."
            await self._reply(tenant.tenant_id, event.sender, sender, reply)
            return PipelineResult(PipelineOutcome.OPERATOR_RELOAD, reply=reply)

        reply = await self._status_report(tenant)
        await self._reply(tenant.tenant_id, event.sender, sender, reply)
        return PipelineResult(PipelineOutcome.OPERATOR_STATUS, reply=reply)

    async def _status_report(self, tenant: Tenant) -> str:
        session = await self.sessions.status(tenant.tenant_id)
        now = self._clock()
        hours = tenant.hours
        stats = self.tenants.cache.stats()
        opened = "open" if is_open(hours, now) else "closed"
        lines = [
            "📊 Status",
            f"Connection: {session.state.value}",
            f"FAQs: {len(tenant.responders)}",
            f"Subscription: {tenant.subscription.state.value} (tier: {tenant.quota_tier.value})",
            f"Hours: {opened} ({hours.start_hour:02d}:00-{hours.end_hour:02d}:00 {hours.timezone})",
            f"Time: {local_time(hours, now).strftime('%Y-%m-%d %H:%M')}",
            f"Cache: hits={stats['hits']} misses={stats['misses']} size={stats['size']} hit_rate={stats['hit_rate']}",
        ]
        return "\n".join(lines)
