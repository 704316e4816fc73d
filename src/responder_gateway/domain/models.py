from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


DEFAULT_AFTER_HOURS_MESSAGE = (
    "Thanks for your message! We're currently closed. We'll reply first thing when we open. 😊"
)


class QuotaTier(str, Enum):
    TRIAL = "trial"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class SubscriptionState(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def permits_service(self) -> bool:
        return self in {SubscriptionState.TRIAL, SubscriptionState.ACTIVE}


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    TERMINAL = "terminal"


class HealthStatus(str, Enum):
    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    UNKNOWN = "unknown"


class ResponderEntry(BaseModel):
    keywords: list[str]
    answer: str
    category: str | None = None


class OperatingHours(BaseModel):
    start_hour: int = Field(default=9, ge=0, le=23)
    end_hour: int = Field(default=17, ge=0, le=24)
    timezone: str = "Africa/Lagos"
    closed_weekdays: list[int] = Field(default_factory=lambda: [5, 6])

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as err:
            raise ValueError(f"unknown timezone: {value!r}") from err
        return value

    @field_validator("closed_weekdays")
    @classmethod
    def _check_weekdays(cls, value: list[int]) -> list[int]:
        for day in value:
            if day < 0 or day > 6:
                raise ValueError("closed_weekdays entries must be between 0 (Monday) and 6 (Sunday)")
        return sorted(set(value))


class Subscription(BaseModel):
    state: SubscriptionState = SubscriptionState.TRIAL
    trial_started_at: datetime | None = None
    trial_ends_at: datetime | None = None
    period_started_at: datetime | None = None
    period_ends_at: datetime | None = None
    last_payment_at: datetime | None = None
    last_payment_amount: float | None = None
    last_payment_reference: str | None = None


class Tenant(BaseModel):
    tenant_id: str
    name: str
    identities: list[str]
    quota_tier: QuotaTier = QuotaTier.TRIAL
    subscription: Subscription = Field(default_factory=Subscription)
    hours: OperatingHours = Field(default_factory=OperatingHours)
    fallback_message: str = DEFAULT_AFTER_HOURS_MESSAGE
    responders: list[ResponderEntry] = Field(default_factory=list)
    operator_identities: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def primary_identity(self) -> str | None:
        return self.identities[0] if self.identities else None


class SessionStatus(BaseModel):
    tenant_id: str
    state: SessionState = SessionState.IDLE
    last_connected_at: datetime | None = None
    last_disconnected_at: datetime | None = None
    disconnect_reason: str | None = None
    last_successful_outbound_at: datetime | None = None
    last_inbound_at: datetime | None = None
    notified: bool = False
    updated_at: datetime = Field(default_factory=_utcnow)


class HealthReport(BaseModel):
    tenant_id: str
    status: HealthStatus
    error: str | None = None
    last_successful_outbound_at: datetime | None = None
    last_inbound_at: datetime | None = None
    checked_at: datetime = Field(default_factory=_utcnow)


class InboundEvent(BaseModel):
    tenant_id: str
    sender: str
    text: str
    is_group: bool = False
    received_at: datetime = Field(default_factory=_utcnow)


class QuotaWindowRecord(BaseModel):
    tenant_id: str
    sender: str
    hour_key: str
    day_key: str
    month_key: str
    outcome: str | None = None
    category: str | None = None
    created_at: datetime


class QuotaRemaining(BaseModel):
    """Remaining allowance per window; ``None`` means the window is unlimited."""

    hourly: int | None
    daily: int | None
    monthly: int | None


class LimitDecision(BaseModel):
    allowed: bool
    window: str | None = None
    reason: str | None = None
    remaining: QuotaRemaining


class CreateTenantRequest(BaseModel):
    name: str
    identities: list[str]
    quota_tier: QuotaTier = QuotaTier.TRIAL
    trial_days: int = Field(default=7, ge=0)
    hours: OperatingHours | None = None
    fallback_message: str | None = None
    responders: list[ResponderEntry] = Field(default_factory=list)
    operator_identities: list[str] = Field(default_factory=list)


class UpdateTenantConfigRequest(BaseModel):
    name: str | None = None
    hours: OperatingHours | None = None
    fallback_message: str | None = None
    responders: list[ResponderEntry] | None = None
    operator_identities: list[str] | None = None


class AddIdentityRequest(BaseModel):
    identity: str


class ActivateSubscriptionRequest(BaseModel):
    tier: QuotaTier
    amount: float = Field(ge=0)
    reference: str
    months: int = Field(default=1, ge=1)


class ConnectResponse(BaseModel):
    tenant_id: str
    state: SessionState
    pairing_code: str | None = None


class UsageSummary(BaseModel):
    tenant_id: str
    month: str
    messages_used: int
