from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from zoneinfo import ZoneInfo

from responder_gateway.domain.models import OperatingHours, SubscriptionState, Tenant


RENEWAL_NOTICE = (
    "This business's automated replies are paused because its subscription has expired. "
    "Please contact the business directly, or try again later."
)
STOP_ACK = "You've unsubscribed from automated messages. Send 'START' to subscribe again."
START_ACK = 'Welcome back! 👋 Send "HELP" to see what I can help you with.'
RATE_LIMIT_NOTICE = "You've sent too many messages. Please try again later."


class Command(str, Enum):
    STATUS = "STATUS"
    RELOAD = "RELOAD"
    STOP = "STOP"
    START = "START"


OPERATOR_COMMANDS = {Command.STATUS, Command.RELOAD}


def parse_command(text: str) -> Command | None:
    token = (text or "").strip().upper()
    if token.startswith("/"):
        token = token[1:]
    try:
        return Command(token)
    except ValueError:
        return None


def is_operator(tenant: Tenant, identity: str) -> bool:
    return identity in set(tenant.operator_identities)


@dataclass(frozen=True)
class SubscriptionDecision:
    allowed: bool
    lapsed: bool = False


def check_subscription(tenant: Tenant, now: datetime) -> SubscriptionDecision:
    """``lapsed`` means the stored state still permits service but its end date has passed."""
    subscription = tenant.subscription
    if not subscription.state.permits_service:
        return SubscriptionDecision(allowed=False)
    if subscription.state == SubscriptionState.TRIAL:
        ends_at = subscription.trial_ends_at
    else:
        ends_at = subscription.period_ends_at
    if ends_at is not None and ends_at <= now:
        return SubscriptionDecision(allowed=False, lapsed=True)
    return SubscriptionDecision(allowed=True)


def local_time(hours: OperatingHours, now: datetime) -> datetime:
    return now.astimezone(ZoneInfo(hours.timezone))


def is_open(hours: OperatingHours, now: datetime) -> bool:
    local = local_time(hours, now)
    if local.weekday() in set(hours.closed_weekdays):
        return False
    start, end, hour = hours.start_hour, hours.end_hour, local.hour
    if start == end:
        return True
    if start < end:
        return start <= hour < end
    # window wraps past midnight
    return hour >= start or hour < end
