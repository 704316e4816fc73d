from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import re


class FailureKind(str, Enum):
    REVOKED = "revoked"
    ALREADY_LINKED = "already_linked"
    DEVICE_LIMIT = "device_limit"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    NETWORK = "network"
    SYNC_FAILED = "sync_failed"
    UNKNOWN = "unknown"


_TERMINAL = {FailureKind.REVOKED, FailureKind.ALREADY_LINKED}
_RETRYABLE = {
    FailureKind.RATE_LIMITED,
    FailureKind.TIMEOUT,
    FailureKind.NETWORK,
    FailureKind.SYNC_FAILED,
    FailureKind.UNKNOWN,
}


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    user_message: str
    code: str | None = None
    raw_message: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.kind in _TERMINAL

    @property
    def is_retryable(self) -> bool:
        return self.kind in _RETRYABLE


MSG_LOGGED_OUT = "Your messaging session was logged out. Please scan the QR code again to reconnect."
MSG_BAD_SESSION = "Invalid messaging session. Please scan the QR code again to reconnect."
MSG_ALREADY_LINKED = (
    "This number is already linked to another device. Please unlink it from the other device first, "
    "then try again."
)
MSG_DEVICE_LIMIT = (
    "This number has reached the maximum number of linked devices (4). "
    "Please unlink a device first, then try again."
)
MSG_RATE_LIMITED = "Too many connection attempts. Please wait 5 minutes and try again."
MSG_TIMEOUT = "Connection timeout. Please check your internet connection and try again."
MSG_NETWORK = "Network error. Please check your internet connection and try again."
MSG_CONNECTION_LOST = "Connection lost. We will automatically try to reconnect."
MSG_SYNC_FAILED = "Could not finish syncing message history. Please try reconnecting."

# (kind, user message) keyed by the transport's symbolic code
_BY_CODE: dict[str, tuple[FailureKind, str]] = {
    "logged_out": (FailureKind.REVOKED, MSG_LOGGED_OUT),
    "bad_session": (FailureKind.REVOKED, MSG_BAD_SESSION),
    "already_linked": (FailureKind.ALREADY_LINKED, MSG_ALREADY_LINKED),
    "device_limit": (FailureKind.DEVICE_LIMIT, MSG_DEVICE_LIMIT),
    "rate_limited": (FailureKind.RATE_LIMITED, MSG_RATE_LIMITED),
    "timed_out": (FailureKind.TIMEOUT, MSG_TIMEOUT),
    "network": (FailureKind.NETWORK, MSG_NETWORK),
    "connection_closed": (FailureKind.NETWORK, MSG_CONNECTION_LOST),
    "connection_lost": (FailureKind.NETWORK, MSG_CONNECTION_LOST),
    "restart_required": (FailureKind.NETWORK, MSG_CONNECTION_LOST),
    "sync_failed": (FailureKind.SYNC_FAILED, MSG_SYNC_FAILED),
}

_NUMERIC_CODES = {
    401: "logged_out",
    500: "bad_session",
    428: "connection_closed",
    408: "timed_out",
    429: "rate_limited",
    515: "restart_required",
}

_SYNC_PATTERN = re.compile(r"sync|history|couldn't finish|failed to sync", re.IGNORECASE)

# checked in order; first hit wins
_BY_MESSAGE: list[tuple[tuple[str, ...], str]] = [
    (("already linked", "device already"), "already_linked"),
    (("device limit", "max devices"), "device_limit"),
    (("rate limit", "too many", "429"), "rate_limited"),
    (("timeout", "timed out"), "timed_out"),
    (("network", "connection refused", "econnrefused", "enotfound"), "network"),
]


def _normalize_code(code: str | int | None) -> str | None:
    if code is None:
        return None
    if isinstance(code, int):
        return _NUMERIC_CODES.get(code, str(code))
    text = str(code).strip().lower()
    if text.isdigit():
        return _NUMERIC_CODES.get(int(text), text)
    return text or None


def classify_failure(code: str | int | None, message: str = "") -> Failure:
    """Map a transport failure code and message to a classified :class:`Failure`."""
    symbolic = _normalize_code(code)
    raw = message or ""

    if symbolic in _BY_CODE:
        kind, user_message = _BY_CODE[symbolic]
        return Failure(kind=kind, user_message=user_message, code=symbolic, raw_message=raw)

    lowered = raw.lower()
    for needles, mapped in _BY_MESSAGE:
        if any(needle in lowered for needle in needles):
            kind, user_message = _BY_CODE[mapped]
            return Failure(kind=kind, user_message=user_message, code=symbolic, raw_message=raw)

    if _SYNC_PATTERN.search(raw):
        return Failure(kind=FailureKind.SYNC_FAILED, user_message=MSG_SYNC_FAILED, code=symbolic, raw_message=raw)

    return Failure(
        kind=FailureKind.UNKNOWN,
        user_message=raw or "Connection failed",
        code=symbolic,
        raw_message=raw,
    )
