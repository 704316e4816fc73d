from __future__ import annotations

from responder_gateway.domain.errors import InvalidTransitionError
from responder_gateway.domain.models import SessionState


ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.CONNECTING}),
    SessionState.CONNECTING: frozenset(
        {
            SessionState.CONNECTED,
            SessionState.DISCONNECTING,
            SessionState.DISCONNECTED,
            SessionState.RECONNECTING,
            SessionState.TERMINAL,
        }
    ),
    SessionState.CONNECTED: frozenset(
        {
            SessionState.DISCONNECTING,
            SessionState.DISCONNECTED,
            SessionState.RECONNECTING,
            SessionState.TERMINAL,
        }
    ),
    SessionState.DISCONNECTING: frozenset({SessionState.DISCONNECTED}),
    SessionState.DISCONNECTED: frozenset({SessionState.CONNECTING, SessionState.RECONNECTING}),
    SessionState.RECONNECTING: frozenset({SessionState.CONNECTING, SessionState.DISCONNECTING}),
    SessionState.TERMINAL: frozenset({SessionState.IDLE}),
}


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def transition(current: SessionState, target: SessionState) -> SessionState:
    if not can_transition(current, target):
        raise InvalidTransitionError(f"invalid session transition {current.value} -> {target.value}")
    return target
