"""Session transport contract.

A transport owns the wire protocol to the messaging network. The gateway only
sees the events below and the ``send``/``close`` calls; every failure a
transport reports must be a :class:`TransportError`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import importlib
from typing import TYPE_CHECKING, AsyncIterator, Protocol, Union

from responder_gateway.domain.errors import TransportError

if TYPE_CHECKING:
    from responder_gateway.config import Settings


@dataclass(frozen=True)
class SessionHandle:
    tenant_id: str
    identity: str | None
    credentials_ref: str


@dataclass(frozen=True)
class PairingChallenge:
    code: str


@dataclass(frozen=True)
class SessionOpened:
    pass


@dataclass(frozen=True)
class SessionClosed:
    code: str | int | None = None
    message: str = ""


@dataclass(frozen=True)
class InboundMessage:
    sender: str
    text: str
    is_group: bool = False
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


TransportEvent = Union[PairingChallenge, SessionOpened, SessionClosed, InboundMessage]


class SessionTransport(Protocol):
    def open(self, handle: SessionHandle) -> AsyncIterator[TransportEvent]:
        raise NotImplementedError

    async def send(self, handle: SessionHandle, recipient: str, text: str) -> None:
        raise NotImplementedError

    async def close(self, handle: SessionHandle, *, logout: bool = False) -> None:
        raise NotImplementedError


class UnconfiguredTransport:
    """Placeholder used when no transport factory is configured."""

    async def open(self, handle: SessionHandle) -> AsyncIterator[TransportEvent]:
        raise TransportError(
            "transport_unconfigured",
            "No session transport configured. Set SESSION_TRANSPORT_FACTORY to 'module:callable'.",
        )
        yield  # pragma: no cover

    async def send(self, handle: SessionHandle, recipient: str, text: str) -> None:
        raise TransportError("transport_unconfigured", "No session transport configured.")

    async def close(self, handle: SessionHandle, *, logout: bool = False) -> None:
        return None


def resolve_transport(settings: Settings) -> SessionTransport:
    target = settings.session_transport_factory.strip()
    if not target:
        return UnconfiguredTransport()

    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError("SESSION_TRANSPORT_FACTORY must be in the form 'module:callable'")

    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    return factory(settings)
