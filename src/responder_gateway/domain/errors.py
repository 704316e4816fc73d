from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from responder_gateway.sessions.failures import Failure


class GatewayError(Exception):
    """Base class for errors raised by the gateway core."""


class TenantNotFoundError(GatewayError):
    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"tenant {tenant_id} not found")
        self.tenant_id = tenant_id


class TenantAlreadyExistsError(GatewayError):
    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"tenant {tenant_id} already exists")
        self.tenant_id = tenant_id


class InvalidIdentityError(GatewayError):
    pass


class IdentityAlreadyRegisteredError(GatewayError):
    def __init__(self, identity: str) -> None:
        super().__init__(
            f"identity {identity} is already registered to another tenant; identities must be globally unique"
        )
        self.identity = identity


class InvalidTransitionError(GatewayError):
    pass


class TransportError(Exception):
    """Raised by session transports; ``code`` is the transport's failure code."""

    def __init__(self, code: str | int | None, message: str = "") -> None:
        super().__init__(message or str(code))
        self.code = code
        self.message = message or str(code or "")


class SessionError(GatewayError):
    def __init__(self, message: str, failure: Failure | None = None) -> None:
        super().__init__(message)
        self.failure = failure


class AlreadyConnectedError(SessionError):
    pass


class NotConnectedError(SessionError):
    pass


class PairingTimeoutError(SessionError):
    pass


class ConnectFailedError(SessionError):
    pass


class DeliveryError(SessionError):
    pass


class SessionClosedError(SessionError):
    pass
