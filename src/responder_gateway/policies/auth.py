"""Admin API authentication.

Admin callers present an HS256 bearer token signed with ``JWT_SHARED_SECRET``.
Outside production an unset secret means the API is open to a local-dev
principal; in production it is a configuration error.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Iterable

from fastapi import HTTPException
import jwt

from responder_gateway.config import Settings


_logger = logging.getLogger(__name__)

WILDCARD_TENANT = "*"


@dataclass(frozen=True)
class AdminPrincipal:
    subject: str
    roles: frozenset[str]
    scopes: frozenset[str]
    tenant_ids: frozenset[str]

    @property
    def is_platform_admin(self) -> bool:
        return "platform_admin" in self.roles

    def holds_any(self, roles: set[str] | None, scopes: set[str] | None) -> bool:
        if not roles and not scopes:
            return True
        return bool(self.roles & (roles or set())) or bool(self.scopes & (scopes or set()))

    def can_manage(self, tenant_id: str) -> bool:
        return self.is_platform_admin or WILDCARD_TENANT in self.tenant_ids or tenant_id in self.tenant_ids


LOCAL_DEV_PRINCIPAL = AdminPrincipal(
    subject="local-dev",
    roles=frozenset({"platform_admin"}),
    scopes=frozenset(),
    tenant_ids=frozenset({WILDCARD_TENANT}),
)


class AdminAuthService:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @property
    def open_mode(self) -> bool:
        return not self.settings.jwt_shared_secret

    def authenticate(self, authorization: str) -> AdminPrincipal:
        if self.open_mode:
            if self.settings.app_env.strip().lower() in {"prod", "production"}:
                raise HTTPException(
                    status_code=500,
                    detail="Admin authentication is not configured. Set JWT_SHARED_SECRET.",
                )
            return LOCAL_DEV_PRINCIPAL

        claims = self._decode(authorization)
        return AdminPrincipal(
            subject=str(claims.get("sub") or "unknown"),
            roles=frozenset(_claim_values(claims, "roles", "role")),
            scopes=frozenset(_claim_values(claims, "scp", "scope")),
            tenant_ids=frozenset(_claim_values(claims, "tenant_ids", "tenant_id")),
        )

    def authorize(
        self,
        principal: AdminPrincipal,
        required_roles: set[str] | None = None,
        required_scopes: set[str] | None = None,
        tenant_id: str | None = None,
    ) -> None:
        if principal is LOCAL_DEV_PRINCIPAL:
            return
        if not principal.holds_any(required_roles, required_scopes):
            raise HTTPException(status_code=403, detail="Admin principal lacks required role or scope")
        if tenant_id and not principal.can_manage(tenant_id):
            _logger.info("admin_tenant_denied subject=%s tenant_id=%s", principal.subject, tenant_id)
            raise HTTPException(status_code=403, detail="Admin principal is not authorized for this tenant")

    def _decode(self, authorization: str) -> dict[str, Any]:
        scheme, _, token = (authorization or "").partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise HTTPException(status_code=401, detail="Missing bearer token")
        try:
            return jwt.decode(token, self.settings.jwt_shared_secret, algorithms=[self.settings.jwt_algorithm])
        except jwt.PyJWTError as err:
            raise HTTPException(status_code=401, detail="Invalid bearer token") from err


def _claim_values(claims: dict[str, Any], *keys: str) -> set[str]:
    """Collect string values for ``keys``; a claim may be a list or a space/comma separated string."""
    values: set[str] = set()
    for key in keys:
        raw = claims.get(key)
        items: Iterable[Any]
        if isinstance(raw, str):
            items = raw.replace(",", " ").split()
        elif isinstance(raw, list):
            items = raw
        else:
            continue
        values.update(text for text in (str(item).strip() for item in items) if text)
    return values
