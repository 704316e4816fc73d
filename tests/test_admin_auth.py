from __future__ import annotations

import dataclasses

from fastapi import HTTPException
import jwt
import pytest

from responder_gateway.config import get_settings
from responder_gateway.policies.auth import LOCAL_DEV_PRINCIPAL, AdminAuthService


def _service(monkeypatch: pytest.MonkeyPatch, tmp_path, **overrides) -> AdminAuthService:
    monkeypatch.chdir(tmp_path)
    return AdminAuthService(dataclasses.replace(get_settings(), **overrides))


def test_open_mode_outside_production(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    service = _service(monkeypatch, tmp_path, app_env="dev", jwt_shared_secret="")
    assert service.authenticate("") is LOCAL_DEV_PRINCIPAL


def test_claims_accept_lists_and_separated_strings(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    service = _service(monkeypatch, tmp_path, jwt_shared_secret="s3cret", jwt_algorithm="HS256")
    token = jwt.encode(
        {"sub": "ops", "role": "tenant_admin", "scp": "sessions.read sessions.write", "tenant_ids": ["t1", "t2"]},
        "s3cret",
        algorithm="HS256",
    )

    principal = service.authenticate(f"Bearer {token}")

    assert principal.subject == "ops"
    assert principal.roles == {"tenant_admin"}
    assert principal.scopes == {"sessions.read", "sessions.write"}
    assert principal.tenant_ids == {"t1", "t2"}
    service.authorize(principal, required_scopes={"sessions.read"}, tenant_id="t2")
    with pytest.raises(HTTPException) as excinfo:
        service.authorize(principal, required_scopes={"sessions.read"}, tenant_id="t3")
    assert excinfo.value.status_code == 403


def test_wrong_scheme_and_signature_are_unauthorized(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    service = _service(monkeypatch, tmp_path, jwt_shared_secret="s3cret", jwt_algorithm="HS256")
    forged = jwt.encode({"sub": "ops"}, "other-secret", algorithm="HS256")

    for header in ("", f"Basic {forged}", "Bearer ", f"Bearer {forged}"):
        with pytest.raises(HTTPException) as excinfo:
            service.authenticate(header)
        assert excinfo.value.status_code == 401
