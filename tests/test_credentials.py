from __future__ import annotations

import pytest

from responder_gateway.adapters.credentials import FileCredentialStore


def test_file_store_tracks_credentials_per_tenant(tmp_path) -> None:
    store = FileCredentialStore(tmp_path / "sessions")

    ref = store.credentials_ref("t1")
    assert ref.endswith("tenant_t1")
    assert not store.has_credentials("t1")

    (tmp_path / "sessions" / "tenant_t1" / "creds.json").write_text("{}")
    assert store.has_credentials("t1")
    assert not store.has_credentials("t2")

    store.clear("t1")
    assert not store.has_credentials("t1")
    store.clear("t1")


def test_file_store_rejects_path_like_tenant_ids(tmp_path) -> None:
    store = FileCredentialStore(tmp_path)
    with pytest.raises(ValueError):
        store.credentials_ref("../escape")
