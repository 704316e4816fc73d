from __future__ import annotations

import logging
from pathlib import Path
import shutil
import threading

from responder_gateway.domain.interfaces import CredentialStore


_logger = logging.getLogger(__name__)


class FileCredentialStore(CredentialStore):
    """One directory per tenant under ``root``; transports own the blob format inside it."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _tenant_dir(self, tenant_id: str) -> Path:
        if not tenant_id or "/" in tenant_id or tenant_id in {".", ".."}:
            raise ValueError(f"invalid tenant id for credential path: {tenant_id!r}")
        return self.root / f"tenant_{tenant_id}"

    def has_credentials(self, tenant_id: str) -> bool:
        path = self._tenant_dir(tenant_id)
        return path.is_dir() and any(path.iterdir())

    def credentials_ref(self, tenant_id: str) -> str:
        path = self._tenant_dir(tenant_id)
        path.mkdir(parents=True, exist_ok=True)
        return str(path)

    def clear(self, tenant_id: str) -> None:
        path = self._tenant_dir(tenant_id)
        if path.exists():
            shutil.rmtree(path)
            _logger.info("credentials_cleared tenant_id=%s", tenant_id)


class InMemoryCredentialStore(CredentialStore):
    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, tenant_id: str, blob: bytes) -> None:
        with self._lock:
            self._blobs[tenant_id] = blob

    def has_credentials(self, tenant_id: str) -> bool:
        with self._lock:
            return bool(self._blobs.get(tenant_id))

    def credentials_ref(self, tenant_id: str) -> str:
        return f"memory://{tenant_id}"

    def clear(self, tenant_id: str) -> None:
        with self._lock:
            self._blobs.pop(tenant_id, None)
