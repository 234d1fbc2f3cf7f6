"""Key/value stores for wallet mnemonics.

Both backends expose the same three calls (``get``, ``put``, ``delete``).
Calls are blocking; async callers wrap them in ``asyncio.to_thread``.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Optional, Protocol

import requests

from .config import RelayConfig
from .errors import ConfigError, RelayError

logger = logging.getLogger(__name__)

__all__ = ["SecretStore", "InMemorySecretStore", "VaultSecretStore", "build_secret_store"]


class SecretStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def put(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemorySecretStore:
    """Process-local store for development and tests. Contents vanish on exit."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data)

    def __len__(self) -> int:
        return len(self._data)


class VaultSecretStore:
    """HashiCorp Vault KV v2 backend.

    ``secret_path`` is the data path of the mount (``secret/data/mcp``);
    permanent deletion goes through the matching metadata path.
    """

    def __init__(
        self,
        addr: str,
        token: str,
        secret_path: str = "secret/data/mcp",
        namespace: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.addr = addr.rstrip("/")
        self.secret_path = secret_path.strip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers["X-Vault-Token"] = token
        if namespace:
            self.session.headers["X-Vault-Namespace"] = namespace

    def _url(self, key: str, metadata: bool = False) -> str:
        path = self.secret_path
        if metadata:
            path = path.replace("/data", "/metadata", 1)
        return f"{self.addr}/v1/{path}/{key}"

    def get(self, key: str) -> Optional[str]:
        resp = self.session.get(self._url(key), timeout=self.timeout)
        if resp.status_code == 404:
            return None
        if not resp.ok:
            raise RelayError(f"Vault read failed for {key}: HTTP {resp.status_code}")
        value = resp.json().get("data", {}).get("data", {}).get("value")
        return value if isinstance(value, str) else None

    def put(self, key: str, value: str) -> None:
        resp = self.session.post(self._url(key), json={"data": {"value": value}}, timeout=self.timeout)
        if not resp.ok:
            raise RelayError(f"Vault write failed for {key}: HTTP {resp.status_code}")
        logger.debug("Stored secret %s in Vault", key)

    def delete(self, key: str) -> None:
        resp = self.session.delete(self._url(key, metadata=True), timeout=self.timeout)
        if resp.status_code == 404:
            return
        if not resp.ok:
            raise RelayError(f"Vault delete failed for {key}: HTTP {resp.status_code}")
        logger.debug("Deleted secret %s from Vault", key)

    def test_connection(self) -> bool:
        try:
            resp = self.session.get(f"{self.addr}/v1/sys/health", timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error("Vault health check failed: %s", exc)
            return False
        # 429/473 are healthy standby nodes
        healthy = resp.status_code in (200, 429, 473)
        if not healthy:
            logger.error("Vault health check returned HTTP %s", resp.status_code)
        return healthy


def build_secret_store(config: RelayConfig) -> SecretStore:
    if config.secrets_backend == "vault":
        if not (config.vault_addr and config.vault_token):
            raise ConfigError("Vault secret backend requires VAULT_ADDR and VAULT_TOKEN")
        logger.info("Using Vault secret store at %s", config.vault_addr)
        return VaultSecretStore(
            config.vault_addr,
            config.vault_token,
            secret_path=config.vault_secret_path,
            namespace=config.vault_namespace,
        )
    if config.is_production:
        raise ConfigError("The in-memory secret store cannot be used in production")
    logger.warning("Using in-memory secret store; secrets will not survive a restart")
    return InMemorySecretStore()
