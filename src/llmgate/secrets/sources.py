# src/llmgate/secrets/sources.py

from __future__ import annotations
import logging
import os
import threading
from typing import Dict, Iterable, List, Optional, Sequence, Union

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from llmgate.core.ports import SecretStore

log = logging.getLogger(__name__)

DEFAULT_SERVICE = "llmgate"


class MemorySecretStore:
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def load(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def save(self, key: str, value: str) -> bool:
        with self._lock:
            self._data[key] = value
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            self._data.pop(key, None)
        return True


class EnvSecretStore:
    """
    Read-only view over environment variables.
    mapping lets a key point at an explicit env var; otherwise
    'anthropic-api-key' -> ANTHROPIC_API_KEY.
    """

    def __init__(self, mapping: Optional[Dict[str, str]] = None):
        self._map = dict(mapping or {})

    @staticmethod
    def env_name(key: str) -> str:
        return key.upper().replace("-", "_").replace(".", "_")

    def load(self, key: str) -> Optional[str]:
        for name in (self._map.get(key), self.env_name(key)):
            if not name:
                continue
            val = os.getenv(name)
            if val and val.strip():
                return val.strip()
        return None

    def save(self, key: str, value: str) -> bool:
        return False

    def delete(self, key: str) -> bool:
        return False


class KeyringSecretStore:
    """System keychain via `keyring`; one entry per key under a single service name."""

    def __init__(self, service: str = DEFAULT_SERVICE):
        self.service = service

    def load(self, key: str) -> Optional[str]:
        try:
            val = keyring.get_password(self.service, key)
        except KeyringError as e:
            log.warning("keyring lookup for %s failed: %s", key, e)
            return None
        return val.strip() if val else None

    def save(self, key: str, value: str) -> bool:
        try:
            keyring.set_password(self.service, key, value)
        except KeyringError as e:
            log.warning("keyring save for %s failed: %s", key, e)
            return False
        return True

    def delete(self, key: str) -> bool:
        try:
            keyring.delete_password(self.service, key)
        except PasswordDeleteError:
            return True  # nothing stored is as good as deleted
        except KeyringError as e:
            log.warning("keyring delete for %s failed: %s", key, e)
            return False
        return True


class ChainedSecretStore:
    """
    Resolve secrets using one or more stores in order.
    Saves land in the first store that accepts them; deletes go to all.
    """

    def __init__(self, stores: Sequence[SecretStore]):
        self.stores = list(stores)

    def load(self, key: str) -> Optional[str]:
        for store in self.stores:
            val = store.load(key)
            if val:
                return val
        return None

    def save(self, key: str, value: str) -> bool:
        return any(store.save(key, value) for store in self.stores)

    def delete(self, key: str) -> bool:
        results = [store.delete(key) for store in self.stores]
        return any(results)


_ALLOWED_METHODS = {"env", "keyring", "memory"}


def _normalise_methods(method: Union[str, Iterable[str]]) -> List[str]:
    if isinstance(method, str):
        methods = [method]
    else:
        methods = list(method)
    norm = []
    for m in methods:
        key = str(m).strip().lower()
        if key not in _ALLOWED_METHODS:
            raise ValueError(f"Unknown secrets method '{m}'. Allowed: {sorted(_ALLOWED_METHODS)}")
        if key not in norm:
            norm.append(key)
    return norm


def build_secret_store(
    method: Union[str, Iterable[str]],
    mapping: Optional[Dict[str, str]] = None,
    *,
    service: str = DEFAULT_SERVICE,
) -> SecretStore:
    stores: List[SecretStore] = []
    for name in _normalise_methods(method):
        if name == "env":
            stores.append(EnvSecretStore(mapping))
        elif name == "keyring":
            stores.append(KeyringSecretStore(service))
        elif name == "memory":
            stores.append(MemorySecretStore())
    if len(stores) == 1:
        return stores[0]
    return ChainedSecretStore(stores)
