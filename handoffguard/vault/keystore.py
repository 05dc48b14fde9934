"""
Secure key stores for exported session keys.

A key store is optional. Without one, session keys live only in process
memory and are gone (shredded) when the process exits.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional

from .storage import KeyValueStorage

STRICT_PROFILE = "strict"


class SecureKeyStore(ABC):
    """Async get/set/remove of base64 key material."""

    @abstractmethod
    async def get_item(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set_item(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def remove_item(self, key: str) -> None:
        pass


class MemorySecureKeyStore(SecureKeyStore):
    """Keys survive vault instances but not the process."""

    def __init__(self):
        self._items: Dict[str, str] = {}

    async def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    async def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def __len__(self) -> int:
        return len(self._items)


class NullSecureKeyStore(SecureKeyStore):
    """Stores nothing."""

    async def get_item(self, key: str) -> Optional[str]:
        return None

    async def set_item(self, key: str, value: str) -> None:
        return None

    async def remove_item(self, key: str) -> None:
        return None


class StorageSecureKeyStore(SecureKeyStore):
    """Keys persisted in a separate key-value storage (e.g. its own SQLite file)."""

    def __init__(self, storage: KeyValueStorage):
        self.storage = storage

    async def get_item(self, key: str) -> Optional[str]:
        return self.storage.get_item(key)

    async def set_item(self, key: str, value: str) -> None:
        self.storage.set_item(key, value)

    async def remove_item(self, key: str) -> None:
        self.storage.remove_item(key)


def default_key_store(privacy_profile: str, persistent: Optional[KeyValueStorage] = None) -> SecureKeyStore:
    """Strict profiles never write keys to disk."""
    if privacy_profile == STRICT_PROFILE or persistent is None:
        return MemorySecureKeyStore()
    return StorageSecureKeyStore(persistent)
