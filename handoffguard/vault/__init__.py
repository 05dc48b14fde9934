"""Encrypted local persistence: raw-segment vault and structured session store."""

from .keystore import (
    MemorySecureKeyStore,
    NullSecureKeyStore,
    SecureKeyStore,
    StorageSecureKeyStore,
    default_key_store,
)
from .scope import StorageScope, VaultKeyspace, normalize_scope
from .session_store import StructuredSessionRecord, StructuredSessionStore
from .storage import FailClosedStorage, KeyValueStorage, MemoryStorage, SQLiteStorage
from .vault import DEFAULT_RAW_TTL_MS, Encryptor, HandoffVault

__all__ = [
    "DEFAULT_RAW_TTL_MS",
    "Encryptor",
    "FailClosedStorage",
    "HandoffVault",
    "KeyValueStorage",
    "MemorySecureKeyStore",
    "MemoryStorage",
    "NullSecureKeyStore",
    "SQLiteStorage",
    "SecureKeyStore",
    "StorageScope",
    "StorageSecureKeyStore",
    "StructuredSessionRecord",
    "StructuredSessionStore",
    "VaultKeyspace",
    "default_key_store",
    "normalize_scope",
]
