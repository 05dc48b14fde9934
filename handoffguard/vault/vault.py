"""
Raw-segment vault.

Raw transcript segments are encrypted with a per-session AES-256-GCM key and
kept under a TTL. Deleting the key (crypto-shred) makes the ciphertext
permanently unreadable. Every storage and key-store call fails closed: the
vault returns False/None/0 and never raises past its boundary.

Usage:
    vault = HandoffVault(SQLiteStorage(path), secure_store=MemorySecureKeyStore())
    await vault.save_raw_segments("session-1", segments)
    segments = await vault.load_raw_segments("session-1")
    await vault.crypto_shred_session("session-1")
"""

import base64
import binascii
import json
import logging
import os
import time
from typing import Callable, Dict, List, Optional, Sequence

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..config import HOUR_MS
from ..exceptions import VaultError
from ..types import RawSegment, VaultRecord
from .keystore import SecureKeyStore
from .scope import StorageScope, VaultKeyspace
from .storage import FailClosedStorage, KeyValueStorage

logger = logging.getLogger(__name__)

DEFAULT_RAW_TTL_MS = 24 * HOUR_MS
KEY_BYTES = 32
NONCE_BYTES = 12


def now_ms() -> int:
    return int(time.time() * 1000)


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


class Encryptor:
    """AES-256-GCM over UTF-8 text with a fresh 96-bit nonce per call."""

    def __init__(self, key: bytes):
        if len(key) != KEY_BYTES:
            raise VaultError("Key must be 32 bytes for AES-256")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> tuple:
        """Returns (nonce, ciphertext)."""
        nonce = os.urandom(NONCE_BYTES)
        return nonce, self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)

    def decrypt(self, nonce: bytes, ciphertext: bytes) -> str:
        return self._aesgcm.decrypt(nonce, ciphertext, None).decode("utf-8")

    @staticmethod
    def generate_key() -> bytes:
        return AESGCM.generate_key(bit_length=256)


class HandoffVault:
    """Per-session encrypted store for raw segments.

    Single writer per session is assumed. The session index is updated
    read-modify-write without a lock, so concurrent writers can drop an
    index entry.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        secure_store: Optional[SecureKeyStore] = None,
        now: Optional[Callable[[], int]] = None,
        keyspace: Optional[VaultKeyspace] = None,
    ):
        self.storage = storage
        self._store = FailClosedStorage(storage, "Vault")
        self.secure_store = secure_store
        self.now = now or now_ms
        self.keyspace = keyspace or VaultKeyspace.for_scope(StorageScope())
        self._keys: Dict[str, bytes] = {}

    def _read_record(self, session_id: str) -> Optional[VaultRecord]:
        data = self._store.get_json(self.keyspace.record_key(session_id))
        if not isinstance(data, dict):
            return None
        try:
            return VaultRecord.from_dict(data)
        except (ValueError, KeyError, TypeError):
            return None

    # =========================================================================
    # KEYS
    # =========================================================================

    async def _get_session_key(self, session_id: str, create_if_missing: bool) -> Optional[bytes]:
        existing = self._keys.get(session_id)
        if existing:
            return existing

        store_key = self.keyspace.session_key(session_id)
        if self.secure_store:
            try:
                stored = await self.secure_store.get_item(store_key)
            except Exception as e:
                logger.warning(f"Key store read failed: {type(e).__name__}")
                stored = None
            if stored:
                try:
                    key = b64decode(stored)
                    Encryptor(key)
                    self._keys[session_id] = key
                    return key
                except (binascii.Error, ValueError, VaultError):
                    logger.warning(f"Discarding unusable stored key for session {session_id}")
                    await self._forget_stored_key(store_key)

        if not create_if_missing:
            return None

        key = Encryptor.generate_key()
        self._keys[session_id] = key
        if self.secure_store:
            try:
                await self.secure_store.set_item(store_key, b64encode(key))
            except Exception as e:
                # in-memory key only
                logger.warning(f"Key store write failed: {type(e).__name__}")
        return key

    async def _forget_stored_key(self, store_key: str):
        if not self.secure_store:
            return
        try:
            await self.secure_store.remove_item(store_key)
        except Exception as e:
            logger.warning(f"Key store delete failed: {type(e).__name__}")

    async def _remove_session_key(self, session_id: str):
        self._keys.pop(session_id, None)
        await self._forget_stored_key(self.keyspace.session_key(session_id))

    def is_key_loaded(self, session_id: str) -> bool:
        return session_id in self._keys

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def save_raw_segments(
        self,
        session_id: str,
        segments: Sequence[RawSegment],
        ttl_ms: int = DEFAULT_RAW_TTL_MS,
    ) -> bool:
        """Encrypt and store ``segments``; False if anything fails."""
        key = await self._get_session_key(session_id, create_if_missing=True)
        if not key:
            return False

        payload = json.dumps({"segments": [s.to_dict() for s in segments]}, ensure_ascii=False)
        nonce, ciphertext = Encryptor(key).encrypt(payload)

        created = self.now()
        record = VaultRecord(
            session_id=session_id,
            created_at=created,
            expires_at=created + int(ttl_ms),
            iv=b64encode(nonce),
            ciphertext=b64encode(ciphertext),
        )
        if not self._store.set_json(self.keyspace.record_key(session_id), record.to_dict()):
            return False

        index_key = self.keyspace.raw_index_key
        index = self._store.read_index(index_key)
        saved = self._store.write_index(index_key, [session_id, *(i for i in index if i != session_id)])
        if saved:
            logger.debug(f"Vault saved {len(segments)} segments for session {session_id}")
        return saved

    async def load_raw_segments(self, session_id: str) -> Optional[List[RawSegment]]:
        """Decrypted segments, or None when missing, expired, keyless or corrupt."""
        record = self._read_record(session_id)
        if not record:
            return None

        if record.expires_at <= self.now():
            await self.crypto_shred_session(session_id)
            return None

        key = await self._get_session_key(session_id, create_if_missing=False)
        if not key:
            return None

        try:
            plaintext = Encryptor(key).decrypt(b64decode(record.iv), b64decode(record.ciphertext))
            data = json.loads(plaintext)
            return [RawSegment.from_dict(s) for s in data.get("segments", [])]
        except (InvalidTag, binascii.Error, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Vault decrypt failed for session {session_id}: {type(e).__name__}")
            return None

    async def crypto_shred_session(self, session_id: str):
        """Delete the ciphertext and forget its key."""
        self._store.remove(self.keyspace.record_key(session_id))
        index = self._store.read_index(self.keyspace.raw_index_key)
        if session_id in index:
            self._store.write_index(self.keyspace.raw_index_key, [i for i in index if i != session_id])
        await self._remove_session_key(session_id)
        logger.info(f"Session {session_id} crypto-shredded")

    async def purge_expired(self) -> int:
        """Remove expired or unreadable records and their keys. Idempotent."""
        current = self.now()
        index = self._store.read_index(self.keyspace.raw_index_key)
        alive: List[str] = []
        purged = 0

        for session_id in index:
            record = self._read_record(session_id)
            if record is None or record.expires_at <= current:
                self._store.remove(self.keyspace.record_key(session_id))
                await self._remove_session_key(session_id)
                purged += 1
            else:
                alive.append(session_id)

        if len(alive) != len(index):
            self._store.write_index(self.keyspace.raw_index_key, alive)
        if purged:
            logger.info(f"Vault purged {purged} expired record(s)")
        return purged

    async def purge_all(self) -> int:
        index = list(dict.fromkeys(self._store.read_index(self.keyspace.raw_index_key)))
        for session_id in index:
            self._store.remove(self.keyspace.record_key(session_id))
        self._store.remove(self.keyspace.raw_index_key)
        for session_id in index:
            await self._remove_session_key(session_id)
        self._keys.clear()
        return len(index)

    def list_sessions(self) -> List[str]:
        return self._store.read_index(self.keyspace.raw_index_key)
