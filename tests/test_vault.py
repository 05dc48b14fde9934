"""Tests for the encrypted raw-segment vault."""

import asyncio
import json

import pytest

from handoffguard.exceptions import VaultError
from handoffguard.vault import (
    DEFAULT_RAW_TTL_MS,
    Encryptor,
    HandoffVault,
    MemorySecureKeyStore,
    MemoryStorage,
    NullSecureKeyStore,
    SQLiteStorage,
    StorageScope,
    StorageSecureKeyStore,
    VaultKeyspace,
    default_key_store,
)
from handoffguard.vault.keystore import STRICT_PROFILE
from handoffguard.vault.vault import b64encode

from conftest import NIGHT_HANDOFF, make_raw_segments


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def vault(storage, clock):
    return HandoffVault(storage, MemorySecureKeyStore(), now=clock)


# =============================================================================
# ENCRYPTOR
# =============================================================================

def test_encryptor_round_trip():
    encryptor = Encryptor(Encryptor.generate_key())
    nonce, ciphertext = encryptor.encrypt("혈당 320")
    assert len(nonce) == 12
    assert encryptor.decrypt(nonce, ciphertext) == "혈당 320"


def test_encryptor_rejects_short_key():
    with pytest.raises(VaultError):
        Encryptor(b"short")


def test_fresh_nonce_per_encryption():
    encryptor = Encryptor(Encryptor.generate_key())
    first, _ = encryptor.encrypt("x")
    second, _ = encryptor.encrypt("x")
    assert first != second


# =============================================================================
# VAULT
# =============================================================================

def test_save_and_load(vault, night_segments):
    assert run(vault.save_raw_segments("s1", night_segments))
    assert run(vault.load_raw_segments("s1")) == night_segments
    assert vault.list_sessions() == ["s1"]
    assert vault.is_key_loaded("s1")


def test_ciphertext_hides_raw_text(vault, storage, night_segments):
    run(vault.save_raw_segments("s1", night_segments))
    stored = storage.get_item(vault.keyspace.record_key("s1"))

    assert stored is not None
    for text in ("김민준", "010-1234-5678", "701호"):
        assert text not in stored
    record = json.loads(stored)
    assert record["sessionId"] == "s1"
    assert record["expiresAt"] - record["createdAt"] == DEFAULT_RAW_TTL_MS


def test_missing_session_loads_none(vault):
    assert run(vault.load_raw_segments("nope")) is None


def test_expired_record_is_shredded_on_read(vault, clock, storage, night_segments):
    run(vault.save_raw_segments("s1", night_segments, ttl_ms=1000))
    clock.advance(1000)

    assert run(vault.load_raw_segments("s1")) is None
    assert storage.get_item(vault.keyspace.record_key("s1")) is None
    assert not vault.is_key_loaded("s1")
    assert vault.list_sessions() == []


def test_crypto_shred(vault, storage, night_segments):
    run(vault.save_raw_segments("s1", night_segments))
    run(vault.crypto_shred_session("s1"))

    assert run(vault.load_raw_segments("s1")) is None
    assert storage.get_item(vault.keyspace.record_key("s1")) is None
    assert vault.list_sessions() == []


def test_tampered_ciphertext_loads_none(vault, storage, night_segments):
    run(vault.save_raw_segments("s1", night_segments))
    key = vault.keyspace.record_key("s1")
    record = json.loads(storage.get_item(key))
    other = Encryptor(Encryptor.generate_key())
    _, ciphertext = other.encrypt("forged")
    record["ciphertext"] = b64encode(ciphertext)
    storage.set_item(key, json.dumps(record))

    assert run(vault.load_raw_segments("s1")) is None


def test_key_lost_with_process(storage, clock, night_segments):
    first = HandoffVault(storage, MemorySecureKeyStore(), now=clock)
    run(first.save_raw_segments("s1", night_segments))

    restarted = HandoffVault(storage, MemorySecureKeyStore(), now=clock)
    assert run(restarted.load_raw_segments("s1")) is None


def test_persistent_key_store_survives_restart(storage, clock, night_segments):
    keys = MemoryStorage()
    first = HandoffVault(storage, StorageSecureKeyStore(keys), now=clock)
    run(first.save_raw_segments("s1", night_segments))

    restarted = HandoffVault(storage, StorageSecureKeyStore(keys), now=clock)
    assert run(restarted.load_raw_segments("s1")) == night_segments


def test_vault_without_key_store(storage, clock, night_segments):
    vault = HandoffVault(storage, None, now=clock)
    assert run(vault.save_raw_segments("s1", night_segments))
    assert run(vault.load_raw_segments("s1")) == night_segments


def test_purge_expired(vault, clock):
    run(vault.save_raw_segments("short", make_raw_segments(["혈압 90/60"]), ttl_ms=1000))
    run(vault.save_raw_segments("long", make_raw_segments(["혈당 320"]), ttl_ms=10_000))
    clock.advance(5000)

    assert run(vault.purge_expired()) == 1
    assert vault.list_sessions() == ["long"]
    assert run(vault.purge_expired()) == 0


def test_purge_all(vault, storage):
    run(vault.save_raw_segments("s1", make_raw_segments(["혈압 90/60"])))
    run(vault.save_raw_segments("s2", make_raw_segments(["혈당 320"])))

    assert run(vault.purge_all()) == 2
    assert vault.list_sessions() == []
    assert storage.keys(vault.keyspace.raw_prefix) == []
    assert not vault.is_key_loaded("s1")


def test_newest_session_listed_first(vault):
    run(vault.save_raw_segments("s1", make_raw_segments(["혈압 90/60"])))
    run(vault.save_raw_segments("s2", make_raw_segments(["혈당 320"])))
    assert vault.list_sessions() == ["s2", "s1"]


def test_scopes_are_isolated(storage, clock):
    ward_a = HandoffVault(storage, MemorySecureKeyStore(), now=clock,
                          keyspace=VaultKeyspace.for_scope(StorageScope("Ward 7A")))
    ward_b = HandoffVault(storage, MemorySecureKeyStore(), now=clock,
                          keyspace=VaultKeyspace.for_scope(StorageScope("Ward 7B")))
    run(ward_a.save_raw_segments("s1", make_raw_segments(["혈압 90/60"])))

    assert ward_a.keyspace.raw_prefix == "handoff:ward_7a:raw:"
    assert ward_b.list_sessions() == []
    assert run(ward_b.load_raw_segments("s1")) is None


def test_sqlite_storage_backend(tmp_path, clock):
    vault = HandoffVault(SQLiteStorage(tmp_path / "vault.db"), MemorySecureKeyStore(), now=clock)
    segments = make_raw_segments(NIGHT_HANDOFF[:2])
    assert run(vault.save_raw_segments("s1", segments))
    assert run(vault.load_raw_segments("s1")) == segments


def test_default_key_store_profiles():
    assert isinstance(default_key_store(STRICT_PROFILE, MemoryStorage()), MemorySecureKeyStore)
    assert isinstance(default_key_store("standard", None), MemorySecureKeyStore)
    assert isinstance(default_key_store("standard", MemoryStorage()), StorageSecureKeyStore)


# =============================================================================
# FAILURES
# =============================================================================

class BrokenStorage:
    """Storage that raises on every call."""

    def get_item(self, key):
        raise OSError("disk unavailable")

    def set_item(self, key, value):
        raise OSError("disk unavailable")

    def remove_item(self, key):
        raise OSError("disk unavailable")

    def keys(self, prefix=""):
        raise OSError("disk unavailable")


class BrokenKeyStore(MemorySecureKeyStore):
    async def get_item(self, key):
        raise RuntimeError("keychain locked")

    async def set_item(self, key, value):
        raise RuntimeError("keychain locked")

    async def remove_item(self, key):
        raise RuntimeError("keychain locked")


def test_broken_storage_fails_closed(clock, night_segments):
    vault = HandoffVault(BrokenStorage(), MemorySecureKeyStore(), now=clock)

    assert run(vault.save_raw_segments("s1", night_segments)) is False
    assert run(vault.load_raw_segments("s1")) is None
    run(vault.crypto_shred_session("s1"))
    assert run(vault.purge_expired()) == 0
    assert vault.list_sessions() == []


def test_broken_key_store_keeps_key_in_memory(storage, clock, night_segments):
    vault = HandoffVault(storage, BrokenKeyStore(), now=clock)

    assert run(vault.save_raw_segments("s1", night_segments))
    assert run(vault.load_raw_segments("s1")) == night_segments
    run(vault.crypto_shred_session("s1"))
    assert run(vault.load_raw_segments("s1")) is None


def test_purge_after_ttl_is_idempotent(vault, clock, night_segments):
    run(vault.save_raw_segments("s1", night_segments, ttl_ms=1000))
    clock.advance(1100)

    assert run(vault.purge_expired()) == 1
    assert run(vault.load_raw_segments("s1")) is None
    assert run(vault.purge_expired()) == 0


def test_null_key_store_keeps_nothing(storage, clock, night_segments):
    vault = HandoffVault(storage, NullSecureKeyStore(), now=clock)
    assert run(vault.save_raw_segments("s1", night_segments))
    assert run(vault.load_raw_segments("s1")) == night_segments

    restarted = HandoffVault(storage, NullSecureKeyStore(), now=clock)
    assert run(restarted.load_raw_segments("s1")) is None
