"""Tests for the sanitized structured-session store."""

import json

import pytest

from handoffguard.vault import StorageScope, StructuredSessionStore
from handoffguard.vault.session_store import DEFAULT_STRUCTURED_TTL_MS

from conftest import make_result


@pytest.fixture
def store(storage, clock):
    return StructuredSessionStore(storage, now=clock)


def test_save_and_load(store, clock):
    assert store.save(make_result())
    record = store.load("session-1")

    assert record is not None
    assert record.created_at == clock.now
    assert record.expires_at == clock.now + DEFAULT_STRUCTURED_TTL_MS
    assert record.result.patients[0].summary == make_result().patients[0].summary


def test_save_sanitizes_before_storing(store, storage):
    assert store.save(make_result("김민준님 연락처 010-1234-5678"))
    raw = storage.get_item("handoff:anon:structured:session-1")
    assert "김민준" not in raw
    assert "010-1234-5678" not in raw


def test_save_refuses_residual_phi(store):
    assert not store.save(make_result("김민준 환자 상태 안정적입니다."))
    assert store.load("session-1") is None
    assert store.list() == []


def test_expired_record_removed_on_load(store, clock):
    store.save(make_result(), ttl_ms=1000)
    clock.advance(1000)
    assert store.load("session-1") is None
    assert store.list() == []


def test_stored_record_rechecked_on_read(store, storage, clock):
    store.save(make_result())
    key = "handoff:anon:structured:session-1"
    record = json.loads(storage.get_item(key))
    record["result"]["patients"][0]["summary"] = "김민준님 혈압 90/60"
    storage.set_item(key, json.dumps(record, ensure_ascii=False))

    loaded = store.load("session-1")
    assert loaded is not None
    assert "김민준" not in loaded.result.patients[0].summary
    assert "김민준" not in storage.get_item(key)


def test_unsafe_stored_record_is_dropped(store, storage):
    store.save(make_result())
    key = "handoff:anon:structured:session-1"
    record = json.loads(storage.get_item(key))
    record["result"]["patients"][0]["summary"] = "김민준 환자 상태 안정적"
    storage.set_item(key, json.dumps(record, ensure_ascii=False))

    assert store.load("session-1") is None
    assert storage.get_item(key) is None


def test_list_newest_first(store, clock):
    store.save(make_result(session_id="old"))
    clock.advance(10)
    store.save(make_result(session_id="new"))
    assert [r.id for r in store.list()] == ["new", "old"]


def test_delete_and_delete_all(store):
    store.save(make_result(session_id="a"))
    store.save(make_result(session_id="b"))

    store.delete("a")
    assert [r.id for r in store.list()] == ["b"]
    assert store.delete_all() == 1
    assert store.list() == []


def test_purge_expired(store, clock):
    store.save(make_result(session_id="short"), ttl_ms=1000)
    store.save(make_result(session_id="long"), ttl_ms=10_000)
    clock.advance(5000)

    assert store.purge_expired() == 1
    assert [r.id for r in store.list()] == ["long"]


def test_scopes_are_isolated(storage, clock):
    ward_a = StructuredSessionStore(storage, StorageScope("ward-a"), now=clock)
    ward_b = StructuredSessionStore(storage, StorageScope("ward-b"), now=clock)
    ward_a.save(make_result())
    assert ward_b.load("session-1") is None
    assert ward_b.list() == []
