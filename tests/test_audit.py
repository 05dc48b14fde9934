"""Tests for the hash-chained audit log."""

import json

import pytest

from handoffguard.audit import (
    GENESIS_HASH,
    MAX_EVENTS,
    AuditAction,
    HandoffAuditLog,
    sanitize_detail,
)
from handoffguard.vault import StorageScope

AUDIT_KEY = "handoff:anon:audit:log"


@pytest.fixture
def audit(storage, clock):
    return HandoffAuditLog(storage, now=clock)


def test_sanitize_detail():
    assert sanitize_detail("환자 김민준\n저장 ok") == "ok"
    assert sanitize_detail("segments=5 patients=2") == "segments5 patients2"
    assert sanitize_detail("") is None
    assert sanitize_detail(None) is None
    assert len(sanitize_detail("x" * 500)) == 180


def test_append_and_list_newest_first(audit):
    assert audit.append(AuditAction.PIPELINE_RUN, "s1", "segments 5")
    assert audit.append(AuditAction.SESSION_SAVED, "s1")
    assert audit.append(AuditAction.SESSION_SHRED, "s1")

    events = audit.list()
    assert [e.action for e in events] == [
        AuditAction.SESSION_SHRED,
        AuditAction.SESSION_SAVED,
        AuditAction.PIPELINE_RUN,
    ]
    assert [e.sequence for e in events] == [3, 2, 1]
    assert events[-1].prev_hash == GENESIS_HASH
    assert events[0].prev_hash == events[1].hash
    assert audit.list(limit=1)[0].sequence == 3


def test_verify_chain(audit):
    for _ in range(3):
        audit.append(AuditAction.PIPELINE_RUN)
    check = audit.verify_chain()
    assert check["valid"]
    assert check["entries_checked"] == 3
    assert check["first_invalid_sequence"] is None


def test_tampering_breaks_chain(audit, storage):
    for _ in range(3):
        audit.append(AuditAction.PIPELINE_RUN, detail="ok")
    data = json.loads(storage.get_item(AUDIT_KEY))
    data["events"][-1]["detail"] = "edited"
    storage.set_item(AUDIT_KEY, json.dumps(data))

    check = audit.verify_chain()
    assert not check["valid"]
    assert check["first_invalid_sequence"] == 1
    assert check["error"] == "hash mismatch"


def test_dropped_event_is_a_sequence_gap(audit, storage):
    for _ in range(3):
        audit.append(AuditAction.PIPELINE_RUN)
    data = json.loads(storage.get_item(AUDIT_KEY))
    del data["events"][1]
    storage.set_item(AUDIT_KEY, json.dumps(data))

    check = audit.verify_chain()
    assert not check["valid"]
    assert check["first_invalid_sequence"] == 3
    assert check["error"] == "sequence gap"


def test_log_is_capped_and_still_verifies(audit):
    for _ in range(MAX_EVENTS + 2):
        audit.append(AuditAction.PIPELINE_RUN)

    events = audit.list(limit=MAX_EVENTS * 2)
    assert len(events) == MAX_EVENTS
    assert events[0].sequence == MAX_EVENTS + 2
    assert audit.verify_chain()["valid"]


def test_expired_log_reads_empty(storage, clock):
    audit = HandoffAuditLog(storage, now=clock, ttl_ms=1000)
    audit.append(AuditAction.PIPELINE_RUN)
    clock.advance(1000)

    assert audit.list() == []
    assert audit.purge_expired() == 1
    assert storage.get_item(AUDIT_KEY) is None


def test_purge_keeps_live_log(audit):
    audit.append(AuditAction.PIPELINE_RUN)
    assert audit.purge_expired() == 0
    assert len(audit.list()) == 1


def test_scopes_are_isolated(storage, clock):
    ward_a = HandoffAuditLog(storage, StorageScope("ward-a"), now=clock)
    ward_b = HandoffAuditLog(storage, StorageScope("ward-b"), now=clock)
    ward_a.append(AuditAction.ALL_DATA_PURGED)
    assert ward_b.list() == []
