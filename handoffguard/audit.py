"""Handoff audit log - tamper-evident record of privacy-relevant actions.

Events are kept newest first in a single scoped storage entry, capped at
MAX_EVENTS and expiring AUDIT_TTL_MS after the last append. Each event
carries the hash of the one before it, so edits to retained history are
detectable with ``verify_chain()``.

Usage:
    from handoffguard.audit import HandoffAuditLog, AuditAction

    log = HandoffAuditLog(storage)
    log.append(AuditAction.SESSION_SAVED, session_id="s-1", detail="patients=3")
    log.verify_chain()["valid"]
"""

import hashlib
import json
import logging
import re
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .config import DAY_MS
from .vault.scope import StorageScope
from .vault.storage import FailClosedStorage, KeyValueStorage

logger = logging.getLogger(__name__)

AUDIT_TTL_MS = 30 * DAY_MS
MAX_EVENTS = 300
MAX_DETAIL_LENGTH = 180
GENESIS_HASH = "0" * 64

_UNSAFE_DETAIL_CHARS = re.compile(r"[^A-Za-z0-9_ .:/()\-|%]")


class AuditAction(str, Enum):
    POLICY_BLOCKED = "policy_blocked"
    PIPELINE_RUN = "pipeline_run"
    SESSION_SAVED = "session_saved"
    SESSION_SHRED = "session_shred"
    ALL_DATA_PURGED = "all_data_purged"


def sanitize_detail(detail: Optional[str]) -> Optional[str]:
    """Restrict free-form detail to a small ASCII set so no PHI can ride along."""
    if not detail:
        return None
    normalized = re.sub(r"[\r\n\t]+", " ", str(detail))
    normalized = _UNSAFE_DETAIL_CHARS.sub("", normalized).strip()
    return normalized[:MAX_DETAIL_LENGTH] or None


# =============================================================================
# AUDIT EVENT
# =============================================================================

@dataclass
class AuditEvent:
    """A single audit log entry."""
    id: str
    at: int
    action: AuditAction
    sequence: int
    session_id: Optional[str] = None
    detail: Optional[str] = None
    prev_hash: str = GENESIS_HASH
    hash: str = ""

    def __post_init__(self):
        if isinstance(self.action, str):
            self.action = AuditAction(self.action)

    def compute_hash(self) -> str:
        hash_input = json.dumps({
            "id": self.id,
            "at": self.at,
            "action": self.action.value,
            "sequence": self.sequence,
            "sessionId": self.session_id,
            "detail": self.detail,
            "prevHash": self.prev_hash,
        }, sort_keys=True)
        return hashlib.sha256(hash_input.encode("utf-8")).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "at": self.at,
            "action": self.action.value,
            "sequence": self.sequence,
            "sessionId": self.session_id,
            "detail": self.detail,
            "prevHash": self.prev_hash,
            "hash": self.hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEvent":
        return cls(
            id=str(data["id"]),
            at=int(data["at"]),
            action=data["action"],
            sequence=int(data.get("sequence", 0)),
            session_id=data.get("sessionId"),
            detail=data.get("detail"),
            prev_hash=data.get("prevHash", GENESIS_HASH),
            hash=data.get("hash", ""),
        )


# =============================================================================
# AUDIT LOG
# =============================================================================

class HandoffAuditLog:
    """Scoped, capped, hash-chained audit trail."""

    def __init__(
        self,
        storage: KeyValueStorage,
        scope: Optional[StorageScope] = None,
        now: Optional[Callable[[], int]] = None,
        ttl_ms: int = AUDIT_TTL_MS,
    ):
        self._store = FailClosedStorage(storage, "Audit log")
        self.ttl_ms = int(ttl_ms)
        self.scope = scope or StorageScope()
        self.now = now or (lambda: int(time.time() * 1000))
        self._key = self.scope.key("audit:log")

    def _read(self) -> Dict[str, Any]:
        current = self.now()
        data = self._store.get_json(self._key)
        empty = {"createdAt": current, "expiresAt": current + self.ttl_ms, "events": []}
        if not isinstance(data, dict) or not data.get("events"):
            return empty
        if int(data.get("expiresAt", 0)) <= current:
            return empty
        return data

    def _events(self) -> List[AuditEvent]:
        events = []
        for item in self._read()["events"]:
            try:
                events.append(AuditEvent.from_dict(item))
            except (KeyError, ValueError, TypeError):
                logger.warning("Skipping malformed audit event")
        return events

    def append(
        self,
        action: AuditAction,
        session_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> bool:
        """Record an event; False when storage is unavailable."""
        log = self._read()
        events = log["events"]
        previous = AuditEvent.from_dict(events[0]) if events else None
        current = self.now()

        event = AuditEvent(
            id=f"audit_{uuid.uuid4().hex[:12]}",
            at=current,
            action=AuditAction(action),
            sequence=(previous.sequence + 1) if previous else 1,
            session_id=session_id,
            detail=sanitize_detail(detail),
            prev_hash=previous.hash if previous else GENESIS_HASH,
        )
        event.hash = event.compute_hash()

        return self._store.set_json(self._key, {
            "createdAt": log["createdAt"],
            "expiresAt": current + self.ttl_ms,
            "events": [event.to_dict(), *events][:MAX_EVENTS],
        })

    def list(self, limit: int = 30) -> List[AuditEvent]:
        """Newest first."""
        return self._events()[:max(1, limit)]

    def purge_expired(self) -> int:
        data = self._store.get_json(self._key)
        if not isinstance(data, dict):
            return 0
        if int(data.get("expiresAt", 0)) > self.now():
            return 0
        self._store.remove(self._key)
        return 1

    def verify_chain(self) -> Dict[str, Any]:
        """Check hashes and links of the retained events.

        The oldest retained event may point at a trimmed predecessor, so only
        its own hash is checked.
        """
        result = {
            "valid": True,
            "entries_checked": 0,
            "first_invalid_sequence": None,
            "error": None,
        }

        previous: Optional[AuditEvent] = None
        for event in reversed(self._events()):
            result["entries_checked"] += 1

            if event.hash != event.compute_hash():
                error = "hash mismatch"
            elif previous is None and event.sequence == 1 and event.prev_hash != GENESIS_HASH:
                error = "bad genesis link"
            elif previous is not None and event.sequence != previous.sequence + 1:
                error = "sequence gap"
            elif previous is not None and event.prev_hash != previous.hash:
                error = "broken link"
            else:
                previous = event
                continue

            result.update(valid=False, first_invalid_sequence=event.sequence, error=error)
            logger.warning(f"Audit chain invalid at sequence {event.sequence}: {error}")
            break

        return result
