"""
Structured session store.

Persists sanitized HandoverSessionResult payloads with a TTL. Nothing is
written unless the de-identification guard finds no residual PHI, and
records are re-checked on every read.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..config import DAY_MS
from ..engine.deid_guard import sanitize_structured_session
from ..types import HandoverSessionResult
from .scope import StorageScope
from .storage import FailClosedStorage, KeyValueStorage

logger = logging.getLogger(__name__)

DEFAULT_STRUCTURED_TTL_MS = 7 * DAY_MS


@dataclass
class StructuredSessionRecord:
    id: str
    created_at: int
    expires_at: int
    result: HandoverSessionResult

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "result": self.result.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StructuredSessionRecord":
        return cls(
            id=str(data["id"]),
            created_at=int(data["createdAt"]),
            expires_at=int(data["expiresAt"]),
            result=HandoverSessionResult.from_dict(data["result"]),
        )


class StructuredSessionStore:
    """Sanitized session results under ``<root>:<scope>:structured:<id>``."""

    def __init__(
        self,
        storage: KeyValueStorage,
        scope: Optional[StorageScope] = None,
        now: Optional[Callable[[], int]] = None,
    ):
        self._store = FailClosedStorage(storage, "Session store")
        self.scope = scope or StorageScope()
        self.now = now or (lambda: int(time.time() * 1000))
        self._prefix = self.scope.key_prefix("structured")
        self._index_key = self.scope.key("structured:index")

    def _record_key(self, session_id: str) -> str:
        return f"{self._prefix}{session_id}"

    def _read(self, session_id: str) -> Optional[StructuredSessionRecord]:
        data = self._store.get_json(self._record_key(session_id))
        if not isinstance(data, dict):
            return None
        try:
            return StructuredSessionRecord.from_dict(data)
        except (KeyError, ValueError, TypeError):
            return None

    def _recheck(self, record: StructuredSessionRecord) -> Optional[StructuredSessionRecord]:
        """Re-sanitize a stored record; None if it still carries residual PHI."""
        sanitized = sanitize_structured_session(record.result)
        if sanitized.residual_issues:
            logger.warning(f"Dropping stored session {record.id}: residual PHI on reload")
            self._store.remove(self._record_key(record.id))
            return None
        record.result = sanitized.result
        if sanitized.issues:
            self._store.set_json(self._record_key(record.id), record.to_dict())
        return record

    def save(self, result: HandoverSessionResult, ttl_ms: int = DEFAULT_STRUCTURED_TTL_MS) -> bool:
        """Sanitize and store; refuses (False) when residual PHI remains."""
        sanitized = sanitize_structured_session(result)
        if sanitized.residual_issues:
            logger.warning(
                f"Refusing to persist session {result.session_id}: "
                f"{len(sanitized.residual_issues)} residual issue(s)"
            )
            return False

        created = self.now()
        record = StructuredSessionRecord(
            id=sanitized.result.session_id,
            created_at=created,
            expires_at=created + int(ttl_ms),
            result=sanitized.result,
        )
        if not self._store.set_json(self._record_key(record.id), record.to_dict()):
            return False
        index = self._store.read_index(self._index_key)
        return self._store.write_index(self._index_key, [record.id, *(i for i in index if i != record.id)])

    def load(self, session_id: str) -> Optional[StructuredSessionRecord]:
        record = self._read(session_id)
        if not record:
            return None
        if record.expires_at <= self.now():
            self.delete(session_id)
            return None
        record = self._recheck(record)
        if record is None:
            self.delete(session_id)
        return record

    def list(self) -> List[StructuredSessionRecord]:
        """Live records, newest first. Expired or unsafe records are removed."""
        current = self.now()
        index = self._store.read_index(self._index_key)
        alive: List[str] = []
        records: List[StructuredSessionRecord] = []

        for session_id in index:
            record = self._read(session_id)
            if record is None:
                continue
            if record.expires_at <= current:
                self._store.remove(self._record_key(session_id))
                continue
            record = self._recheck(record)
            if record is None:
                continue
            alive.append(session_id)
            records.append(record)

        if len(alive) != len(index):
            self._store.write_index(self._index_key, alive)
        return sorted(records, key=lambda r: -r.created_at)

    def delete(self, session_id: str):
        self._store.remove(self._record_key(session_id))
        index = self._store.read_index(self._index_key)
        self._store.write_index(self._index_key, [i for i in index if i != session_id])

    def delete_all(self) -> int:
        index = list(dict.fromkeys(self._store.read_index(self._index_key)))
        for session_id in index:
            self._store.remove(self._record_key(session_id))
        self._store.remove(self._index_key)
        return len(index)

    def purge_expired(self) -> int:
        current = self.now()
        index = self._store.read_index(self._index_key)
        alive: List[str] = []
        purged = 0
        for session_id in index:
            record = self._read(session_id)
            if record is None or record.expires_at <= current:
                self._store.remove(self._record_key(session_id))
                purged += 1
            else:
                alive.append(session_id)
        if len(alive) != len(index):
            self._store.write_index(self._index_key, alive)
        return purged
