"""Key-value storage backends for the vault, session store and audit log."""

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Protocol

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""


class KeyValueStorage(Protocol):
    """String-to-string store, shaped like browser localStorage.

    Implementations may raise on any call; callers wrap every access.
    """

    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> List[str]: ...


class MemoryStorage:
    """Process-local storage."""

    def __init__(self):
        self._items: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = str(value)

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        return [k for k in self._items if k.startswith(prefix)]

    def __len__(self) -> int:
        return len(self._items)


class SQLiteStorage:
    """SQLite-backed storage; one row per key."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connection."""
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def get_item(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_item(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP""",
                (key, str(value)),
            )

    def remove_item(self, key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))

    def keys(self, prefix: str = "") -> List[str]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT key FROM kv_store WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                (f"{escaped}%",),
            ).fetchall()
        return [row["key"] for row in rows]


class FailClosedStorage:
    """Wraps a storage so reads return None and writes return False on any error."""

    def __init__(self, storage: KeyValueStorage, label: str = "storage"):
        self.storage = storage
        self.label = label

    def get(self, key: str) -> Optional[str]:
        try:
            return self.storage.get_item(key)
        except Exception as e:
            logger.warning(f"{self.label} read failed: {type(e).__name__}")
            return None

    def set(self, key: str, value: str) -> bool:
        try:
            self.storage.set_item(key, value)
            return True
        except Exception as e:
            logger.warning(f"{self.label} write failed: {type(e).__name__}")
            return False

    def remove(self, key: str) -> bool:
        try:
            self.storage.remove_item(key)
            return True
        except Exception as e:
            logger.warning(f"{self.label} delete failed: {type(e).__name__}")
            return False

    def get_json(self, key: str, default=None):
        raw = self.get(key)
        if not raw:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            return default

    def set_json(self, key: str, value) -> bool:
        return self.set(key, json.dumps(value, ensure_ascii=False))

    def read_index(self, key: str) -> List[str]:
        ids = self.get_json(key, [])
        return [str(i) for i in ids] if isinstance(ids, list) else []

    def write_index(self, key: str, ids) -> bool:
        return self.set_json(key, list(dict.fromkeys(ids)))
