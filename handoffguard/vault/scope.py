"""Storage scope and key naming for everything the vault layer writes."""

import re
from dataclasses import dataclass

ROOT_PREFIX = "handoff"
DEFAULT_SCOPE = "anon"
MAX_SCOPE_LENGTH = 80


def normalize_scope(scope) -> str:
    """'Ward 7B/Nurse#1' -> 'ward_7b_nurse_1'; empty -> 'anon'."""
    if not scope:
        return DEFAULT_SCOPE
    normalized = re.sub(r"[^a-z0-9_-]", "_", str(scope).strip().lower())
    return normalized[:MAX_SCOPE_LENGTH] or DEFAULT_SCOPE


@dataclass(frozen=True)
class StorageScope:
    """A user/device scope; every key is ``<root>:<scope>:<suffix>``."""
    name: str = DEFAULT_SCOPE
    root: str = ROOT_PREFIX

    def __post_init__(self):
        object.__setattr__(self, "name", normalize_scope(self.name))

    @property
    def prefix(self) -> str:
        return f"{self.root}:{self.name}:"

    def key(self, suffix: str) -> str:
        return f"{self.root}:{self.name}:{suffix}"

    def key_prefix(self, suffix: str) -> str:
        return f"{self.key(suffix)}:"


@dataclass(frozen=True)
class VaultKeyspace:
    raw_prefix: str
    raw_index_key: str
    key_prefix: str

    @classmethod
    def for_scope(cls, scope: StorageScope) -> "VaultKeyspace":
        return cls(
            raw_prefix=scope.key_prefix("raw"),
            raw_index_key=scope.key("raw:index"),
            key_prefix=scope.key_prefix("key"),
        )

    def record_key(self, session_id: str) -> str:
        return f"{self.raw_prefix}{session_id}"

    def session_key(self, session_id: str) -> str:
        return f"{self.key_prefix}{session_id}"
