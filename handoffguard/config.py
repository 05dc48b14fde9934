"""Configuration for handoffguard."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
import os

import yaml

from .exceptions import ConfigurationError
from .types import DutyType

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS

DEFAULT_DATA_DIR = Path.home() / ".handoffguard"
DATA_DIR_ENV = "HANDOFFGUARD_DATA_DIR"


@dataclass
class VaultConfig:
    """Encrypted local storage settings."""
    scope: str = "anon"
    raw_ttl_ms: int = 24 * HOUR_MS
    structured_ttl_ms: int = 7 * DAY_MS
    audit_ttl_ms: int = 30 * DAY_MS
    persist_keys: bool = False  # export session keys to the on-disk keystore


@dataclass
class PipelineConfig:
    """Text pipeline settings."""
    duty_type: str = DutyType.DAY.value
    segment_duration_ms: int = 5000
    max_segments: int = 360
    max_uncertainties: int = 24
    ruleset_version: str = "handoff-rules-v3"
    stt_engine: str = "manual"


@dataclass
class PrivacyConfig:
    """Privacy gate owned by the external policy evaluator.

    The core only reads ``local_pipeline_allowed`` as an opaque precondition.
    """
    privacy_profile: str = "strict"       # "strict" | "standard"
    execution_mode: str = "local_only"    # "local_only" | "hybrid_opt_in"
    remote_sync_allowed: bool = False

    @property
    def local_pipeline_allowed(self) -> bool:
        return self.execution_mode in ("local_only", "hybrid_opt_in")


@dataclass
class Config:
    """Main configuration."""
    data_dir: Path = field(default_factory=lambda: Path(os.environ.get(DATA_DIR_ENV, DEFAULT_DATA_DIR)))
    db_path: Path = field(default=None)

    vault: VaultConfig = field(default_factory=VaultConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    privacy: PrivacyConfig = field(default_factory=PrivacyConfig)

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        if self.db_path is None:
            self.db_path = self.data_dir / "handoff.db"
        if self.pipeline.duty_type not in {d.value for d in DutyType}:
            raise ConfigurationError(f"Unknown duty type: {self.pipeline.duty_type}")

    @property
    def keystore_path(self) -> Path:
        return self.data_dir / "keystore.db"

    def ensure_dirs(self):
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """Load config from file or use defaults."""
        if path is None:
            path = Path(os.environ.get(DATA_DIR_ENV, DEFAULT_DATA_DIR)) / "config.yaml"

        if path.exists():
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ConfigurationError(f"Config file {path} is not a mapping")
            return cls._from_dict(data)

        return cls()

    @classmethod
    def _from_dict(cls, data: dict) -> "Config":
        """Create config from dict."""
        config = cls()

        if "data_dir" in data:
            config.data_dir = Path(data["data_dir"]).expanduser()
            config.db_path = config.data_dir / "handoff.db"

        if "vault" in data:
            v = data["vault"] or {}
            config.vault.scope = v.get("scope", config.vault.scope)
            config.vault.raw_ttl_ms = int(v.get("raw_ttl_ms", config.vault.raw_ttl_ms))
            config.vault.structured_ttl_ms = int(v.get("structured_ttl_ms", config.vault.structured_ttl_ms))
            config.vault.audit_ttl_ms = int(v.get("audit_ttl_ms", config.vault.audit_ttl_ms))
            config.vault.persist_keys = bool(v.get("persist_keys", config.vault.persist_keys))

        if "pipeline" in data:
            p = data["pipeline"] or {}
            duty = p.get("duty_type", config.pipeline.duty_type)
            if duty not in {d.value for d in DutyType}:
                raise ConfigurationError(f"Unknown duty type: {duty}")
            config.pipeline.duty_type = duty
            config.pipeline.segment_duration_ms = int(
                p.get("segment_duration_ms", config.pipeline.segment_duration_ms)
            )
            config.pipeline.max_segments = int(p.get("max_segments", config.pipeline.max_segments))
            config.pipeline.max_uncertainties = int(
                p.get("max_uncertainties", config.pipeline.max_uncertainties)
            )
            config.pipeline.ruleset_version = p.get("ruleset_version", config.pipeline.ruleset_version)
            config.pipeline.stt_engine = p.get("stt_engine", config.pipeline.stt_engine)

        if "privacy" in data:
            pr = data["privacy"] or {}
            config.privacy.privacy_profile = pr.get("privacy_profile", config.privacy.privacy_profile)
            config.privacy.execution_mode = pr.get("execution_mode", config.privacy.execution_mode)
            config.privacy.remote_sync_allowed = bool(
                pr.get("remote_sync_allowed", config.privacy.remote_sync_allowed)
            )

        return config

    def save(self, path: Optional[Path] = None):
        """Save config to file."""
        if path is None:
            path = self.data_dir / "config.yaml"

        path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "data_dir": str(self.data_dir),
            "vault": {
                "scope": self.vault.scope,
                "raw_ttl_ms": self.vault.raw_ttl_ms,
                "structured_ttl_ms": self.vault.structured_ttl_ms,
                "audit_ttl_ms": self.vault.audit_ttl_ms,
                "persist_keys": self.vault.persist_keys,
            },
            "pipeline": {
                "duty_type": self.pipeline.duty_type,
                "segment_duration_ms": self.pipeline.segment_duration_ms,
                "max_segments": self.pipeline.max_segments,
                "max_uncertainties": self.pipeline.max_uncertainties,
                "ruleset_version": self.pipeline.ruleset_version,
                "stt_engine": self.pipeline.stt_engine,
            },
            "privacy": {
                "privacy_profile": self.privacy.privacy_profile,
                "execution_mode": self.privacy.execution_mode,
                "remote_sync_allowed": self.privacy.remote_sync_allowed,
            },
        }

        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, allow_unicode=True)


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get global config instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config):
    """Set global config instance."""
    global _config
    _config = config
