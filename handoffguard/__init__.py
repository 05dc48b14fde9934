"""handoffguard - local nursing handoff structuring with PHI guards.

Turns a spoken or typed shift handoff into per-patient cards, a ward-wide
priority list and review items, without letting identifiers leave the
device.

Quick Start:
    from handoffguard import transcript_to_raw_segments, run_handoff_pipeline

    segments = transcript_to_raw_segments(text)
    output = run_handoff_pipeline("session-1", "night", segments)

    for card in output.result.patients:
        print(card.alias, card.summary)

    # Encrypted raw-segment vault
    vault = HandoffVault(SQLiteStorage(path))
    await vault.save_raw_segments("session-1", segments)
"""

__version__ = "0.1.0"

# Pipeline
from .pipeline import (
    ManualUncertainty,
    PipelineOutput,
    build_evidence_map,
    ensure_exportable,
    run_handoff_pipeline,
    transcript_to_raw_segments,
)

# Guards
from .engine.deid_guard import detect_residual_phi, sanitize_structured_session

# Refine
from .refine import RefineOutcome, refine_result

# Persistence
from .audit import AuditAction, HandoffAuditLog
from .vault import (
    HandoffVault,
    MemoryStorage,
    SQLiteStorage,
    StorageScope,
    StructuredSessionStore,
)

# Core types
from .types import (
    DutyType,
    HandoverSessionResult,
    PatientCard,
    RawSegment,
    UncertaintyKind,
)

# Configuration
from .config import Config, get_config, set_config

# Exceptions
from .exceptions import (
    ConfigurationError,
    HandoffError,
    PolicyBlockedError,
    RefinePatchError,
    UnsafePayloadError,
    VaultError,
)

__all__ = [
    # Version
    "__version__",

    # Pipeline
    "ManualUncertainty",
    "PipelineOutput",
    "build_evidence_map",
    "ensure_exportable",
    "run_handoff_pipeline",
    "transcript_to_raw_segments",

    # Guards
    "detect_residual_phi",
    "sanitize_structured_session",

    # Refine
    "RefineOutcome",
    "refine_result",

    # Persistence
    "AuditAction",
    "HandoffAuditLog",
    "HandoffVault",
    "MemoryStorage",
    "SQLiteStorage",
    "StorageScope",
    "StructuredSessionStore",

    # Core types
    "DutyType",
    "HandoverSessionResult",
    "PatientCard",
    "RawSegment",
    "UncertaintyKind",

    # Configuration
    "Config",
    "get_config",
    "set_config",

    # Exceptions
    "ConfigurationError",
    "HandoffError",
    "PolicyBlockedError",
    "RefinePatchError",
    "UnsafePayloadError",
    "VaultError",
]
