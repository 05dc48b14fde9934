"""Text pipeline stages: normalize, mask, split, structure, sanitize."""

from .deid_guard import DeidIssue, SanitizeResult, detect_residual_phi, sanitize_structured_session
from .normalizer import normalize, normalize_text
from .phi_guard import PhiGuardResult, apply_phi_guard
from .priority import PriorityScore, RiskMatch, evaluate_risks, score_priority
from .splitter import SplitResult, split_segments_by_patient
from .structure import build_global_top, build_patient_cards

__all__ = [
    "DeidIssue",
    "PhiGuardResult",
    "PriorityScore",
    "RiskMatch",
    "SanitizeResult",
    "SplitResult",
    "apply_phi_guard",
    "build_global_top",
    "build_patient_cards",
    "detect_residual_phi",
    "evaluate_risks",
    "normalize",
    "normalize_text",
    "sanitize_structured_session",
    "score_priority",
    "split_segments_by_patient",
]
