"""
Handoff pipeline.

RawSegment[] -> normalize -> PHI guard -> split -> structure -> assemble ->
de-id guard. The returned result is already sanitized and its ``safety``
block says whether it may be persisted or exported. Masked segments and the
alias map are returned separately in ``local`` and never leave the device.

Usage:
    segments = transcript_to_raw_segments(text)
    output = run_handoff_pipeline("session-1", "night", segments)
    if output.result.safety.export_allowed:
        ...
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .config import Config, get_config
from .engine.deid_guard import DeidIssue, sanitize_structured_session
from .engine.normalizer import normalize
from .engine.phi_guard import apply_phi_guard
from .engine.splitter import split_segments_by_patient
from .engine.structure import build_global_top, build_patient_cards
from .exceptions import PolicyBlockedError, UnsafePayloadError
from .lexicon import ClinicalLexicon
from .types import (
    DutyType,
    EvidenceRef,
    HandoverSessionResult,
    MaskedSegment,
    Provenance,
    RawSegment,
    SafetyState,
    SegmentUncertainty,
    UncertaintyItem,
    UncertaintyKind,
)

logger = logging.getLogger(__name__)

DEFAULT_SEGMENT_MS = 5000
MAX_SEGMENTS = 360
OVERFLOW_PREFIX = "[초과분 통합]"
AMBIGUOUS_PATIENT_REASON = "환자 분리가 애매하여 검수 대상에 추가되었습니다."
FALLBACK_REASON = "환자 식별 단서가 없어 전체 내용을 한 명으로 묶었습니다. 분리 여부를 확인해 주세요."

LINE_BREAK_PATTERN = re.compile(r"\n+")
SENTENCE_END_PATTERN = re.compile(r"(?<=[.!?。])\s+")
ROOM_CLAUSE_PATTERN = re.compile(r"[,，]\s*(?=(?:[0-9]{3,4}\s*호|병실\s*[0-9]{3,4}|룸\s*[0-9]{3,4}))")


# =============================================================================
# TRANSCRIPT SPLITTING
# =============================================================================

def split_transcript_lines(text: str) -> List[str]:
    """Lines, then sentences, then comma clauses that open a new room."""
    pieces: List[str] = []
    for line in LINE_BREAK_PATTERN.split(text or ""):
        for sentence in SENTENCE_END_PATTERN.split(line):
            pieces.extend(ROOM_CLAUSE_PATTERN.split(sentence))
    return [p.strip() for p in pieces if p.strip()]


def transcript_to_raw_segments(
    text: str,
    start_offset_ms: int = 0,
    segment_duration_ms: int = DEFAULT_SEGMENT_MS,
    id_prefix: str = "seg",
    max_segments: int = MAX_SEGMENTS,
) -> List[RawSegment]:
    """
    Turn a free-text transcript into evenly timed raw segments.

    Lines beyond ``max_segments`` are folded into the last segment, prefixed
    with ``[초과분 통합]``, so nothing is dropped.
    """
    lines = split_transcript_lines(text)
    if len(lines) > max_segments > 0:
        overflow = " ".join(lines[max_segments - 1:])
        lines = lines[:max_segments - 1] + [f"{OVERFLOW_PREFIX} {overflow}"]
        logger.info(f"Transcript over {max_segments} segments; overflow merged into the last one")

    segments = []
    for index, line in enumerate(lines):
        start_ms = start_offset_ms + index * segment_duration_ms
        segments.append(RawSegment(
            segment_id=f"{id_prefix}-{index + 1:03d}",
            raw_text=line,
            start_ms=start_ms,
            end_ms=start_ms + segment_duration_ms,
        ))
    return segments


# =============================================================================
# UNCERTAINTIES
# =============================================================================

@dataclass
class ManualUncertainty:
    """Reviewer-entered uncertainty not tied to a transcript segment."""
    reason: str
    text: str
    kind: UncertaintyKind = UncertaintyKind.MANUAL_REVIEW
    start_ms: Optional[int] = None
    end_ms: Optional[int] = None


def _segment_item(sink: List[UncertaintyItem], segment: MaskedSegment, uncertainty: SegmentUncertainty):
    sink.append(UncertaintyItem(
        id=f"uncertainty-{segment.segment_id}-{len(sink) + 1}",
        kind=uncertainty.kind,
        reason=uncertainty.reason,
        text=segment.masked_text,
        evidence_ref=segment.evidence_ref,
    ))


def _manual_item(index: int, manual: ManualUncertainty) -> UncertaintyItem:
    start_ms = max(0, manual.start_ms or 0)
    end_ms = max(start_ms + 250, manual.end_ms if manual.end_ms is not None else start_ms + 1000)
    return UncertaintyItem(
        id=f"uncertainty-manual-{index}",
        kind=manual.kind,
        reason=manual.reason,
        text=manual.text,
        evidence_ref=EvidenceRef(f"manual-{index}", start_ms, end_ms),
    )


def dedupe_uncertainties(items: Sequence[UncertaintyItem]) -> List[UncertaintyItem]:
    seen = set()
    kept = []
    for item in items:
        key = (item.kind, item.reason, item.evidence_ref.segment_id)
        if key in seen:
            continue
        seen.add(key)
        kept.append(item)
    return kept


def compact_uncertainties(items: Sequence[UncertaintyItem], limit: int) -> List[UncertaintyItem]:
    """Merge items sharing (kind, reason); evidence spans the merged time range."""
    merged: Dict[tuple, UncertaintyItem] = {}
    for item in items:
        key = (item.kind, item.reason)
        existing = merged.get(key)
        if existing is None:
            merged[key] = UncertaintyItem(
                id=item.id,
                kind=item.kind,
                reason=item.reason,
                text=item.text,
                evidence_ref=item.evidence_ref,
                count=item.count,
            )
            continue
        ref = existing.evidence_ref
        existing.evidence_ref = EvidenceRef(
            ref.segment_id,
            min(ref.start_ms, item.evidence_ref.start_ms),
            max(ref.end_ms, item.evidence_ref.end_ms),
        )
        existing.count += item.count
    return list(merged.values())[:max(0, limit)]


# =============================================================================
# PIPELINE
# =============================================================================

@dataclass
class LocalArtifacts:
    """Device-local intermediate state; never exported or persisted."""
    masked_segments: List[MaskedSegment] = field(default_factory=list)
    alias_map: Dict[str, str] = field(default_factory=dict)
    segment_aliases: Dict[str, str] = field(default_factory=dict)  # segment id -> assigned alias


@dataclass
class PipelineOutput:
    result: HandoverSessionResult
    local: LocalArtifacts
    issues: List[DeidIssue] = field(default_factory=list)
    residual_issues: List[DeidIssue] = field(default_factory=list)


def run_handoff_pipeline(
    session_id: str,
    duty_type,
    raw_segments: Sequence[RawSegment],
    manual_uncertainties: Optional[Sequence[ManualUncertainty]] = None,
    config: Optional[Config] = None,
    lexicon: Optional[ClinicalLexicon] = None,
    now_ms: Optional[int] = None,
) -> PipelineOutput:
    """
    Run the full de-identification and structuring pipeline.

    Args:
        session_id: Opaque session identifier.
        duty_type: "day", "evening" or "night" (or DutyType).
        raw_segments: Transcript segments.
        manual_uncertainties: Reviewer-entered items to include.
        config: Defaults to the global config.
        lexicon: Defaults to the bundled lexicon.
        now_ms: Creation timestamp override.

    Raises:
        PolicyBlockedError: the privacy gate does not allow local processing.
    """
    config = config or get_config()
    if not config.privacy.local_pipeline_allowed:
        raise PolicyBlockedError(f"Execution mode {config.privacy.execution_mode!r} blocks the pipeline")

    duty = DutyType(duty_type)
    normalized = normalize(raw_segments, lexicon)
    phi = apply_phi_guard(normalized)
    split = split_segments_by_patient(phi.segments)
    patients = build_patient_cards(split.patient_segments, duty)
    global_top = build_global_top(patients)

    items: List[UncertaintyItem] = []
    for segment in phi.segments:
        for uncertainty in segment.uncertainties:
            _segment_item(items, segment, uncertainty)

    for segment in split.unmatched_segments:
        _segment_item(items, segment, SegmentUncertainty(UncertaintyKind.AMBIGUOUS_PATIENT, AMBIGUOUS_PATIENT_REASON))

    if split.fallback_applied:
        first = phi.segments[0]
        _segment_item(items, first, SegmentUncertainty(UncertaintyKind.AMBIGUOUS_PATIENT, FALLBACK_REASON))

    for index, manual in enumerate(manual_uncertainties or [], start=1):
        items.append(_manual_item(index, manual))

    assembled = HandoverSessionResult(
        session_id=session_id,
        duty_type=duty,
        created_at_ms=now_ms if now_ms is not None else int(time.time() * 1000),
        patients=patients,
        ward_events=split.ward_events,
        global_top=global_top,
        uncertainties=compact_uncertainties(dedupe_uncertainties(items), config.pipeline.max_uncertainties),
        provenance=Provenance(
            stt_engine=config.pipeline.stt_engine,
            ruleset_version=config.pipeline.ruleset_version,
            llm_refined=False,
        ),
    )

    sanitized = sanitize_structured_session(assembled)
    result = sanitized.result
    residual_count = len(phi.residual_findings) + len(sanitized.residual_issues)
    safe = phi.safe_to_persist and not sanitized.residual_issues
    result.safety = SafetyState(
        phi_safe=safe,
        residual_count=residual_count,
        export_allowed=safe and phi.export_allowed,
        persist_allowed=safe,
    )

    logger.info(
        f"Pipeline {session_id}: {len(raw_segments)} segments, {len(patients)} patients, "
        f"{len(result.ward_events)} ward events, {len(result.uncertainties)} uncertainties, "
        f"residual={residual_count}"
    )
    return PipelineOutput(
        result=result,
        local=LocalArtifacts(
            masked_segments=phi.segments,
            alias_map=phi.alias_map,
            segment_aliases={
                segment.segment_id: alias
                for alias, assigned in split.patient_segments.items()
                for segment in assigned
            },
        ),
        issues=sanitized.issues,
        residual_issues=sanitized.residual_issues,
    )


def build_evidence_map(segments: Sequence[MaskedSegment]) -> Dict[str, str]:
    """segment id -> masked text, for jumping from a fact to its source."""
    return {segment.segment_id: segment.masked_text for segment in segments}


def ensure_exportable(result: HandoverSessionResult) -> HandoverSessionResult:
    """Raise UnsafePayloadError unless the result is safe to export."""
    residual = sanitize_structured_session(result).residual_issues
    if residual or not result.safety.export_allowed:
        raise UnsafePayloadError(
            f"Session {result.session_id} is not exportable ({len(residual)} residual issue(s))",
            residual,
        )
    return result
