"""
Patient splitter.

Routes masked segments into per-alias buckets or ward-level events, then
backfills continuation segments that were left unmatched.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

from ..types import MaskedSegment, WardEvent, WardEventCategory
from .clinical_nlu import has_patient_transition_cue, is_likely_clinical_continuation
from .phi_guard import build_alias

logger = logging.getLogger(__name__)

FALLBACK_ALIAS = build_alias(0)

WARD_RULES: Tuple[Tuple[WardEventCategory, Tuple[re.Pattern, ...]], ...] = (
    (WardEventCategory.DISCHARGE, (re.compile(r"퇴원"), re.compile(r"discharge", re.IGNORECASE))),
    (WardEventCategory.ADMISSION, (re.compile(r"입원"), re.compile(r"admission", re.IGNORECASE))),
    (WardEventCategory.ROUND, (re.compile(r"회진"), re.compile(r"round", re.IGNORECASE))),
    (WardEventCategory.EQUIPMENT, (
        re.compile(r"장비"), re.compile(r"기계"), re.compile(r"모니터"),
        re.compile(r"foley", re.IGNORECASE), re.compile(r"pump", re.IGNORECASE),
    )),
    (WardEventCategory.COMPLAINT, (re.compile(r"민원"), re.compile(r"클레임"), re.compile(r"불만"))),
)

WARD_CONTEXT_PATTERN = re.compile(r"([0-9]+\s*명|가능|예정|내일|금일|병동|신규|퇴원|입원|회진)")
INLINE_ALIAS_PATTERN = re.compile(r"PATIENT_[A-Z0-9]+")


@dataclass
class SplitResult:
    ward_events: List[WardEvent] = field(default_factory=list)
    patient_segments: Dict[str, List[MaskedSegment]] = field(default_factory=dict)
    unmatched_segments: List[MaskedSegment] = field(default_factory=list)
    fallback_applied: bool = False


def classify_ward_event(text: str) -> Optional[WardEventCategory]:
    for category, patterns in WARD_RULES:
        if any(p.search(text) for p in patterns):
            return category
    return None


def is_ward_level_context(text: str) -> bool:
    return bool(WARD_CONTEXT_PATTERN.search(text))


def _assign(store: Dict[str, List[MaskedSegment]], alias: str, segment: MaskedSegment):
    store.setdefault(alias, []).append(replace(segment, patient_alias=alias))


def _chronological(segment: MaskedSegment):
    return (segment.start_ms, segment.segment_id)


def split_segments_by_patient(segments: Sequence[MaskedSegment]) -> SplitResult:
    """
    Split masked segments into patient buckets, ward events and leftovers.

    Segments are ordered by (start_ms, segment_id) first. When no patient at
    all can be identified, everything goes to the fallback alias and
    ``fallback_applied`` is set.
    """
    result = SplitResult()
    ordered = sorted(segments, key=_chronological)

    timeline: List[Tuple[MaskedSegment, Optional[str]]] = []
    active_alias: Optional[str] = None
    transition_pending = False

    for segment in ordered:
        text = segment.masked_text
        transition_cue = has_patient_transition_cue(text)
        inline = INLINE_ALIAS_PATTERN.search(text)
        segment_alias = segment.patient_alias or (inline.group(0) if inline else None)
        category = classify_ward_event(text)

        if (
            not segment_alias
            and category
            and is_ward_level_context(text)
            and not is_likely_clinical_continuation(text)
        ):
            result.ward_events.append(WardEvent(
                id=f"ward-{segment.segment_id}",
                category=category,
                text=text,
                evidence_ref=segment.evidence_ref,
            ))
            timeline.append((segment, None))
            transition_pending = transition_cue
            continue

        if segment_alias:
            _assign(result.patient_segments, segment_alias, segment)
            timeline.append((segment, segment_alias))
            active_alias = None if transition_cue else segment_alias
            transition_pending = transition_cue
            continue

        if (
            active_alias
            and not transition_pending
            and not transition_cue
            and is_likely_clinical_continuation(text)
        ):
            _assign(result.patient_segments, active_alias, segment)
            timeline.append((segment, active_alias))
            transition_pending = False
            continue

        result.unmatched_segments.append(segment)
        timeline.append((segment, None))
        if transition_cue:
            active_alias = None
        transition_pending = transition_cue

    adopted = _backfill(timeline, result)
    unmatched = [s for s in result.unmatched_segments if s.segment_id not in adopted]

    if not result.patient_segments and ordered:
        for segment in unmatched or ordered:
            _assign(result.patient_segments, FALLBACK_ALIAS, segment)
        result.fallback_applied = True
        unmatched = []
        logger.info(f"No patient anchors found; {len(ordered)} segments assigned to {FALLBACK_ALIAS}")

    result.unmatched_segments = unmatched
    for alias in result.patient_segments:
        result.patient_segments[alias].sort(key=_chronological)

    logger.debug(
        f"Split: {len(result.patient_segments)} patients, {len(result.ward_events)} ward events, "
        f"{len(result.unmatched_segments)} unmatched"
    )
    return result


def _backfill(timeline: List[Tuple[MaskedSegment, Optional[str]]], result: SplitResult) -> set:
    """Adopt unmatched continuation segments between (or after) same-alias anchors."""
    unmatched_ids = {s.segment_id for s in result.unmatched_segments}
    adopted = set()

    for index, (segment, alias) in enumerate(timeline):
        if alias or segment.segment_id not in unmatched_ids:
            continue
        if has_patient_transition_cue(segment.masked_text):
            continue
        if not is_likely_clinical_continuation(segment.masked_text):
            continue

        previous_alias = next((a for _, a in reversed(timeline[:index]) if a), None)
        next_alias = next((a for _, a in timeline[index + 1:] if a), None)

        if previous_alias and (next_alias is None or next_alias == previous_alias):
            _assign(result.patient_segments, previous_alias, segment)
            adopted.add(segment.segment_id)

    return adopted
