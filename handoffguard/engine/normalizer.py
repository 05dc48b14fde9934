"""
Clinical normalizer.

RawSegment -> NormalizedSegment, one to one and in order. Pure: the same raw
text always yields the same normalized text and the same uncertainty list.
"""

import logging
import re
from typing import List, Optional, Sequence, Tuple

from ..lexicon import ClinicalLexicon, get_lexicon
from ..types import NormalizedSegment, RawSegment, SegmentUncertainty, UncertaintyKind
from .clinical_nlu import (
    detect_confusable_abbreviations,
    detect_unknown_abbreviations,
    normalize_clinical_narrative,
    normalize_time_expressions,
)

logger = logging.getLogger(__name__)


ABBREVIATION_RULES = tuple(
    (re.compile(pattern, re.IGNORECASE | re.ASCII), replacement)
    for pattern, replacement in (
        (r"\bV/?S\b", "활력징후"),
        (r"\bBST\b", "혈당"),
        (r"\bSpO2?\b", "산소포화도"),
        (r"\bBP\b", "혈압"),
        (r"\bHR\b", "맥박"),
        (r"\bRR\b", "호흡수"),
        (r"\bPCA\b", "통증자가조절기"),
        (r"\bABx\b", "항생제"),
        (r"\bPRN\b", "필요시"),
        (r"\bU/?O\b", "소변량"),
        (r"\bNPO\b", "금식"),
        (r"\bIV\b", "정맥"),
        (r"\bPO\b", "경구"),
        (r"\bRA\b", "실온공기"),
        (r"\bHb\b", "헤모글로빈"),
        (r"\bI/?O\b", "수분출납"),
        (r"\bLabs?\b", "검사"),
        (r"\bCBC\b", "혈액검사"),
        (r"\bCRP\b", "염증수치"),
        (r"\bNRS\b", "통증척도"),
    )
)

TIME_PATTERN = re.compile(
    r"([0-9]{1,2}\s*시(?:\s*[0-9]{1,2}\s*분)?|[0-9]{1,2}:[0-9]{2}|새벽\s*[0-9]{0,2}\s*시?|오전|오후|저녁|밤"
    r"|금일|오늘|내일|익일|매\s*[0-9]+\s*시간|q[0-9]+h)",
    re.IGNORECASE,
)
VALUE_PATTERN = re.compile(r"([0-9]+(?:\.[0-9]+)?(?:\s*(?:mg|ml|l|mmhg|bpm|%|회|명|시간|h|도|점))?)", re.IGNORECASE)
TASK_HINT_PATTERN = re.compile(r"(투약|검사|오더|재측정|재검|체크|확인|콜|처치|드레싱|추적|보고|재평가|follow\s*up)", re.IGNORECASE)
TASK_PENDING_HINT_PATTERN = re.compile(r"(필요|예정|다시|마다|전|후|내일|익일|오전|오후|밤|새벽|즉시|지금)")
TASK_COMPLETED_HINT_PATTERN = re.compile(r"(완료|종료|시행됨|시행|진행됨|들어갔|투약됨|투약했고|처치함|했다|했음)")
ROUTINE_OBSERVATION_PATTERN = re.compile(r"(모니터링|관찰|유지)\s*(필요|중|부탁)?")
LAB_PENDING_PATTERN = re.compile(r"(결과\s*확인\s*필요|검사\s*나갔|검사\s*대기|pending)", re.IGNORECASE)
VALUE_TOPIC_PATTERN = re.compile(
    r"(혈당|헤모글로빈|체온|소변량|활력징후|혈압|맥박|호흡수|산소포화도|검사수치|수분출납|산소|염증수치|혈액검사)"
)
VALUE_PRESENT_PATTERN = re.compile(
    r"((혈당|헤모글로빈|체온|소변량|활력징후|혈압|맥박|호흡수|산소포화도|산소)[^.!?\n]{0,14}[0-9]+(?:\.[0-9]+)?"
    r"|[0-9]+(?:\.[0-9]+)?\s*(mg|ml|l|mmhg|bpm|%|회|도))",
    re.IGNORECASE,
)
VALUE_QUALITATIVE_HINT_PATTERN = re.compile(
    r"(정상|안정|유지|양호|무변화|호전|악화\s*없|특이\s*없|음성|양성|소량|감소\s*경향|증가\s*경향|황색|명료)"
)
UNCERTAINTY_HINT_PATTERN = re.compile(r"(확인\s*부탁|미정|미기재|불명|애매|추후|나중|기억\s*안|모름|확실치)")

PUNCTUATION_PATTERN = re.compile(r"\s*([,.;!?])\1*\s*")

REASON_MANUAL_REVIEW = "원문에 확인 필요 표현이 포함되어 수동 검수가 필요합니다."
REASON_MISSING_TIME = "업무/오더 항목에 시간 정보가 없어 확인이 필요합니다."
REASON_MISSING_VALUE = "임상 수치 항목에 값이 생략되어 확인이 필요합니다."


def normalize_whitespace(text: str) -> str:
    """Collapse whitespace and put one space after punctuation.

    Repeated marks ("...") collapse to one. A single mark wedged between
    ASCII letters or digits (decimals, "1,200", e-mail addresses, domains)
    is part of the token and stays intact.
    """
    collapsed = " ".join(text.split())

    def _word_char(ch: str) -> bool:
        return ch.isascii() and ch.isalnum()

    def _punct(match: "re.Match") -> str:
        start, end = match.span()
        mark = match.group(1)
        inside_token = (
            match.group(0) == mark
            and start > 0
            and end < len(collapsed)
            and _word_char(collapsed[start - 1])
            and _word_char(collapsed[end])
        )
        return mark if inside_token else f"{mark} "

    return PUNCTUATION_PATTERN.sub(_punct, collapsed).strip()


def should_flag_missing_time(text: str) -> bool:
    if not TASK_HINT_PATTERN.search(text):
        return False
    if TIME_PATTERN.search(text) or LAB_PENDING_PATTERN.search(text):
        return False

    routine_only = bool(ROUTINE_OBSERVATION_PATTERN.search(text)) and not re.search(
        r"(재측정|재검|다시|오더|투약|콜|처치|드레싱|보고)", text
    )
    if routine_only:
        return False

    has_pending_cue = bool(TASK_PENDING_HINT_PATTERN.search(text))
    looks_completed = bool(TASK_COMPLETED_HINT_PATTERN.search(text)) and not re.search(
        r"(다시|재측정|재검|추가|필요)", text
    )
    if looks_completed and not has_pending_cue:
        return False
    return has_pending_cue or bool(re.search(r"(재측정|재검|체크|확인|콜|모니터|추적|보고)", text))


def should_flag_missing_value(text: str) -> bool:
    if not VALUE_TOPIC_PATTERN.search(text):
        return False
    if VALUE_PRESENT_PATTERN.search(text) or VALUE_QUALITATIVE_HINT_PATTERN.search(text):
        return False
    if LAB_PENDING_PATTERN.search(text):
        return False
    return not VALUE_PATTERN.search(text)


def detect_uncertainties(
    raw_text: str,
    normalized_text: str,
    lexicon: ClinicalLexicon,
) -> List[SegmentUncertainty]:
    """
    Data-quality flags for one segment.

    Hedging and abbreviation checks look at the raw text, since expansion
    rewrites the abbreviations themselves; time/value checks look at the
    normalized text.
    """
    found: List[SegmentUncertainty] = []

    if UNCERTAINTY_HINT_PATTERN.search(raw_text):
        found.append(SegmentUncertainty(UncertaintyKind.MANUAL_REVIEW, REASON_MANUAL_REVIEW))

    if should_flag_missing_time(normalized_text):
        found.append(SegmentUncertainty(UncertaintyKind.MISSING_TIME, REASON_MISSING_TIME))

    if should_flag_missing_value(normalized_text):
        found.append(SegmentUncertainty(UncertaintyKind.MISSING_VALUE, REASON_MISSING_VALUE))

    unresolved = detect_unknown_abbreviations(raw_text, lexicon, max_count=2)
    if unresolved:
        found.append(SegmentUncertainty(
            UncertaintyKind.UNRESOLVED_ABBREVIATION,
            f"미해석 약어({', '.join(unresolved)})가 포함되어 확인이 필요합니다.",
        ))

    for warning in detect_confusable_abbreviations(raw_text, lexicon, max_count=2):
        found.append(SegmentUncertainty(UncertaintyKind.CONFUSABLE_ABBREVIATION, warning.reason))

    return found


def _expand(pre: str, lexicon: ClinicalLexicon) -> Tuple[str, List[str]]:
    narrative = normalize_clinical_narrative(pre, lexicon)
    text = narrative.text
    for pattern, replacement in ABBREVIATION_RULES:
        text = pattern.sub(replacement, text)
    return normalize_whitespace(normalize_time_expressions(text)), narrative.applied_terms


def normalize_text(raw_text: str, lexicon: Optional[ClinicalLexicon] = None) -> str:
    """Normalized text for a single utterance."""
    text, _ = _expand(normalize_whitespace(raw_text), lexicon or get_lexicon())
    return text


def normalize(
    raw_segments: Sequence[RawSegment],
    lexicon: Optional[ClinicalLexicon] = None,
) -> List[NormalizedSegment]:
    """
    Normalize segments, one output per input, order preserved.

    Args:
        raw_segments: Transcript segments in any order.
        lexicon: Lexicon to use; defaults to the bundled one.
    """
    lexicon = lexicon or get_lexicon()
    normalized_segments = []

    for segment in raw_segments:
        raw_text = segment.raw_text if isinstance(segment.raw_text, str) else ""
        pre = normalize_whitespace(raw_text)
        text, applied_terms = _expand(pre, lexicon)

        normalized_segments.append(NormalizedSegment(
            segment_id=segment.segment_id,
            normalized_text=text,
            start_ms=segment.start_ms,
            end_ms=segment.end_ms,
            uncertainties=detect_uncertainties(pre, text, lexicon),
            applied_terms=applied_terms,
        ))

    flagged = sum(1 for s in normalized_segments if s.uncertainties)
    logger.debug(f"Normalized {len(normalized_segments)} segments ({flagged} with uncertainties)")
    return normalized_segments
