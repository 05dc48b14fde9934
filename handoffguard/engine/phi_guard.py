"""
PHI guard and alias resolver.

Walks the normalized segment stream once. For each segment it:
1. extracts patient anchors (room, honorific name, masked name)
2. resolves a stable alias through the run's AliasResolver
3. replaces anchor tokens with the alias (longest first)
4. redacts direct identifiers (pass 1) then heuristics (pass 2)
5. re-scans the masked text with the full and loose rule sets (residual)

Absence of PHI is the default; nothing here raises on malformed input.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Pattern, Sequence, Tuple

from ..types import MaskedSegment, NormalizedSegment, PhiFinding, PhiType, Severity
from .clinical_nlu import (
    POSSIBLE_NAME_STOPWORDS,
    ROOM_SUFFIX,
    PatientAnchors,
    extract_patient_anchors,
    has_patient_transition_cue,
    is_likely_clinical_continuation,
    normalize_room_mentions,
)
from .spans import Span, find_spans, merge_overlapping, replace_spans

logger = logging.getLogger(__name__)

ALIAS_PREFIX = "PATIENT_"
REDACTED = "[REDACTED]"
ROOM_VOTE_WEIGHT = 5

_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def build_alias(index: int) -> str:
    """0 -> PATIENT_A, 25 -> PATIENT_Z, 26 -> PATIENT_AA, ..."""
    letters = ""
    index += 1
    while index > 0:
        index, rem = divmod(index - 1, 26)
        letters = _ALPHABET[rem] + letters
    return f"{ALIAS_PREFIX}{letters}"


def mask_sample(value: str) -> str:
    """Masked preview of a match: first character then asterisks, at most 6 chars."""
    value = value.strip()
    if not value:
        return ""
    return value[0] + "*" * (min(len(value), 6) - 1)


# =============================================================================
# REDACTION RULES
# =============================================================================

@dataclass(frozen=True)
class RedactionRule:
    """One regex detector. ``reject`` filters out known false positives."""
    rule_id: str
    phi_type: PhiType
    severity: Severity
    pattern: Pattern
    group: int = 0
    reject: Optional[Callable[[str], bool]] = None

    def find(self, text: str) -> List[Span]:
        spans = find_spans(self.pattern, text, self.group)
        if self.reject:
            spans = [s for s in spans if not self.reject(s.text)]
        return spans


def _reject_address(matched: str) -> bool:
    head = re.split(r"\s*[0-9]", matched, maxsplit=1)[0]
    return head.endswith("으로")


def _reject_name_hint(matched: str) -> bool:
    return matched in POSSIBLE_NAME_STOPWORDS


_ADDRESS_UNIT_GUARD = r"(?![0-9]|\s*(?:회|번|mg|mcg|ml|cc|L|%|도|시|분|개|명|일|주|단위|unit|mmHg|bpm))"

HIGH_RULES: Tuple[RedactionRule, ...] = (
    RedactionRule("phone", PhiType.PHONE, Severity.HIGH,
                  re.compile(r"(?<![0-9])01[0-9]-?[0-9]{3,4}-?[0-9]{4}(?![0-9])")),
    RedactionRule("rrn", PhiType.RRN, Severity.HIGH,
                  re.compile(r"(?<![0-9])[0-9]{6}-?[1-4][0-9]{6}(?![0-9])")),
    RedactionRule("dob", PhiType.DOB, Severity.HIGH,
                  re.compile(r"(?:생년월일|DOB)\s*[:#]?\s*(?:19|20)?[0-9]{2}[./-]?[0-9]{1,2}[./-]?[0-9]{1,2}",
                             re.IGNORECASE)),
    RedactionRule("mrn", PhiType.MRN, Severity.HIGH,
                  re.compile(r"(?:차트번호|등록번호|MRN)\s*[:#]?\s*[0-9]{6,}", re.IGNORECASE)),
    RedactionRule("email", PhiType.EMAIL, Severity.HIGH,
                  re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")),
    RedactionRule("address", PhiType.ADDRESS, Severity.HIGH,
                  re.compile(rf"(?<![가-힣A-Za-z])[가-힣]{{2,10}}(?:동|로|길)\s*[0-9]{{1,4}}(?:-[0-9]{{1,4}})?{_ADDRESS_UNIT_GUARD}",
                             re.IGNORECASE),
                  reject=_reject_address),
)

HEURISTIC_RULES: Tuple[RedactionRule, ...] = (
    RedactionRule("patient_id", PhiType.PATIENT_ID, Severity.MED,
                  re.compile(r"(?:환자번호|환자ID|PID)\s*[:#]?\s*[A-Z0-9-]{4,}", re.IGNORECASE)),
    RedactionRule("long_digits", PhiType.LONG_DIGITS, Severity.MED,
                  re.compile(r"(?<![0-9])[0-9]{7,12}(?![0-9])")),
    RedactionRule("room_name", PhiType.ROOM_NAME, Severity.MED,
                  re.compile(r"(?:[0-9]{3,4}\s*호|[0-9]{1,2}\s*번\s*(?:침대|베드|bed))\s*[가-힣]{2,4}(?=\s*(?:환자|님|씨))",
                             re.IGNORECASE)),
    RedactionRule("name_hint", PhiType.NAME_HINT, Severity.LOW,
                  re.compile(r"(?<![가-힣])([가-힣]{2,4})(?=\s*(?:님|씨)(?![가-힣]))"), group=1,
                  reject=_reject_name_hint),
)

# E-mail with stray spaces around "@" or "."
EMAIL_LOOSE = r"[A-Za-z0-9._%+-]+\s?@\s?[A-Za-z0-9-]+(?:\.\s?[A-Za-z0-9-]+)*\.\s?[A-Za-z]{2,}"

# Formats the redaction passes do not expect
LOOSE_RULES: Tuple[RedactionRule, ...] = (
    RedactionRule("email_loose", PhiType.EMAIL, Severity.HIGH,
                  re.compile(EMAIL_LOOSE)),
    RedactionRule("phone_loose", PhiType.PHONE, Severity.HIGH,
                  re.compile(r"(?<![0-9])01[0-9][\s./-]?[0-9]{3,4}[\s./-]?[0-9]{4}(?![0-9])")),
    RedactionRule("rrn_loose", PhiType.RRN, Severity.HIGH,
                  re.compile(r"(?<![0-9])[0-9]{6}[\s./-]?[1-4][0-9]{6}(?![0-9])")),
    RedactionRule("mrn_loose", PhiType.MRN, Severity.HIGH,
                  re.compile(r"(?:차트번호|등록번호|MRN)\s*[:#-]?\s*[A-Z0-9-]{6,}", re.IGNORECASE)),
    RedactionRule("masked_name", PhiType.NAME, Severity.MED,
                  re.compile(r"[가-힣]{1,3}[O○]{2}")),
    RedactionRule("room", PhiType.ROOM, Severity.MED,
                  re.compile(rf"(?<![0-9])[0-9]{{3,4}}\s*{ROOM_SUFFIX}")),
)

RESIDUAL_RULES: Tuple[RedactionRule, ...] = HIGH_RULES + HEURISTIC_RULES + LOOSE_RULES


def redact(text: str, rules: Sequence[RedactionRule]) -> Tuple[str, List[PhiFinding], List[str]]:
    """Apply rules in order, each on the output of the previous one.

    Finding offsets refer to the text the rule ran on.
    """
    findings: List[PhiFinding] = []
    labels: List[str] = []
    for rule in rules:
        spans = merge_overlapping(rule.find(text))
        if not spans:
            continue
        for span in spans:
            findings.append(PhiFinding(rule.phi_type, span.start, span.end, mask_sample(span.text), rule.severity))
        labels.append(rule.rule_id)
        text = replace_spans(text, spans, REDACTED)
    return text, findings, labels


def scan_residual(text: str, rules: Sequence[RedactionRule] = RESIDUAL_RULES) -> List[Tuple[str, PhiFinding]]:
    """(rule id, finding) for every residual rule hit; the text is not changed."""
    hits = []
    for rule in rules:
        for span in rule.find(text):
            hits.append((rule.rule_id, PhiFinding(
                rule.phi_type, span.start, span.end, mask_sample(span.text), rule.severity
            )))
    return hits


# =============================================================================
# ALIAS RESOLVER
# =============================================================================

class AliasResolver:
    """
    Per-run identity registry.

    Precedence when choosing an alias for a segment:
      (i)   a room token already has an alias -> weighted vote (rooms 5x)
      (ii)  an unseen room token -> new alias
      (iii) a name token already has an alias -> majority vote
      (iv)  any other anchor -> new alias
      (v)   clinical continuation with no transition pending -> active alias
      (vi)  nothing
    """

    def __init__(self):
        self.token_to_alias: Dict[str, str] = {}
        self.active_alias: Optional[str] = None
        self.transition_pending = False
        self._minted = 0

    def mint(self) -> str:
        alias = build_alias(self._minted)
        self._minted += 1
        return alias

    @staticmethod
    def _vote(weighted: List[Tuple[str, int]]) -> str:
        votes: Counter = Counter()
        order: List[str] = []
        for alias, weight in weighted:
            if alias not in votes:
                order.append(alias)
            votes[alias] += weight
        # ties go to the alias seen first
        return max(order, key=lambda a: (votes[a], -order.index(a)))

    def resolve(self, anchors: PatientAnchors, text: str) -> Optional[str]:
        known_rooms = [self.token_to_alias[t] for t in anchors.room_tokens if t in self.token_to_alias]
        known_names = [
            self.token_to_alias[t]
            for t in [*anchors.name_tokens, *anchors.masked_name_tokens]
            if t in self.token_to_alias
        ]

        if known_rooms:
            return self._vote([(a, ROOM_VOTE_WEIGHT) for a in known_rooms] + [(a, 1) for a in known_names])
        if anchors.room_tokens:
            return self.mint()
        if known_names:
            return self._vote([(a, 1) for a in known_names])
        if anchors.has_strong_anchor:
            return self.mint()
        if (
            self.active_alias
            and not self.transition_pending
            and not has_patient_transition_cue(text)
            and is_likely_clinical_continuation(text)
        ):
            return self.active_alias
        return None

    def register(self, anchors: PatientAnchors, alias: str):
        for token in anchors.room_tokens:
            self.token_to_alias[token] = alias
        for token in [*anchors.name_tokens, *anchors.masked_name_tokens]:
            self.token_to_alias.setdefault(token, alias)

    def advance(self, alias: Optional[str], transition_cue: bool):
        """Carry state to the next segment; a cue here clears the active alias there."""
        if transition_cue:
            self.active_alias = None
        elif alias:
            self.active_alias = alias
        self.transition_pending = transition_cue

    def alias_map(self) -> Dict[str, str]:
        return dict(self.token_to_alias)


# =============================================================================
# GUARD
# =============================================================================

@dataclass
class PhiGuardResult:
    segments: List[MaskedSegment] = field(default_factory=list)
    alias_map: Dict[str, str] = field(default_factory=dict)
    findings: List[PhiFinding] = field(default_factory=list)
    residual_findings: List[PhiFinding] = field(default_factory=list)
    safe_to_persist: bool = True
    export_allowed: bool = True


def _anchor_pattern(token: str, is_room: bool) -> Pattern:
    if is_room:
        digits = re.sub(r"[^0-9]", "", token)
        return re.compile(rf"(?<![0-9]){digits}\s*{ROOM_SUFFIX}")
    return re.compile(rf"{re.escape(token)}(?:\s*(?:님|씨)(?![가-힣]))?")


def mask_anchors(text: str, anchors: PatientAnchors, alias: str) -> Tuple[str, List[PhiFinding], List[str]]:
    """Replace every anchor token with ``alias``, longest token first."""
    rooms = set(anchors.room_tokens)
    findings: List[PhiFinding] = []
    labels: List[str] = []
    for token in sorted(anchors.all_tokens(), key=lambda t: (-len(t), t)):
        is_room = token in rooms
        spans = find_spans(_anchor_pattern(token, is_room), text)
        if not spans:
            continue
        phi_type = PhiType.ROOM if is_room else PhiType.NAME
        severity = Severity.MED if is_room else Severity.HIGH
        for span in spans:
            findings.append(PhiFinding(phi_type, span.start, span.end, mask_sample(span.text), severity))
        labels.append(phi_type.value.lower())
        text = _anchor_pattern(token, is_room).sub(alias, text)
    # "701호 김민준" -> "PATIENT_A PATIENT_A" -> "PATIENT_A"
    text = re.sub(rf"{re.escape(alias)}(?:\s*{re.escape(alias)})+", alias, text)
    return text, findings, labels


def apply_phi_guard(
    segments: Sequence[NormalizedSegment],
    resolver: Optional[AliasResolver] = None,
) -> PhiGuardResult:
    """
    Mask identifiers and assign patient aliases across a segment stream.

    Args:
        segments: Normalized segments in transcript order.
        resolver: Identity registry; a fresh one per run by default.
    """
    resolver = resolver or AliasResolver()
    result = PhiGuardResult()

    for segment in segments:
        text = segment.normalized_text if isinstance(segment.normalized_text, str) else ""
        source = normalize_room_mentions(text)
        anchors = extract_patient_anchors(source)
        transition_cue = has_patient_transition_cue(source)

        alias = resolver.resolve(anchors, source)
        findings: List[PhiFinding] = []
        phi_hits: List[str] = []
        masked = source

        if alias and anchors.has_strong_anchor:
            resolver.register(anchors, alias)
            masked, anchor_findings, labels = mask_anchors(masked, anchors, alias)
            findings.extend(anchor_findings)
            phi_hits.extend(labels)

        masked, high, labels = redact(masked, HIGH_RULES)
        findings.extend(high)
        phi_hits.extend(labels)

        masked, heuristic, labels = redact(masked, HEURISTIC_RULES)
        findings.extend(heuristic)
        phi_hits.extend(labels)

        residual = [finding for _, finding in scan_residual(masked)]
        if residual:
            logger.warning(
                f"Residual PHI in segment {segment.segment_id}: "
                f"{len(residual)} hit(s) ({', '.join(sorted({f.type.value for f in residual}))})"
            )

        resolver.advance(alias, transition_cue)

        result.segments.append(MaskedSegment(
            segment_id=segment.segment_id,
            masked_text=" ".join(masked.split()),
            start_ms=segment.start_ms,
            end_ms=segment.end_ms,
            uncertainties=list(segment.uncertainties),
            patient_alias=alias,
            phi_hits=list(dict.fromkeys(phi_hits)),
            findings=findings,
            residual_findings=residual,
        ))
        result.findings.extend(findings)
        result.residual_findings.extend(residual)

    result.alias_map = resolver.alias_map()
    result.safe_to_persist = not result.residual_findings
    result.export_allowed = result.safe_to_persist
    logger.debug(
        f"PHI guard: {len(result.segments)} segments, {len(set(result.alias_map.values()))} aliases, "
        f"{len(result.findings)} findings, {len(result.residual_findings)} residual"
    )
    return result
