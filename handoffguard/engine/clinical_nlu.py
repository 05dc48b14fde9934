"""
Clinical narrative helpers shared by the normalizer, PHI guard and splitter.

Covers:
- Room mention canonicalization (spaced digits, Korean digit words, 병실/룸)
- Bilingual term expansion driven by the clinical lexicon
- Time expressions to 24-hour HH:MM
- Patient anchors (room, honorific name, masked name) and continuation cues
- Unknown and confusable abbreviation detection

All regexes that mimic an ASCII word boundary use explicit ASCII classes;
Hangul is a word character for Python's ``\\b``.
"""

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, List, Optional, Pattern, Tuple

from ..lexicon import ClinicalLexicon, HANGUL_PARTICLE_SUFFIXES, fold_clinical_token, normalize_subscript_digits
from .spans import find_tokens


# =============================================================================
# PATTERNS
# =============================================================================

KOREAN_DIGIT_MAP = {
    "공": "0", "영": "0", "일": "1", "이": "2", "삼": "3",
    "사": "4", "오": "5", "육": "6", "칠": "7", "팔": "8", "구": "9",
}

# 호흡, 호전, 호소 ... are words, not room suffixes
ROOM_SUFFIX = r"호(?![흡전소출르응감텔주환])"

ROOM_TOKEN_PATTERN = re.compile(rf"(?<![0-9])([0-9]{{3,4}}\s*{ROOM_SUFFIX})")
SPACED_ROOM_PATTERN = re.compile(rf"(?<![0-9])((?:[0-9]\s*){{3,4}})\s*(?:{ROOM_SUFFIX}|병실|룸)")
KOREAN_ROOM_PATTERN = re.compile(rf"(?<![가-힣])([공영일이삼사오육칠팔구]{{3,4}})\s*(?:{ROOM_SUFFIX}|병실|룸)")
ROOM_KEYWORD_PATTERN = re.compile(r"(?:병실|룸)\s*([0-9]{3,4})(?![0-9])(?!\s*호)")
SCENARIO_MARKER_PATTERN = re.compile(r"시나리오\s*[0-9]+")

BASE_NAME_PATTERNS: Tuple[Pattern, ...] = (
    re.compile(r"([가-힣]{2,4})(?=\s*(?:님|씨|환자))"),
    re.compile(r"([가-힣]{1,3}[O○0]{2})(?![0-9])"),
)
MASKED_NAME_PATTERN = re.compile(r"[가-힣]{1,3}[O○0]{2}(?![0-9])")
ROOM_CONTEXT_NAME_PATTERN = re.compile(
    rf"(?:[0-9]{{3,4}}\s*{ROOM_SUFFIX})\s*([가-힣]{{2,4}})"
    r"(?=\s*(?:환자|님|씨|인계|이고|은|는|가|이|폐렴|저혈압|고혈압|혈당|상태|호흡|통증|수술|낙상|검사))"
)

POSSIBLE_NAME_STOPWORDS = frozenset({
    "해당", "상기", "동일", "당해", "환자", "인계", "오늘", "오전", "오후", "새벽",
    "병동", "상태", "수치", "혈압", "혈당", "호흡", "산소", "검사", "확인", "투약",
    "오더", "퇴원", "입원", "모니터링", "유지", "필요", "통증", "소변량", "활력징후",
    "체온", "낙상", "위험", "회진", "신규", "가능", "예정", "금일", "익일",
    "다음", "그다음", "다른", "담당", "보호자", "선생", "교수", "간호사", "수간호사",
    "주치의", "담당의", "전공의", "과장", "원장",
})

CONTINUATION_HINT_PATTERN = re.compile(
    r"(혈당|혈압|호흡|산소|오더|투약|검사|통증|소변량|활력징후|체온|항생제|콜|모니터|확인|재측정|재검|수치"
    r"|I/O|SpO2|스포투|에스피오투|브이에스|바이탈)",
    re.IGNORECASE,
)
TRANSITION_CUE_PATTERN = re.compile(r"(다음|그다음|이어서|한편|반면|다른\s*환자|신규\s*환자|신규\s*입원|퇴원\s*예정)")
PATIENT_PRONOUN_PATTERN = re.compile(r"(해당\s*환자|그\s*환자|이\s*환자|상기\s*환자|동일\s*환자)")

# ASCII word boundaries, as in JS-style \b
CLINICAL_REPLACEMENT_RULES: Tuple[Tuple[str, Pattern], ...] = tuple(
    (canonical, re.compile(pattern, re.IGNORECASE | re.ASCII))
    for canonical, pattern in (
        ("생체징후", r"\bvital\s*signs?\b"),
        ("안정적", r"\bstable\b"),
        ("혈압", r"\bblood\s*pressure\b"),
        ("저혈압", r"\bhypotension\b"),
        ("수액볼루스", r"\bfluid\s*bolus\b"),
        ("의식상태", r"\bmental\s*status\b"),
        ("지남력", r"\borientation\b"),
        ("통증척도", r"\bpain\s*score\b"),
        ("진통제", r"\banalgesic\b"),
        ("호흡상태", r"\brespiratory\s*status\b"),
        ("산소포화도", r"\bspo\s*2\b"),
        ("비강산소공급", r"\bnasal\s*cannula\b"),
        ("객담", r"\bsputum\b"),
        ("황색", r"\byellowish\b"),
        ("섭취배설량", r"\bintake\s*&?\s*output\b"),
        ("소변량", r"\burine\s*output\b"),
        ("소변관찰", r"\burine\s*monitoring\b"),
        ("모니터링", r"\bmonitoring\b"),
        ("검사", r"\blaboratory\s*tests?\b"),
        ("혈액검사", r"\bCBC\b"),
        ("염증수치", r"\bCRP\b"),
        ("항생제", r"\bantibiotics?\b"),
        ("첫투여", r"\bfirst\s*dose\b"),
        ("낙상위험", r"\bfall\s*risk\b"),
        ("침상경보", r"\bbed\s*alarm\b"),
        ("보행", r"\bambulation\b"),
        ("보조", r"\bassist\b"),
        ("명료", r"\balert\b"),
    )
)

TOKEN_REPLACE_PATTERN = re.compile(r"[A-Za-z0-9가-힣&;_./-]{2,}")
ABBREVIATION_CANDIDATE_PATTERN = re.compile(r"\b[A-Za-z][A-Za-z0-9/]{1,10}\b", re.ASCII)

SAFE_ENGLISH_TOKENS = frozenset({
    "vital", "signs", "stable", "blood", "pressure", "hypotension", "fluid", "bolus",
    "mental", "status", "orientation", "pain", "score", "analgesic", "respiratory",
    "sputum", "yellowish", "intake", "output", "urine", "monitoring", "laboratory",
    "test", "tests", "antibiotics", "first", "dose", "fall", "risk", "bed", "alarm",
    "ambulation", "assist", "check", "alert",
})

# Time expressions
DAY_PERIOD_TIME_PATTERN = re.compile(
    r"(새벽|오전|오후|저녁|밤|낮|아침)\s*([0-9]{1,2})\s*시(?![간행작점기술도험설])"
    r"(?:\s*([0-9]{1,2})\s*분|\s*(반))?"
)
MERIDIEM_TIME_PATTERN = re.compile(
    r"(?<![0-9:])([0-9]{1,2})(?::([0-9]{2}))?\s*(am|pm)(?![A-Za-z])",
    re.IGNORECASE,
)
PLAIN_HOUR_PATTERN = re.compile(
    r"(?<![0-9:])([0-9]{1,2})\s*시(?![간행작점기술도험설])(?:\s*([0-9]{1,2})\s*분|\s*(반))?"
)

CONFUSION_CONTEXT_WINDOW_RADIUS = 24

CARDIAC_CONTEXT = re.compile(r"(맥박|심박|pulse|bpm|heart\s*rate|빈맥|서맥|심전도|ECG|EKG)", re.IGNORECASE)
RESPIRATORY_CONTEXT = re.compile(r"(호흡|resp|breath|호흡수|호흡곤란|회/분|r/min|흡기|호기)", re.IGNORECASE)
DISCHARGE_CONTEXT = re.compile(r"(퇴원|discharge|전원|귀가|집으로)", re.IGNORECASE)
DISCONTINUE_CONTEXT = re.compile(r"(중단|중지|보류|hold|stop|끊|종료|off|약\s*중단|투약\s*중단)", re.IGNORECASE)
RENAL_CONTEXT = re.compile(r"(creatinine|크레아티닌|신장|renal|콩팥|eGFR|BUN|요독)", re.IGNORECASE)
INFLAMMATORY_CONTEXT = re.compile(r"(염증|감염|패혈|sepsis|wbc|procalcitonin|CRP)", re.IGNORECASE)
PRN_CONTEXT = re.compile(r"(필요시|as needed|증상시|통증시|불편시|발열시)", re.IGNORECASE)
PR_CONTEXT = re.compile(r"(직장|rectal|per\s*rectum|좌약)", re.IGNORECASE)
PE_CONTEXT = re.compile(r"(폐색전|embolism|d-dimer|CTPA|흉통|호흡곤란)", re.IGNORECASE)
PEA_CONTEXT = re.compile(r"(무맥성|심정지|arrest|CPR|resuscitation|소생술)", re.IGNORECASE)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class NarrativeNormalization:
    text: str
    applied_terms: List[str] = field(default_factory=list)


@dataclass
class PatientAnchors:
    """Identity evidence found in one segment."""
    room_tokens: List[str] = field(default_factory=list)
    name_tokens: List[str] = field(default_factory=list)
    masked_name_tokens: List[str] = field(default_factory=list)

    @property
    def has_strong_anchor(self) -> bool:
        return bool(self.room_tokens or self.name_tokens or self.masked_name_tokens)

    def all_tokens(self) -> List[str]:
        return _unique([*self.room_tokens, *self.name_tokens, *self.masked_name_tokens])


@dataclass(frozen=True)
class ConfusableWarning:
    pair: Tuple[str, str]
    token: str
    reason: str
    snippet: str


def _unique(values: List[str]) -> List[str]:
    return list(dict.fromkeys(values))


# =============================================================================
# ROOM MENTIONS
# =============================================================================

def compact_room_digits(value: str) -> Optional[str]:
    digits = re.sub(r"[^0-9]", "", value)
    if len(digits) < 3 or len(digits) > 4:
        return None
    return f"{digits}호"


def _korean_digits_to_arabic(raw: str) -> Optional[str]:
    digits = "".join(KOREAN_DIGIT_MAP.get(ch, "") for ch in raw)
    if len(digits) != len(raw) or not 3 <= len(digits) <= 4:
        return None
    return digits


def normalize_room_mentions(text: str) -> str:
    """Collapse ``7 0 1 호``, ``칠공일호`` and ``병실 701`` into ``701호``."""
    normalized = normalize_subscript_digits(text)
    normalized = SPACED_ROOM_PATTERN.sub(
        lambda m: compact_room_digits(m.group(1)) or m.group(0), normalized
    )

    def _korean(match: "re.Match") -> str:
        digits = _korean_digits_to_arabic(match.group(1))
        return f"{digits}호" if digits else match.group(0)

    normalized = KOREAN_ROOM_PATTERN.sub(_korean, normalized)
    return ROOM_KEYWORD_PATTERN.sub(lambda m: f"{m.group(1)}호", normalized)


# =============================================================================
# TERM EXPANSION
# =============================================================================

def _split_trailing_particle(token: str) -> Tuple[str, str]:
    for suffix in HANGUL_PARTICLE_SUFFIXES:
        if len(token) <= len(suffix) + 1:
            continue
        if token.endswith(suffix):
            return token[: -len(suffix)], suffix
    return token, ""


def _apply_token_rules(text: str, lexicon: ClinicalLexicon, applied: Dict[str, None]) -> str:
    def _sub(match: "re.Match") -> str:
        token = match.group(0)
        direct = lexicon.lookup(token)
        if direct:
            applied.setdefault(direct, None)
            return direct

        if not re.search(r"[가-힣]", token):
            return token

        stem, suffix = _split_trailing_particle(token)
        from_stem = lexicon.lookup(stem)
        if not from_stem:
            return token
        applied.setdefault(from_stem, None)
        return f"{from_stem}{suffix}"

    return TOKEN_REPLACE_PATTERN.sub(_sub, text)


def normalize_clinical_narrative(text: str, lexicon: ClinicalLexicon) -> NarrativeNormalization:
    """Room canonicalization followed by bilingual term expansion.

    Order: fixed English phrase rules, lexicon phrase rules (longest first),
    then lexicon single-token rules with particle preservation.
    """
    normalized = normalize_room_mentions(text)
    normalized = SCENARIO_MARKER_PATTERN.sub(" ", normalized)
    applied: Dict[str, None] = {}

    for canonical, pattern in CLINICAL_REPLACEMENT_RULES:
        replaced = pattern.sub(canonical, normalized)
        if replaced != normalized:
            applied.setdefault(canonical, None)
        normalized = replaced

    for rule in lexicon.phrase_rules:
        normalized, changed = rule.apply(normalized)
        if changed:
            applied.setdefault(rule.canonical, None)

    normalized = _apply_token_rules(normalized, lexicon, applied)
    return NarrativeNormalization(
        text=" ".join(normalized.split()),
        applied_terms=list(applied),
    )


# =============================================================================
# TIME EXPRESSIONS
# =============================================================================

def _format_clock(hour: int, minute: int) -> Optional[str]:
    if hour == 24:
        hour = 0
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None
    return f"{hour:02d}:{minute:02d}"


def _minute_of(minute_text: Optional[str], half: Optional[str]) -> int:
    if minute_text:
        return int(minute_text)
    return 30 if half else 0


def _day_period_hour(period: str, hour: int) -> int:
    if period in ("새벽", "오전", "아침"):
        return 0 if hour == 12 else hour
    if period in ("오후", "저녁"):
        return hour + 12 if hour < 12 else hour
    if period == "밤":
        if hour == 12:
            return 0
        return hour if hour < 6 else (hour + 12 if hour < 12 else hour)
    # 낮
    return hour + 12 if hour <= 6 else hour


def normalize_time_expressions(text: str) -> str:
    """Rewrite clock times as HH:MM (``새벽 2시`` -> ``02:00``, ``3pm`` -> ``15:00``).

    Durations (``4시간``), frequencies (``q4h``) and bare period words
    (``오전``) are left as they are.
    """
    def _period(match: "re.Match") -> str:
        hour = _day_period_hour(match.group(1), int(match.group(2)))
        clock = _format_clock(hour, _minute_of(match.group(3), match.group(4)))
        return clock or match.group(0)

    def _meridiem(match: "re.Match") -> str:
        hour = int(match.group(1))
        if hour < 1 or hour > 12:
            return match.group(0)
        if match.group(3).lower() == "pm":
            hour = hour if hour == 12 else hour + 12
        else:
            hour = 0 if hour == 12 else hour
        clock = _format_clock(hour, int(match.group(2) or 0))
        return clock or match.group(0)

    def _plain(match: "re.Match") -> str:
        clock = _format_clock(int(match.group(1)), _minute_of(match.group(2), match.group(3)))
        return clock or match.group(0)

    normalized = DAY_PERIOD_TIME_PATTERN.sub(_period, text)
    normalized = MERIDIEM_TIME_PATTERN.sub(_meridiem, normalized)
    return PLAIN_HOUR_PATTERN.sub(_plain, normalized)


# =============================================================================
# PATIENT ANCHORS
# =============================================================================

def is_plausible_name_token(token: str) -> bool:
    return bool(re.fullmatch(r"[가-힣]{2,4}", token)) and token not in POSSIBLE_NAME_STOPWORDS


def extract_room_tokens(text: str) -> List[str]:
    normalized = normalize_room_mentions(text)
    tokens = [compact_room_digits(t) or t for t in find_tokens(ROOM_TOKEN_PATTERN, normalized)]
    return _unique(tokens)


def extract_name_tokens(text: str) -> List[str]:
    candidates: List[str] = []
    for pattern in BASE_NAME_PATTERNS:
        candidates.extend(find_tokens(pattern, text))
    candidates.extend(find_tokens(ROOM_CONTEXT_NAME_PATTERN, text))
    return [token for token in _unique(candidates) if is_plausible_name_token(token)]


def extract_patient_anchors(text: str) -> PatientAnchors:
    normalized = normalize_room_mentions(text)
    return PatientAnchors(
        room_tokens=extract_room_tokens(normalized),
        name_tokens=extract_name_tokens(normalized),
        masked_name_tokens=_unique(MASKED_NAME_PATTERN.findall(normalized)),
    )


def has_patient_transition_cue(text: str) -> bool:
    return bool(TRANSITION_CUE_PATTERN.search(text))


def is_likely_clinical_continuation(text: str) -> bool:
    return bool(CONTINUATION_HINT_PATTERN.search(text) or PATIENT_PRONOUN_PATTERN.search(text))


# =============================================================================
# ABBREVIATIONS
# =============================================================================

def _is_strict_abbreviation(token: str) -> bool:
    letters = re.sub(r"[^A-Za-z]", "", token)
    if len(letters) < 2 or len(token) > 10:
        return False
    upper_count = len(re.findall(r"[A-Z]", token))
    return bool(re.search(r"[0-9]", token)) or token == token.upper() or upper_count >= 2


def detect_unknown_abbreviations(text: str, lexicon: ClinicalLexicon, max_count: int = 2) -> List[str]:
    """ALL-CAPS or digit-bearing tokens missing from the known set."""
    normalized = normalize_subscript_digits(text)
    unknown: List[str] = []

    for token in ABBREVIATION_CANDIDATE_PATTERN.findall(normalized):
        if not _is_strict_abbreviation(token):
            continue
        if re.fullmatch(r"[OX]{2,4}", token, re.IGNORECASE):
            continue
        if token.lower() in SAFE_ENGLISH_TOKENS:
            continue
        if re.fullmatch(r"q[0-9]+h|qd|bid|tid|qid", token, re.IGNORECASE):
            continue
        if lexicon.is_known_abbreviation(token):
            continue

        normalized_upper = re.sub(r"[^A-Z0-9/]", "", token.upper())
        if normalized_upper not in unknown:
            unknown.append(normalized_upper)
        if len(unknown) >= max_count:
            break

    return unknown


@lru_cache(maxsize=64)
def _flexible_token_regex(token: str) -> Pattern:
    core = []
    for ch in token.strip():
        if ch == "/":
            core.append(r"[\s/]*")
        elif ch == "-":
            core.append(r"[\s-]*")
        elif ch == ".":
            core.append(r"[\s.]*")
        else:
            core.append(re.escape(ch))
    # trailing Hangul particles stay attached (HR가, CRP는)
    return re.compile(rf"(^|[^A-Za-z0-9])({''.join(core)})(?=$|[^A-Za-z0-9])", re.IGNORECASE)


@dataclass(frozen=True)
class _Mention:
    index: int
    token: str
    window: str


def _mentions(text: str, token: str) -> List[_Mention]:
    mentions = []
    for match in _flexible_token_regex(token).finditer(text):
        start = match.start(2)
        end = match.end(2)
        window = text[max(0, start - CONFUSION_CONTEXT_WINDOW_RADIUS):end + CONFUSION_CONTEXT_WINDOW_RADIUS]
        mentions.append(_Mention(start, match.group(2), window))
    return mentions


# (pair, token, context that supports the token, context that supports the other member, reason)
_ONE_SIDED_CHECKS = (
    (("HR", "RR"), "HR", CARDIAC_CONTEXT, RESPIRATORY_CONTEXT,
     "HR가 호흡 문맥으로 해석될 가능성이 있어 RR과 혼동 검토가 필요합니다."),
    (("HR", "RR"), "RR", RESPIRATORY_CONTEXT, CARDIAC_CONTEXT,
     "RR가 맥박 문맥으로 해석될 가능성이 있어 HR과 혼동 검토가 필요합니다."),
    (("Cr", "CRP"), "Cr", RENAL_CONTEXT, INFLAMMATORY_CONTEXT,
     "Cr 표기가 염증 문맥과 섞여 CRP와 혼동될 가능성이 있습니다."),
    (("Cr", "CRP"), "CRP", INFLAMMATORY_CONTEXT, RENAL_CONTEXT,
     "CRP 표기가 신장수치 문맥과 섞여 Cr(크레아티닌)과 혼동될 가능성이 있습니다."),
    (("PR", "PRN"), "PR", PR_CONTEXT, PRN_CONTEXT,
     "PR 표기가 필요시 문맥으로 읽혀 PRN과 혼동될 가능성이 있습니다."),
    (("PR", "PRN"), "PRN", PRN_CONTEXT, PR_CONTEXT,
     "PRN 표기가 직장투여 문맥과 섞여 PR과 혼동될 가능성이 있습니다."),
    (("PE", "PEA"), "PE", PE_CONTEXT, PEA_CONTEXT,
     "PE 표기가 소생술 문맥에 있어 PEA와 혼동될 가능성이 있습니다."),
    (("PE", "PEA"), "PEA", PEA_CONTEXT, PE_CONTEXT,
     "PEA 표기가 폐색전 문맥에 있어 PE와 혼동될 가능성이 있습니다."),
)

DC_REASON = "DC/D-C 의미(퇴원 vs 중단)가 문맥에서 모호해 검토가 필요합니다."


def detect_confusable_abbreviations(
    text: str,
    lexicon: ClinicalLexicon,
    max_count: int = 2,
) -> List[ConfusableWarning]:
    """Flag tokens of a configured confusion pair whose context is ambiguous.

    HR/RR, Cr/CRP, PR/PRN and PE/PEA are flagged when the window only
    supports the other member; DC and D/C when the window supports both
    readings or neither.
    """
    normalized = normalize_subscript_digits(text)
    warnings: List[ConfusableWarning] = []
    seen = set()

    def _push(pair: Tuple[str, str], token: str, reason: str, window: str):
        key = (pair, fold_clinical_token(token), reason)
        if key in seen:
            return
        seen.add(key)
        warnings.append(ConfusableWarning(pair, token, reason, " ".join(window.split())))

    def _one_sided(checks):
        for pair, token, own_context, other_context, reason in checks:
            if not lexicon.has_confusion_pair(*pair):
                continue
            for mention in _mentions(normalized, token):
                if other_context.search(mention.window) and not own_context.search(mention.window):
                    _push(pair, token, reason, mention.window)

    _one_sided(_ONE_SIDED_CHECKS[:2])

    if lexicon.has_confusion_pair("DC", "D/C"):
        by_index: Dict[int, _Mention] = {}
        for mention in _mentions(normalized, "DC") + _mentions(normalized, "D/C"):
            by_index.setdefault(mention.index, mention)
        for index in sorted(by_index):
            mention = by_index[index]
            discharge = bool(DISCHARGE_CONTEXT.search(mention.window))
            discontinue = bool(DISCONTINUE_CONTEXT.search(mention.window))
            if discharge == discontinue:
                _push(("DC", "D/C"), mention.token, DC_REASON, mention.window)

    _one_sided(_ONE_SIDED_CHECKS[2:])

    return warnings[:max_count]
