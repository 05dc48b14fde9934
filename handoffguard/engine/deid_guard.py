"""
Export-time de-identification guard.

Final sweep over an assembled HandoverSessionResult before it is persisted,
exported or handed to a refine adapter. Every free-text field is redacted,
each hit is reported with a JSON-path locator, and the sanitized output is
re-scanned with a looser rule set. Residual issues mean the payload is unsafe.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from ..types import HandoverSessionResult, PhiType, Severity
from .clinical_nlu import POSSIBLE_NAME_STOPWORDS, ROOM_SUFFIX
from .phi_guard import EMAIL_LOOSE, HIGH_RULES, REDACTED, RedactionRule
from .spans import merge_overlapping, replace_spans

logger = logging.getLogger(__name__)

# Keys whose values are machine identifiers or enum values, never free text
MACHINE_KEYS = frozenset({
    "id", "segmentId", "sessionId", "patientKey", "kind", "code", "level", "priority",
    "due", "owner", "category", "dutyType", "rulesetVersion", "sttEngine",
})


def _reject_stopword(matched: str) -> bool:
    return matched in POSSIBLE_NAME_STOPWORDS


def _rule(rule_id, phi_type, severity, pattern, flags=0, group=0, reject=None) -> RedactionRule:
    return RedactionRule(rule_id, phi_type, severity, re.compile(pattern, flags), group, reject)


_ROOM = rf"(?<![0-9])[0-9]{{3,4}}\s*{ROOM_SUFFIX}"
_RRN = r"(?<![0-9])[0-9]{6}[\s/-]?[1-4][0-9]{6}(?![0-9])"
_CHART = r"(?:차트번호|등록번호|MRN)\s*[:#-]?\s*[A-Z0-9-]{6,}"
_EMAIL = r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"
_PATIENT_ID = r"(?:환자번호|환자ID|PID)\s*[:#]?\s*[A-Z0-9-]{4,}"

SANITIZE_RULES: Tuple[RedactionRule, ...] = (
    _rule("masked-name", PhiType.NAME, Severity.MED, r"[가-힣]{1,3}[O○]{2}"),
    _rule("korean-name-honorific", PhiType.NAME_HINT, Severity.LOW,
          r"(?<![가-힣])([가-힣]{2,4})(?=\s*(?:님|씨)(?![가-힣]))", group=1, reject=_reject_stopword),
    _rule("room", PhiType.ROOM, Severity.MED, _ROOM),
    _rule("phone", PhiType.PHONE, Severity.HIGH, r"(?<![0-9])01[0-9][\s.-]?[0-9]{3,4}[\s.-]?[0-9]{4}(?![0-9])"),
    _rule("rrn", PhiType.RRN, Severity.HIGH, _RRN),
    _rule("chart", PhiType.MRN, Severity.HIGH, _CHART, re.IGNORECASE),
    _rule("email", PhiType.EMAIL, Severity.HIGH, _EMAIL),
    _rule("patient-id", PhiType.PATIENT_ID, Severity.MED, _PATIENT_ID, re.IGNORECASE),
) + HIGH_RULES

# Looser than the sanitizer on purpose: slash-separated phones and spaced e-mails, 환자 as honorific
RESIDUAL_RULES: Tuple[RedactionRule, ...] = (
    _rule("masked-name", PhiType.NAME, Severity.MED, r"[가-힣]{1,3}[O○]{2}"),
    _rule("korean-name-honorific", PhiType.NAME_HINT, Severity.LOW,
          r"(?<![가-힣])([가-힣]{2,4})(?=\s*(?:님|씨|환자)(?![가-힣]))", group=1, reject=_reject_stopword),
    _rule("room", PhiType.ROOM, Severity.MED, _ROOM),
    _rule("phone", PhiType.PHONE, Severity.HIGH, r"(?<![0-9])01[0-9][\s./-]?[0-9]{3,4}[\s./-]?[0-9]{4}(?![0-9])"),
    _rule("rrn", PhiType.RRN, Severity.HIGH, _RRN),
    _rule("chart", PhiType.MRN, Severity.HIGH, _CHART, re.IGNORECASE),
    _rule("email", PhiType.EMAIL, Severity.HIGH, EMAIL_LOOSE),
    _rule("patient-id", PhiType.PATIENT_ID, Severity.MED, _PATIENT_ID, re.IGNORECASE),
) + HIGH_RULES


@dataclass(frozen=True)
class DeidIssue:
    """One redaction (or residual hit) located by JSON path."""
    field: str
    pattern: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "pattern": self.pattern}


@dataclass
class SanitizeResult:
    result: HandoverSessionResult
    issues: List[DeidIssue] = field(default_factory=list)
    residual_issues: List[DeidIssue] = field(default_factory=list)

    @property
    def is_safe(self) -> bool:
        return not self.residual_issues


def sanitize_text(text: str, path: str) -> Tuple[str, List[DeidIssue]]:
    issues: List[DeidIssue] = []
    for rule in SANITIZE_RULES:
        spans = merge_overlapping(rule.find(text))
        if not spans:
            continue
        issues.extend(DeidIssue(path, rule.rule_id) for _ in spans)
        text = replace_spans(text, spans, REDACTED)
    return " ".join(text.split()), issues


def scan_text(text: str, path: str) -> List[DeidIssue]:
    """One issue per residual rule that hits ``text``."""
    return [DeidIssue(path, rule.rule_id) for rule in RESIDUAL_RULES if rule.find(text)]


def _child_path(path: str, key: Any) -> str:
    if isinstance(key, int):
        return f"{path}[{key}]"
    return f"{path}.{key}" if path else str(key)


def _walk(value: Any, path: str, visit):
    """Rebuild ``value`` with ``visit(text, path)`` applied to every free-text string."""
    if isinstance(value, dict):
        return {
            key: item if key in MACHINE_KEYS else _walk(item, _child_path(path, key), visit)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_walk(item, _child_path(path, index), visit) for index, item in enumerate(value)]
    if isinstance(value, str):
        return visit(value, path)
    return value


def _as_payload(result) -> Dict[str, Any]:
    return result.to_dict() if isinstance(result, HandoverSessionResult) else dict(result)


def detect_residual_phi(result) -> List[DeidIssue]:
    """Residual scan alone; accepts a HandoverSessionResult or its dict form."""
    issues: List[DeidIssue] = []

    def visit(text: str, path: str) -> str:
        issues.extend(scan_text(text, path))
        return text

    _walk(_as_payload(result), "", visit)
    return issues


def sanitize_structured_session(result) -> SanitizeResult:
    """
    Redact every free-text field of a session result, then re-scan.

    Args:
        result: HandoverSessionResult or its camelCase dict form.

    Returns:
        SanitizeResult; a non-empty ``residual_issues`` is a hard stop for
        persistence, export and refine hand-off.
    """
    issues: List[DeidIssue] = []

    def visit(text: str, path: str) -> str:
        sanitized, found = sanitize_text(text, path)
        issues.extend(found)
        return sanitized

    payload = _walk(_as_payload(result), "", visit)
    residual = detect_residual_phi(payload)

    if issues:
        logger.info(f"De-id guard redacted {len(issues)} value(s)")
    if residual:
        logger.warning(
            f"De-id guard residual: {len(residual)} hit(s) "
            f"({', '.join(sorted({i.pattern for i in residual}))})"
        )

    return SanitizeResult(
        result=HandoverSessionResult.from_dict(payload),
        issues=issues,
        residual_issues=residual,
    )
