"""Core types for the handoff de-identification pipeline.

Python attributes are snake_case. ``to_dict()`` produces the camelCase JSON
wire format consumed by UI/export collaborators, and ``from_dict()`` reads it
back.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class UncertaintyKind(str, Enum):
    """Reviewer-facing data-quality issues."""
    MISSING_TIME = "missing_time"
    MISSING_VALUE = "missing_value"
    CONFUSABLE_ABBREVIATION = "confusable_abbreviation"
    UNRESOLVED_ABBREVIATION = "unresolved_abbreviation"
    AMBIGUOUS_PATIENT = "ambiguous_patient"
    MANUAL_REVIEW = "manual_review"


class PhiType(str, Enum):
    """Categories of identifiers the PHI guard redacts."""
    PHONE = "PHONE"
    RRN = "RRN"              # resident registration number
    MRN = "MRN"              # chart / registration number
    DOB = "DOB"
    ADDRESS = "ADDRESS"
    EMAIL = "EMAIL"
    PATIENT_ID = "PATIENT_ID"
    NAME = "NAME"
    NAME_HINT = "NAME_HINT"
    ROOM = "ROOM"
    ROOM_NAME = "ROOM_NAME"
    LONG_DIGITS = "LONG_DIGITS"


class Severity(str, Enum):
    HIGH = "high"
    MED = "med"
    LOW = "low"


class DutyType(str, Enum):
    DAY = "day"
    EVENING = "evening"
    NIGHT = "night"


class RiskLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class WardEventCategory(str, Enum):
    DISCHARGE = "discharge"
    ADMISSION = "admission"
    ROUND = "round"
    EQUIPMENT = "equipment"
    COMPLAINT = "complaint"
    GENERAL = "general"


class TodoPriority(str, Enum):
    P0 = "P0"
    P1 = "P1"
    P2 = "P2"


class TodoDue(str, Enum):
    NOW = "now"
    WITHIN_1H = "within_1h"
    TODAY = "today"
    NEXT_SHIFT = "next_shift"


class TaskOwner(str, Enum):
    RN = "RN"
    MD = "MD"
    RT = "RT"
    LAB = "LAB"


# =============================================================================
# SEGMENTS
# =============================================================================

@dataclass(frozen=True)
class EvidenceRef:
    """Binds a structured fact back to its source utterance."""
    segment_id: str
    start_ms: int
    end_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "segmentId": self.segment_id,
            "startMs": self.start_ms,
            "endMs": self.end_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvidenceRef":
        return cls(
            segment_id=str(data.get("segmentId", "")),
            start_ms=int(data.get("startMs", 0)),
            end_ms=int(data.get("endMs", 0)),
        )


@dataclass
class RawSegment:
    """One utterance/sentence as produced by the transcript collaborator."""
    segment_id: str
    raw_text: str
    start_ms: int
    end_ms: int

    @property
    def evidence_ref(self) -> EvidenceRef:
        return EvidenceRef(self.segment_id, self.start_ms, self.end_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "segmentId": self.segment_id,
            "rawText": self.raw_text,
            "startMs": self.start_ms,
            "endMs": self.end_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RawSegment":
        return cls(
            segment_id=str(data["segmentId"]),
            raw_text=str(data.get("rawText", "")),
            start_ms=int(data.get("startMs", 0)),
            end_ms=int(data.get("endMs", 0)),
        )


@dataclass
class SegmentUncertainty:
    kind: UncertaintyKind
    reason: str

    def __post_init__(self):
        if isinstance(self.kind, str):
            self.kind = UncertaintyKind(self.kind)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "reason": self.reason}


@dataclass
class NormalizedSegment:
    segment_id: str
    normalized_text: str
    start_ms: int
    end_ms: int
    uncertainties: List[SegmentUncertainty] = field(default_factory=list)
    applied_terms: List[str] = field(default_factory=list)

    @property
    def evidence_ref(self) -> EvidenceRef:
        return EvidenceRef(self.segment_id, self.start_ms, self.end_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "segmentId": self.segment_id,
            "normalizedText": self.normalized_text,
            "startMs": self.start_ms,
            "endMs": self.end_ms,
            "uncertainties": [u.to_dict() for u in self.uncertainties],
            "appliedTerms": list(self.applied_terms),
        }


@dataclass
class PhiFinding:
    """Audit record of one redaction. ``sample`` is an obfuscated preview."""
    type: PhiType
    start: int
    end: int
    sample: str
    severity: Severity

    def __post_init__(self):
        if isinstance(self.type, str):
            self.type = PhiType(self.type)
        if isinstance(self.severity, str):
            self.severity = Severity(self.severity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "start": self.start,
            "end": self.end,
            "sample": self.sample,
            "severity": self.severity.value,
        }


@dataclass
class MaskedSegment:
    segment_id: str
    masked_text: str
    start_ms: int
    end_ms: int
    uncertainties: List[SegmentUncertainty] = field(default_factory=list)
    patient_alias: Optional[str] = None
    phi_hits: List[str] = field(default_factory=list)
    findings: List[PhiFinding] = field(default_factory=list)
    residual_findings: List[PhiFinding] = field(default_factory=list)
    evidence_ref: Optional[EvidenceRef] = None

    def __post_init__(self):
        if self.evidence_ref is None:
            self.evidence_ref = EvidenceRef(self.segment_id, self.start_ms, self.end_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "segmentId": self.segment_id,
            "maskedText": self.masked_text,
            "startMs": self.start_ms,
            "endMs": self.end_ms,
            "uncertainties": [u.to_dict() for u in self.uncertainties],
            "patientAlias": self.patient_alias,
            "phiHits": list(self.phi_hits),
            "findings": [f.to_dict() for f in self.findings],
            "residualFindings": [f.to_dict() for f in self.residual_findings],
            "evidenceRef": self.evidence_ref.to_dict(),
        }


@dataclass
class WardEvent:
    """A fact about the ward/shift rather than one patient."""
    id: str
    category: WardEventCategory
    text: str
    evidence_ref: EvidenceRef

    def __post_init__(self):
        if isinstance(self.category, str):
            self.category = WardEventCategory(self.category)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "text": self.text,
            "evidenceRef": self.evidence_ref.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WardEvent":
        return cls(
            id=data["id"],
            category=data.get("category", "general"),
            text=data.get("text", ""),
            evidence_ref=EvidenceRef.from_dict(data.get("evidenceRef", {})),
        )


# =============================================================================
# PATIENT CARDS
# =============================================================================

@dataclass
class PatientTopItem:
    id: str
    text: str
    score: int
    badge: str
    evidence_ref: EvidenceRef

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "score": self.score,
            "badge": self.badge,
            "evidenceRef": self.evidence_ref.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatientTopItem":
        return cls(
            id=data["id"],
            text=data.get("text", ""),
            score=int(data.get("score", 0)),
            badge=data.get("badge", ""),
            evidence_ref=EvidenceRef.from_dict(data.get("evidenceRef", {})),
        )


@dataclass
class PatientTodo:
    id: str
    text: str
    due_hint: Optional[str]
    level: RiskLevel
    evidence_ref: EvidenceRef

    def __post_init__(self):
        if isinstance(self.level, str):
            self.level = RiskLevel(self.level)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "dueHint": self.due_hint,
            "level": self.level.value,
            "evidenceRef": self.evidence_ref.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatientTodo":
        return cls(
            id=data["id"],
            text=data.get("text", ""),
            due_hint=data.get("dueHint"),
            level=data.get("level", "low"),
            evidence_ref=EvidenceRef.from_dict(data.get("evidenceRef", {})),
        )


@dataclass
class PatientProblem:
    id: str
    text: str
    evidence_ref: EvidenceRef

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "evidenceRef": self.evidence_ref.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatientProblem":
        return cls(
            id=data["id"],
            text=data.get("text", ""),
            evidence_ref=EvidenceRef.from_dict(data.get("evidenceRef", {})),
        )


@dataclass
class PatientRisk:
    id: str
    code: Optional[str]
    label: str
    score: int
    level: RiskLevel
    evidence_ref: EvidenceRef
    rationale: str = ""
    actions: List[str] = field(default_factory=list)

    def __post_init__(self):
        if isinstance(self.level, str):
            self.level = RiskLevel(self.level)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "label": self.label,
            "score": self.score,
            "level": self.level.value,
            "rationale": self.rationale,
            "actions": list(self.actions),
            "evidenceRef": self.evidence_ref.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatientRisk":
        return cls(
            id=data["id"],
            code=data.get("code"),
            label=data.get("label", ""),
            score=int(data.get("score", 0)),
            level=data.get("level", "low"),
            evidence_ref=EvidenceRef.from_dict(data.get("evidenceRef", {})),
            rationale=data.get("rationale", ""),
            actions=list(data.get("actions", [])),
        )


@dataclass
class PlanItem:
    priority: TodoPriority
    task: str
    due: Optional[TodoDue] = None
    owner: Optional[TaskOwner] = None
    evidence_ref: Optional[EvidenceRef] = None

    def __post_init__(self):
        if isinstance(self.priority, str):
            self.priority = TodoPriority(self.priority)
        if isinstance(self.due, str):
            self.due = TodoDue(self.due)
        if isinstance(self.owner, str):
            self.owner = TaskOwner(self.owner)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "priority": self.priority.value,
            "task": self.task,
            "due": self.due.value if self.due else None,
            "owner": self.owner.value if self.owner else None,
            "evidenceRef": self.evidence_ref.to_dict() if self.evidence_ref else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlanItem":
        ref = data.get("evidenceRef")
        return cls(
            priority=data.get("priority", "P2"),
            task=data.get("task", ""),
            due=data.get("due"),
            owner=data.get("owner"),
            evidence_ref=EvidenceRef.from_dict(ref) if ref else None,
        )


@dataclass
class PatientCard:
    """Aggregated per-alias view."""
    patient_key: str
    alias: str
    summary: str = ""
    top_items: List[PatientTopItem] = field(default_factory=list)
    todos: List[PatientTodo] = field(default_factory=list)
    problems: List[PatientProblem] = field(default_factory=list)
    risks: List[PatientRisk] = field(default_factory=list)
    plan: List[PlanItem] = field(default_factory=list)
    watch_for: List[str] = field(default_factory=list)
    questions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patientKey": self.patient_key,
            "alias": self.alias,
            "summary": self.summary,
            "topItems": [i.to_dict() for i in self.top_items],
            "todos": [t.to_dict() for t in self.todos],
            "problems": [p.to_dict() for p in self.problems],
            "risks": [r.to_dict() for r in self.risks],
            "plan": [p.to_dict() for p in self.plan],
            "watchFor": list(self.watch_for),
            "questions": list(self.questions),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatientCard":
        return cls(
            patient_key=data.get("patientKey", data.get("alias", "")),
            alias=data.get("alias", ""),
            summary=data.get("summary", ""),
            top_items=[PatientTopItem.from_dict(i) for i in data.get("topItems", [])],
            todos=[PatientTodo.from_dict(t) for t in data.get("todos", [])],
            problems=[PatientProblem.from_dict(p) for p in data.get("problems", [])],
            risks=[PatientRisk.from_dict(r) for r in data.get("risks", [])],
            plan=[PlanItem.from_dict(p) for p in data.get("plan", [])],
            watch_for=list(data.get("watchFor", [])),
            questions=list(data.get("questions", [])),
        )


@dataclass
class GlobalTopItem:
    id: str
    alias: str
    text: str
    badge: str
    score: int
    evidence_ref: EvidenceRef

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "alias": self.alias,
            "text": self.text,
            "badge": self.badge,
            "score": self.score,
            "evidenceRef": self.evidence_ref.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GlobalTopItem":
        return cls(
            id=data["id"],
            alias=data.get("alias", ""),
            text=data.get("text", ""),
            badge=data.get("badge", ""),
            score=int(data.get("score", 0)),
            evidence_ref=EvidenceRef.from_dict(data.get("evidenceRef", {})),
        )


@dataclass
class UncertaintyItem:
    """Deduplicated, compacted uncertainty shown to the reviewer.

    ``evidence_ref`` points at the first segment and spans the merged time
    range of every segment folded into this item; ``count`` is how many.
    """
    id: str
    kind: UncertaintyKind
    reason: str
    text: str
    evidence_ref: EvidenceRef
    count: int = 1

    def __post_init__(self):
        if isinstance(self.kind, str):
            self.kind = UncertaintyKind(self.kind)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "reason": self.reason,
            "text": self.text,
            "count": self.count,
            "evidenceRef": self.evidence_ref.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UncertaintyItem":
        return cls(
            id=data["id"],
            kind=data.get("kind", "manual_review"),
            reason=data.get("reason", ""),
            text=data.get("text", ""),
            evidence_ref=EvidenceRef.from_dict(data.get("evidenceRef", {})),
            count=int(data.get("count", 1)),
        )


# =============================================================================
# SESSION RESULT
# =============================================================================

@dataclass
class SafetyState:
    phi_safe: bool = True
    residual_count: int = 0
    export_allowed: bool = True
    persist_allowed: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phiSafe": self.phi_safe,
            "residualCount": self.residual_count,
            "exportAllowed": self.export_allowed,
            "persistAllowed": self.persist_allowed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SafetyState":
        return cls(
            phi_safe=bool(data.get("phiSafe", False)),
            residual_count=int(data.get("residualCount", 0)),
            export_allowed=bool(data.get("exportAllowed", False)),
            persist_allowed=bool(data.get("persistAllowed", False)),
        )


@dataclass
class Provenance:
    stt_engine: str = "manual"
    ruleset_version: str = ""
    llm_refined: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sttEngine": self.stt_engine,
            "rulesetVersion": self.ruleset_version,
            "llmRefined": self.llm_refined,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Provenance":
        return cls(
            stt_engine=data.get("sttEngine", "manual"),
            ruleset_version=data.get("rulesetVersion", ""),
            llm_refined=bool(data.get("llmRefined", False)),
        )


@dataclass
class HandoverSessionResult:
    """The full exportable payload of one handoff session."""
    session_id: str
    duty_type: DutyType
    created_at_ms: int
    patients: List[PatientCard] = field(default_factory=list)
    ward_events: List[WardEvent] = field(default_factory=list)
    global_top: List[GlobalTopItem] = field(default_factory=list)
    uncertainties: List[UncertaintyItem] = field(default_factory=list)
    safety: SafetyState = field(default_factory=SafetyState)
    provenance: Provenance = field(default_factory=Provenance)

    def __post_init__(self):
        if isinstance(self.duty_type, str):
            self.duty_type = DutyType(self.duty_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "dutyType": self.duty_type.value,
            "createdAtMs": self.created_at_ms,
            "patients": [p.to_dict() for p in self.patients],
            "wardEvents": [w.to_dict() for w in self.ward_events],
            "globalTop": [g.to_dict() for g in self.global_top],
            "uncertainties": [u.to_dict() for u in self.uncertainties],
            "safety": self.safety.to_dict(),
            "provenance": self.provenance.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HandoverSessionResult":
        return cls(
            session_id=str(data.get("sessionId", "")),
            duty_type=data.get("dutyType", "day"),
            created_at_ms=int(data.get("createdAtMs", 0)),
            patients=[PatientCard.from_dict(p) for p in data.get("patients", [])],
            ward_events=[WardEvent.from_dict(w) for w in data.get("wardEvents", [])],
            global_top=[GlobalTopItem.from_dict(g) for g in data.get("globalTop", [])],
            uncertainties=[UncertaintyItem.from_dict(u) for u in data.get("uncertainties", [])],
            safety=SafetyState.from_dict(data.get("safety", {})),
            provenance=Provenance.from_dict(data.get("provenance", {})),
        )


@dataclass
class VaultRecord:
    """Opaque at-rest record; only decryptable with the session's live key."""
    session_id: str
    created_at: int
    expires_at: int
    iv: str           # base64
    ciphertext: str   # base64

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "iv": self.iv,
            "ciphertext": self.ciphertext,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VaultRecord":
        return cls(
            session_id=str(data["sessionId"]),
            created_at=int(data["createdAt"]),
            expires_at=int(data["expiresAt"]),
            iv=str(data["iv"]),
            ciphertext=str(data["ciphertext"]),
        )
