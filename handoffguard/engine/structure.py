"""
Patient card builder.

Each masked segment becomes a scored fact; facts are then folded into top
items, todos, problems, risks and a plan per patient alias.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

from ..types import (
    DutyType,
    EvidenceRef,
    GlobalTopItem,
    MaskedSegment,
    PatientCard,
    PatientProblem,
    PatientRisk,
    PatientTodo,
    PatientTopItem,
    PlanItem,
    RiskLevel,
    TaskOwner,
    TodoDue,
    TodoPriority,
)
from .priority import RiskMatch, score_priority

MAX_TOP_ITEMS = 3
MAX_TODOS = 4
MAX_PROBLEMS = 6
MAX_RISKS = 4
MAX_GLOBAL_TOP = 5

TODO_PATTERN = re.compile(
    r"(오더|확인|재확인|재측정|재검|투약|검사|콜|모니터|체크|다시\s*보|recheck|repeat|follow\s*up)", re.IGNORECASE
)
DUE_HINT_PATTERN = re.compile(
    r"([0-9]{1,2}:[0-9]{2}|[0-9]{1,2}\s*시|새벽\s*[0-9]{0,2}\s*시?|오전|오후|저녁|밤|내일\s*오전|내일\s*오후)"
)
PENDING_TODO_PATTERN = re.compile(r"(필요|예정|대기|부탁|계획|재평가|follow\s*up|보자|보라|다시)", re.IGNORECASE)
ABNORMAL_PROBLEM_PATTERN = re.compile(
    r"(저혈압|고혈압|혈압\s*[0-9]{2,3}\s*/\s*[0-9]{2,3}|저산소|호흡곤란|출혈|흑변|어지럽|통증|발열|고열|저체온"
    r"|저혈당|고혈당|감염|쇼크|섬망|의식\s*저하|소변량\s*감소)",
    re.IGNORECASE,
)
NEXT_SHIFT_PATTERN = re.compile(r"(내일|익일|다음\s*근무|인계\s*후)")
PHYSICIAN_CALL_PATTERN = re.compile(r"(콜|보고|노티|notify)", re.IGNORECASE)
LEADING_ALIAS_PATTERN = re.compile(r"^PATIENT_[A-Z]{1,2}\s*(?:환자\s*)?")

TOPIC_RULES = (
    ("respiratory", re.compile(r"(호흡|SpO2|산소|저산소|호흡곤란|캐뉼라|산소포화도)", re.IGNORECASE)),
    ("hemodynamic", re.compile(r"(혈압|쇼크|맥박|심박|저혈압|고혈압|빈맥|서맥)")),
    ("glycemic", re.compile(r"(혈당|BST|저혈당|고혈당|인슐린|sliding)", re.IGNORECASE)),
    ("infection", re.compile(r"(감염|항생제|발열|체온|패혈|CRP|WBC|염증수치)", re.IGNORECASE)),
    ("io", re.compile(r"(소변량|배뇨|수분출납|I/O|섭취배설량|요량)", re.IGNORECASE)),
    ("medication", re.compile(r"(투약|약|오더|PRN|PCA|항응고|엘리퀴스|와파린)", re.IGNORECASE)),
    ("lab", re.compile(r"(검사|CBC|Hb|헤모글로빈|수치|결과|재검)", re.IGNORECASE)),
    ("neuro", re.compile(r"(의식|섬망|confusion|신경|지남력|어지럽)", re.IGNORECASE)),
    ("fall", re.compile(r"(낙상|보행|assist|침상|bed alarm)", re.IGNORECASE)),
)

TOPIC_WEIGHTS = {
    "respiratory": 9,
    "hemodynamic": 8,
    "glycemic": 7,
    "infection": 6,
    "io": 5,
    "medication": 5,
    "lab": 4,
    "neuro": 6,
    "fall": 4,
    "general": 2,
}
NIGHT_TOPIC_BOOST = {"respiratory": 4, "hemodynamic": 4, "glycemic": 2, "io": 2, "neuro": 2}

LEVEL_RANK = {RiskLevel.HIGH: 0, RiskLevel.MEDIUM: 1, RiskLevel.LOW: 2}


@dataclass
class PatientFact:
    id: str
    text: str
    evidence_ref: EvidenceRef
    topic: str
    score: int
    badge: str
    level: RiskLevel
    due_hint: Optional[str]
    todo_candidate: bool
    problem_candidate: bool
    risks: List[RiskMatch]


def normalize_sentence(text: str) -> str:
    text = LEADING_ALIAS_PATTERN.sub("", text.strip())
    text = re.sub(r"^[-•·]\s*", "", text)
    return " ".join(text.split())


def dedupe_key(text: str) -> str:
    """Collapse times, numbers and aliases so near-duplicates share a key."""
    key = text.lower()
    key = re.sub(r"[0-9]{1,2}:[0-9]{2}", "#시각", key)
    key = re.sub(r"[0-9]{1,2}\s*시", "#시각", key)
    key = re.sub(r"[0-9]+(?:\.[0-9]+)?", "#", key)
    key = re.sub(r"patient_[a-z]{1,2}", "", key)
    return " ".join(key.split())


def _dedupe(items: list, key) -> list:
    seen = set()
    kept = []
    for item in items:
        k = key(item)
        if not k or k in seen:
            continue
        seen.add(k)
        kept.append(item)
    return kept


def classify_topic(text: str) -> str:
    for topic, pattern in TOPIC_RULES:
        if pattern.search(text):
            return topic
    return "general"


def topic_weight(topic: str, duty_type: DutyType) -> int:
    base = TOPIC_WEIGHTS[topic]
    if DutyType(duty_type) != DutyType.NIGHT:
        return base
    return base + NIGHT_TOPIC_BOOST.get(topic, 0)


def risk_label_from_text(text: str) -> str:
    if re.search(r"(출혈|흑변|항응고)", text):
        return "출혈/항응고"
    if re.search(r"(호흡|저산소|SpO2|산소포화도)", text, re.IGNORECASE):
        return "호흡"
    if re.search(r"(의식|섬망)", text):
        return "의식"
    if re.search(r"(소변량|수분출납|I/O)", text, re.IGNORECASE):
        return "I/O"
    if re.search(r"(혈당|BST)", text, re.IGNORECASE):
        return "혈당"
    return "관찰"


def build_fact(segment: MaskedSegment, duty_type: DutyType) -> Optional[PatientFact]:
    text = normalize_sentence(segment.masked_text)
    if not text:
        return None

    priority = score_priority(text, duty_type)
    topic = classify_topic(text)
    due = DUE_HINT_PATTERN.search(text)
    due_hint = due.group(0) if due else None
    score = min(100, priority.score + topic_weight(topic, duty_type))
    level = priority.level

    return PatientFact(
        id=segment.segment_id,
        text=text,
        evidence_ref=segment.evidence_ref,
        topic=topic,
        score=score,
        badge=priority.badge,
        level=level,
        due_hint=due_hint,
        todo_candidate=bool(TODO_PATTERN.search(text)) or (bool(PENDING_TODO_PATTERN.search(text)) and bool(due_hint)),
        problem_candidate=bool(ABNORMAL_PROBLEM_PATTERN.search(text)) or level != RiskLevel.LOW,
        risks=priority.risks,
    )


def plan_for_todo(todo: PatientTodo) -> PlanItem:
    """Map a todo onto the P0-P2 plan vocabulary."""
    if todo.level == RiskLevel.HIGH:
        priority, due = TodoPriority.P0, TodoDue.NOW
    elif todo.level == RiskLevel.MEDIUM:
        priority, due = TodoPriority.P1, TodoDue.WITHIN_1H
    else:
        priority = TodoPriority.P2
        due = TodoDue.NEXT_SHIFT if NEXT_SHIFT_PATTERN.search(todo.text) else TodoDue.TODAY

    if PHYSICIAN_CALL_PATTERN.search(todo.text):
        owner = TaskOwner.MD
    elif classify_topic(todo.text) == "lab":
        owner = TaskOwner.LAB
    else:
        owner = TaskOwner.RN

    return PlanItem(priority=priority, task=todo.text, due=due, owner=owner, evidence_ref=todo.evidence_ref)


def _risk_for_fact(fact: PatientFact) -> PatientRisk:
    top: Optional[RiskMatch] = fact.risks[0] if fact.risks else None
    return PatientRisk(
        id=f"risk-{fact.id}",
        code=top.code if top else None,
        label=top.label if top else risk_label_from_text(fact.text),
        score=fact.score,
        level=fact.level,
        evidence_ref=fact.evidence_ref,
        rationale=top.rationale if top else "",
        actions=list(top.actions) if top else [],
    )


def build_patient_card(alias: str, segments: Sequence[MaskedSegment], duty_type: DutyType) -> PatientCard:
    facts = [f for f in (build_fact(s, duty_type) for s in segments) if f]

    best_by_topic: Dict[str, PatientFact] = {}
    for fact in facts:
        existing = best_by_topic.get(fact.topic)
        if existing is None or fact.score > existing.score:
            best_by_topic[fact.topic] = fact

    top_facts = sorted(best_by_topic.values(), key=lambda f: -f.score)[:MAX_TOP_ITEMS]
    top_items = [
        PatientTopItem(id=f"top-{f.id}", text=f.text, score=f.score, badge=f.badge, evidence_ref=f.evidence_ref)
        for f in top_facts
    ]

    todo_facts = _dedupe([f for f in facts if f.todo_candidate], lambda f: dedupe_key(f.text))
    todo_facts.sort(key=lambda f: (LEVEL_RANK[f.level], -f.score))
    todos = [
        PatientTodo(id=f"todo-{f.id}", text=f.text, due_hint=f.due_hint, level=f.level, evidence_ref=f.evidence_ref)
        for f in todo_facts[:MAX_TODOS]
    ]

    problem_facts = sorted((f for f in facts if f.problem_candidate), key=lambda f: -f.score)
    problems = [
        PatientProblem(id=f"problem-{f.id}", text=f.text, evidence_ref=f.evidence_ref)
        for f in _dedupe(problem_facts, lambda f: dedupe_key(f.text))[:MAX_PROBLEMS]
    ]

    risk_facts = sorted(
        (f for f in facts if f.level != RiskLevel.LOW or ABNORMAL_PROBLEM_PATTERN.search(f.text)),
        key=lambda f: (LEVEL_RANK[f.level], -f.score),
    )
    risks = _dedupe([_risk_for_fact(f) for f in risk_facts], lambda r: r.label)[:MAX_RISKS]

    return PatientCard(
        patient_key=alias,
        alias=alias,
        summary=top_items[0].text if top_items else "",
        top_items=top_items,
        todos=todos,
        problems=problems,
        risks=risks,
        plan=[plan_for_todo(t) for t in todos],
        watch_for=list(dict.fromkeys(r.label for r in risks)),
        questions=[],
    )


def build_patient_cards(
    patient_segments: Mapping[str, Sequence[MaskedSegment]],
    duty_type: DutyType,
) -> List[PatientCard]:
    """One card per alias, in alias order."""
    return [
        build_patient_card(alias, patient_segments[alias], duty_type)
        for alias in sorted(patient_segments, key=lambda a: (len(a), a))
    ]


def build_global_top(cards: Sequence[PatientCard]) -> List[GlobalTopItem]:
    merged = [
        GlobalTopItem(
            id=f"{card.alias}-{item.id}",
            alias=card.alias,
            text=item.text,
            badge=item.badge,
            score=item.score,
            evidence_ref=item.evidence_ref,
        )
        for card in cards
        for item in card.top_items
    ]
    return sorted(merged, key=lambda item: -item.score)[:MAX_GLOBAL_TOP]
