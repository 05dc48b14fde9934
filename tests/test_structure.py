"""Tests for priority scoring and patient card assembly."""

from handoffguard.engine.priority import evaluate_risks, risk_level_from_score, score_priority
from handoffguard.engine.structure import (
    MAX_GLOBAL_TOP,
    build_global_top,
    build_patient_card,
    build_patient_cards,
    dedupe_key,
    normalize_sentence,
)
from handoffguard.types import DutyType, RiskLevel, TaskOwner, TodoDue, TodoPriority

from conftest import make_masked

PATIENT_A = [
    make_masked("a1", "PATIENT_A 산소포화도 88%로 저하, 호흡곤란 호소합니다.", 0, "PATIENT_A"),
    make_masked("a2", "PATIENT_A 22:00 혈당 재측정 필요합니다.", 1000, "PATIENT_A"),
    make_masked("a3", "PATIENT_A 혈압 재측정 후 담당의 콜 필요합니다.", 2000, "PATIENT_A"),
]

PATIENT_B = [
    make_masked("b1", "PATIENT_B 혈압 80/50 저혈압입니다.", 3000, "PATIENT_B"),
    make_masked("b2", "PATIENT_B 체온 38.5도 발열 있습니다.", 4000, "PATIENT_B"),
    make_masked("b3", "PATIENT_B 소변량 감소 있습니다.", 5000, "PATIENT_B"),
]


# =============================================================================
# PRIORITY
# =============================================================================

def test_baseline_score():
    assert score_priority("특이사항 없습니다", DutyType.DAY).score == 12
    assert score_priority("특이사항 없습니다", DutyType.NIGHT).score == 16
    assert score_priority("즉시 확인 필요", DutyType.DAY).score == 20


def test_risk_rules_match():
    risks = evaluate_risks("혈압 80/50 저혈압", DutyType.DAY)
    assert risks[0].code == "CIRCULATION"
    assert risks[0].score == 40
    assert risks[0].actions


def test_urgency_and_night_bonus():
    day = score_priority("산소포화도 저하로 호흡곤란", DutyType.DAY)
    night = score_priority("산소포화도 저하로 호흡곤란", DutyType.NIGHT)
    assert day.score == 60
    assert night.score == 64
    assert night.level == RiskLevel.MEDIUM
    assert "BREATHING" in night.labels


def test_risk_level_thresholds():
    assert risk_level_from_score(70) == RiskLevel.HIGH
    assert risk_level_from_score(69) == RiskLevel.MEDIUM
    assert risk_level_from_score(40) == RiskLevel.MEDIUM
    assert risk_level_from_score(39) == RiskLevel.LOW


# =============================================================================
# CARDS
# =============================================================================

def test_normalize_sentence_strips_alias():
    assert normalize_sentence("PATIENT_A 환자 혈압 안정적") == "혈압 안정적"
    assert normalize_sentence("- 혈당 체크") == "혈당 체크"


def test_dedupe_key_ignores_times_numbers_and_alias():
    assert dedupe_key("PATIENT_A 22:00 혈당 320") == dedupe_key("PATIENT_B 23:30 혈당 280")


def test_card_top_items_and_summary():
    card = build_patient_card("PATIENT_A", PATIENT_A, DutyType.NIGHT)

    assert card.patient_key == "PATIENT_A"
    assert card.summary == "산소포화도 88%로 저하, 호흡곤란 호소합니다."
    scores = [item.score for item in card.top_items]
    assert scores == sorted(scores, reverse=True)
    assert card.top_items[0].badge == "우선 확인"
    assert card.top_items[0].evidence_ref.segment_id == "a1"


def test_night_duty_raises_score():
    day = build_patient_card("PATIENT_A", PATIENT_A, DutyType.DAY)
    night = build_patient_card("PATIENT_A", PATIENT_A, DutyType.NIGHT)
    assert day.top_items[0].score == 69
    assert night.top_items[0].score == 77


def test_badge_and_level_follow_unweighted_priority():
    card = build_patient_card("PATIENT_A", PATIENT_A, DutyType.NIGHT)
    assert card.top_items[0].score == 77
    assert card.top_items[0].badge == "우선 확인"
    assert card.risks[0].level == RiskLevel.MEDIUM
    assert [p.priority for p in card.plan] == [TodoPriority.P2, TodoPriority.P2]


def test_todos_and_plan():
    card = build_patient_card("PATIENT_A", PATIENT_A, DutyType.NIGHT)

    assert [t.text for t in card.todos] == [
        "혈압 재측정 후 담당의 콜 필요합니다.",
        "22:00 혈당 재측정 필요합니다.",
    ]
    assert card.todos[1].due_hint == "22:00"

    call, recheck = card.plan
    assert call.owner == TaskOwner.MD
    assert recheck.owner == TaskOwner.RN
    assert recheck.priority == TodoPriority.P2
    assert recheck.due == TodoDue.TODAY
    assert recheck.evidence_ref.segment_id == "a2"


def test_risks_and_watch_for():
    card = build_patient_card("PATIENT_A", PATIENT_A, DutyType.NIGHT)
    assert card.risks[0].code == "BREATHING"
    assert card.watch_for == ["호흡"]
    assert card.questions == []


def test_cards_in_alias_order():
    cards = build_patient_cards({"PATIENT_B": PATIENT_B, "PATIENT_A": PATIENT_A}, DutyType.NIGHT)
    assert [c.alias for c in cards] == ["PATIENT_A", "PATIENT_B"]


def test_global_top_is_capped_and_sorted():
    cards = build_patient_cards({"PATIENT_A": PATIENT_A, "PATIENT_B": PATIENT_B}, DutyType.NIGHT)
    assert sum(len(c.top_items) for c in cards) > MAX_GLOBAL_TOP

    top = build_global_top(cards)
    assert len(top) == MAX_GLOBAL_TOP
    assert [t.score for t in top] == sorted((t.score for t in top), reverse=True)
    assert top[0].alias == "PATIENT_A"
    assert top[0].id.startswith("PATIENT_A-")


def test_empty_card():
    card = build_patient_card("PATIENT_A", [], DutyType.DAY)
    assert card.summary == ""
    assert card.top_items == []
    assert card.plan == []
