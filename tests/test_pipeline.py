"""End-to-end tests for the handoff pipeline."""

import json

import pytest

from handoffguard.exceptions import PolicyBlockedError, UnsafePayloadError
from handoffguard.pipeline import (
    FALLBACK_REASON,
    OVERFLOW_PREFIX,
    ManualUncertainty,
    build_evidence_map,
    ensure_exportable,
    run_handoff_pipeline,
    split_transcript_lines,
    transcript_to_raw_segments,
)
from handoffguard.types import DutyType, TaskOwner, TodoDue, TodoPriority, UncertaintyKind, WardEventCategory

from conftest import make_raw_segments

NOW_MS = 1_700_000_000_000


def run(segments, config, duty="night", **kwargs):
    return run_handoff_pipeline("session-1", duty, segments, config=config, now_ms=NOW_MS, **kwargs)


# =============================================================================
# TRANSCRIPT
# =============================================================================

def test_transcript_split_on_lines_and_sentences():
    lines = split_transcript_lines("701호 혈압 90/60입니다. 혈당 300입니다.\n\n금일 퇴원 2명")
    assert lines == ["701호 혈압 90/60입니다.", "혈당 300입니다.", "금일 퇴원 2명"]


def test_transcript_split_on_room_clause():
    lines = split_transcript_lines("701호 혈압 안정적, 702호 혈당 300")
    assert lines == ["701호 혈압 안정적", "702호 혈당 300"]


def test_transcript_to_raw_segments_timing():
    segments = transcript_to_raw_segments("혈압 90/60\n혈당 300", start_offset_ms=1000, segment_duration_ms=2000)
    assert [s.segment_id for s in segments] == ["seg-001", "seg-002"]
    assert [(s.start_ms, s.end_ms) for s in segments] == [(1000, 3000), (3000, 5000)]


def test_transcript_overflow_is_merged():
    segments = transcript_to_raw_segments("a1\na2\na3\na4", max_segments=2)
    assert len(segments) == 2
    assert segments[1].raw_text == f"{OVERFLOW_PREFIX} a2 a3 a4"


def test_empty_transcript():
    assert transcript_to_raw_segments("  \n ") == []


# =============================================================================
# PIPELINE
# =============================================================================

def test_two_patient_night_handoff(night_segments, config):
    output = run(night_segments, config)
    result = output.result

    assert result.duty_type == DutyType.NIGHT
    assert result.created_at_ms == NOW_MS
    assert [p.alias for p in result.patients] == ["PATIENT_A", "PATIENT_B"]
    assert output.local.segment_aliases == {
        "seg-001": "PATIENT_A",
        "seg-002": "PATIENT_A",
        "seg-003": "PATIENT_A",
        "seg-004": "PATIENT_B",
        "seg-005": "PATIENT_B",
    }
    assert output.local.alias_map["김민준"] == "PATIENT_A"
    assert "산소포화도" in result.patients[0].summary


def test_todo_and_plan_for_timed_recheck(night_segments, config):
    patient_b = run(night_segments, config).result.patients[1]

    assert [t.text for t in patient_b.todos] == ["22:00 혈당 재측정 필요합니다."]
    plan = patient_b.plan[0]
    assert plan.priority == TodoPriority.P2
    assert plan.due == TodoDue.TODAY
    assert plan.owner == TaskOwner.RN
    assert plan.evidence_ref.segment_id == "seg-005"


def test_output_carries_no_identifiers(night_segments, config):
    output = run(night_segments, config)
    serialized = json.dumps(output.result.to_dict(), ensure_ascii=False)

    for token in ("김민준", "이서연", "010-1234-5678", "701호", "702호"):
        assert token not in serialized
    assert output.result.safety.phi_safe
    assert output.result.safety.export_allowed
    assert output.result.safety.persist_allowed
    assert output.result.safety.residual_count == 0
    assert output.residual_issues == []


def test_global_top_sorted(night_segments, config):
    result = run(night_segments, config).result
    scores = [item.score for item in result.global_top]
    assert scores
    assert len(scores) <= 5
    assert scores == sorted(scores, reverse=True)
    assert {item.alias for item in result.global_top} <= {"PATIENT_A", "PATIENT_B"}


def test_missing_time_uncertainty(night_segments, config):
    result = run(night_segments, config).result
    missing = [u for u in result.uncertainties if u.kind == UncertaintyKind.MISSING_TIME]
    assert [u.evidence_ref.segment_id for u in missing] == ["seg-003"]
    assert "010-1234-5678" not in missing[0].text
    assert not any(u.kind == UncertaintyKind.AMBIGUOUS_PATIENT for u in result.uncertainties)


def test_fallback_single_patient(config):
    result = run(make_raw_segments(["혈압 재측정 필요합니다.", "소변량 확인 부탁드립니다."]), config).result

    assert [p.alias for p in result.patients] == ["PATIENT_A"]
    fallback = [u for u in result.uncertainties if u.reason == FALLBACK_REASON]
    assert len(fallback) == 1
    assert fallback[0].kind == UncertaintyKind.AMBIGUOUS_PATIENT
    assert fallback[0].evidence_ref.segment_id == "seg-001"
    assert any(u.kind == UncertaintyKind.MANUAL_REVIEW for u in result.uncertainties)


def test_ward_event_between_patients(config):
    result = run(make_raw_segments([
        "701호 김민준님 혈압 90/60입니다.",
        "금일 병동 퇴원 예정 2명 있습니다.",
        "702호 이서연님 혈당 300입니다.",
    ]), config).result

    assert len(result.ward_events) == 1
    assert result.ward_events[0].category == WardEventCategory.DISCHARGE
    assert result.ward_events[0].evidence_ref.segment_id == "seg-002"
    assert len(result.patients) == 2


def test_manual_uncertainties_are_appended(night_segments, config):
    manual = ManualUncertainty(reason="보호자 면담 일정 미정", text="면담 일정 확인 필요", start_ms=2000)
    result = run(night_segments, config, manual_uncertainties=[manual]).result

    item = next(u for u in result.uncertainties if u.id == "uncertainty-manual-1")
    assert item.kind == UncertaintyKind.MANUAL_REVIEW
    assert item.evidence_ref.segment_id == "manual-1"
    assert item.evidence_ref.start_ms == 2000
    assert item.evidence_ref.end_ms == 3000


def test_uncertainties_are_capped(night_segments, config):
    config.pipeline.max_uncertainties = 1
    manual = ManualUncertainty(reason="추가 확인", text="추가 확인 필요")
    result = run(night_segments, config, manual_uncertainties=[manual]).result
    assert len(result.uncertainties) == 1


def test_duplicate_uncertainties_are_compacted(config):
    result = run(make_raw_segments([
        "701호 김민준님 혈압 재측정 필요합니다.",
        "소변량 재측정 필요합니다.",
    ]), config).result
    missing = [u for u in result.uncertainties if u.kind == UncertaintyKind.MISSING_TIME]
    assert len(missing) == 1
    assert missing[0].count == 2
    assert missing[0].evidence_ref.start_ms == 0
    assert missing[0].evidence_ref.end_ms == 8000


def test_policy_gate_blocks_pipeline(night_segments, config):
    config.privacy.execution_mode = "remote_only"
    with pytest.raises(PolicyBlockedError):
        run(night_segments, config)


def test_pipeline_is_deterministic(night_segments, config):
    first = run(night_segments, config).result.to_dict()
    second = run(night_segments, config).result.to_dict()
    assert first == second


def test_evidence_map(night_segments, config):
    output = run(night_segments, config)
    evidence = build_evidence_map(output.local.masked_segments)
    assert set(evidence) == {s.segment_id for s in night_segments}
    assert "김민준" not in evidence["seg-001"]


def test_ensure_exportable(night_segments, config):
    result = run(night_segments, config).result
    assert ensure_exportable(result) is result

    result.safety.export_allowed = False
    with pytest.raises(UnsafePayloadError):
        ensure_exportable(result)


def test_malformed_phone_blocks_persistence(config):
    result = run(make_raw_segments([
        "701호 김민준님 혈압 90/60입니다.",
        "보호자 연락처 010/1234/5678 입니다.",
    ]), config).result

    assert not result.safety.phi_safe
    assert not result.safety.persist_allowed
    assert result.safety.residual_count > 0
    with pytest.raises(UnsafePayloadError):
        ensure_exportable(result)


def test_email_is_redacted_before_export(config):
    output = run(make_raw_segments([
        "701호 김민준 환자 보호자 이메일 guardian.kim@naver.com 으로 결과 확인 필요",
    ]), config)
    serialized = json.dumps(output.result.to_dict(), ensure_ascii=False)

    for token in ("guardian", "naver", "김민준"):
        assert token not in serialized
    assert output.result.safety.phi_safe
    assert output.result.safety.export_allowed


def test_spaced_email_blocks_export(config):
    result = run(make_raw_segments([
        "701호 김민준 환자 보호자 이메일 guardian.kim @ naver.com 으로 회신 예정",
    ]), config).result

    assert not result.safety.phi_safe
    assert not result.safety.export_allowed
    with pytest.raises(UnsafePayloadError):
        ensure_exportable(result)
