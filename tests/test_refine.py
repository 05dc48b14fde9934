"""Tests for merging untrusted refine-adapter output."""

import asyncio

import pytest

from handoffguard.exceptions import RefinePatchError
from handoffguard.refine import (
    REASON_ADAPTER_MISSING,
    REASON_NO_CHANGE,
    REASON_OUTPUT_INVALID,
    REASON_RESIDUAL_PHI,
    REASON_RUNTIME_ERROR,
    PlanPatch,
    merge_plan,
    parse_refine_patch,
    refine_result,
)
from handoffguard.types import EvidenceRef, PlanItem, TaskOwner, TodoDue, TodoPriority

from conftest import make_result


def refine(result, adapter=None):
    return asyncio.run(refine_result(result, adapter))


def patch_for(summary, **extra):
    patient = {"patientKey": "PATIENT_A", "summary": summary}
    patient.update(extra)
    return {"patients": [patient]}


# =============================================================================
# PARSING
# =============================================================================

def test_parse_accepts_wrapped_and_json():
    wrapped = parse_refine_patch({"result": patch_for("요약")})
    from_json = parse_refine_patch('{"patients": [{"patientKey": "PATIENT_A"}]}')
    assert wrapped.patients[0].summary == "요약"
    assert from_json.patients[0].patient_key == "PATIENT_A"


def test_parse_rejects_bad_shapes():
    for raw in ("not json", {"patients": "x"}, {"patients": [{"summary": "요약"}]}, 42):
        with pytest.raises(RefinePatchError):
            parse_refine_patch(raw)


def test_unknown_enum_values_are_dropped():
    patch = parse_refine_patch(patch_for("요약", plan=[{"task": "혈당 재측정", "priority": "P9", "due": "soon"}]))
    plan = patch.patients[0].plan[0]
    assert plan.priority is None
    assert plan.due is None


def test_merge_plan_keeps_evidence_by_task():
    ref = EvidenceRef("seg-004", 12000, 16000)
    base = [
        PlanItem(priority="P2", task="소변량 확인", evidence_ref=EvidenceRef("seg-001", 0, 4000)),
        PlanItem(priority="P2", task="혈당 재측정", evidence_ref=ref),
    ]
    merged = merge_plan(base, [PlanPatch(task="혈당 재측정", priority=TodoPriority.P1, owner=TaskOwner.RN)])

    assert len(merged) == 1
    assert merged[0].evidence_ref == ref
    assert merged[0].priority == TodoPriority.P1
    assert merged[0].owner == TaskOwner.RN


def test_merge_plan_falls_back_to_position():
    base = [PlanItem(priority="P2", task="혈당 재측정", due="today", evidence_ref=EvidenceRef("seg-001", 0, 4000))]
    merged = merge_plan(base, [PlanPatch(task="22:00 혈당 재측정", due=TodoDue.WITHIN_1H)])
    assert merged[0].evidence_ref.segment_id == "seg-001"
    assert merged[0].due == TodoDue.WITHIN_1H
    assert merged[0].priority == TodoPriority.P2


# =============================================================================
# REFINE
# =============================================================================

def test_no_adapter():
    outcome = refine(make_result())
    assert not outcome.refined
    assert outcome.reason == REASON_ADAPTER_MISSING


def test_adapter_error_is_contained():
    def broken(payload):
        raise RuntimeError("model offline")

    outcome = refine(make_result(), broken)
    assert not outcome.refined
    assert outcome.reason == REASON_RUNTIME_ERROR


def test_invalid_output():
    outcome = refine(make_result(), lambda payload: {"something": "else"})
    assert outcome.reason == REASON_OUTPUT_INVALID


def test_patient_key_mismatch_is_invalid():
    outcome = refine(make_result(), lambda payload: {"patients": [{"patientKey": "PATIENT_Z", "summary": "요약"}]})
    assert outcome.reason == REASON_OUTPUT_INVALID


def test_patient_count_mismatch_is_invalid():
    outcome = refine(make_result(), lambda payload: {"patients": []})
    assert outcome.reason == REASON_OUTPUT_INVALID


def test_unchanged_output():
    base = make_result()
    outcome = refine(base, lambda payload: patch_for(base.patients[0].summary))
    assert not outcome.refined
    assert outcome.reason == REASON_NO_CHANGE


def test_successful_refine():
    outcome = refine(make_result(), lambda payload: patch_for(
        "산소포화도 92%, 밤사이 호흡 관찰",
        watchFor=["호흡"],
        questions=["산소 감량 가능 여부"],
    ))
    assert outcome.refined
    assert outcome.reason is None
    card = outcome.result.patients[0]
    assert card.summary == "산소포화도 92%, 밤사이 호흡 관찰"
    assert card.watch_for == ["호흡"]
    assert card.questions == ["산소 감량 가능 여부"]
    assert outcome.result.provenance.llm_refined


def test_async_adapter():
    async def adapter(payload):
        return patch_for("비동기 요약")

    outcome = refine(make_result(), adapter)
    assert outcome.refined
    assert outcome.result.patients[0].summary == "비동기 요약"


def test_adapter_only_sees_sanitized_input():
    seen = {}

    def adapter(payload):
        seen.update(payload)
        return patch_for("요약")

    refine(make_result("701호 김민준님 혈압 90/60"), adapter)
    summary = seen["patients"][0]["summary"]
    assert "김민준" not in summary
    assert "701" not in summary


def test_adapter_phi_is_redacted():
    outcome = refine(make_result(), lambda payload: patch_for("보호자 010-1234-5678 연락 요망"))
    assert outcome.refined
    assert "010-1234-5678" not in outcome.result.patients[0].summary


def test_residual_phi_rejects_refine():
    base = make_result()
    outcome = refine(base, lambda payload: patch_for("김민준 환자 상태 안정적"))
    assert not outcome.refined
    assert outcome.reason == REASON_RESIDUAL_PHI
    assert outcome.result.patients[0].summary == base.patients[0].summary


def test_unsafe_input_never_reaches_adapter():
    calls = []

    def adapter(payload):
        calls.append(payload)
        return patch_for("요약")

    outcome = refine(make_result("보호자 010/1234/5678 로 콜 확인 필요"), adapter)
    assert calls == []
    assert not outcome.refined
    assert outcome.reason == REASON_RESIDUAL_PHI


def test_export_blocked_input_never_reaches_adapter():
    calls = []
    base = make_result()
    base.safety.export_allowed = False

    outcome = refine(base, lambda payload: calls.append(payload) or patch_for("요약"))
    assert calls == []
    assert outcome.reason == REASON_RESIDUAL_PHI
