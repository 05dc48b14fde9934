"""Tests for the export-time de-identification guard."""

from handoffguard.engine.deid_guard import detect_residual_phi, sanitize_structured_session, sanitize_text
from handoffguard.engine.phi_guard import REDACTED
from handoffguard.types import HandoverSessionResult

from conftest import make_result


def test_sanitize_text_reports_paths():
    text, issues = sanitize_text("김민준님 연락처 010-1234-5678", "patients[0].summary")
    assert "김민준" not in text
    assert "010-1234-5678" not in text
    assert {i.pattern for i in issues} == {"korean-name-honorific", "phone"}
    assert all(i.field == "patients[0].summary" for i in issues)


def test_sanitize_session_redacts_free_text():
    sanitized = sanitize_structured_session(make_result("701호 김민준님 연락처 010-1234-5678"))

    summary = sanitized.result.patients[0].summary
    assert REDACTED in summary
    for token in ("701", "김민준", "010-1234-5678"):
        assert token not in summary
    assert sanitized.issues
    assert sanitized.is_safe


def test_machine_keys_are_untouched():
    sanitized = sanitize_structured_session(make_result("701호 김민준님"))
    card = sanitized.result.patients[0]
    assert card.patient_key == "PATIENT_A"
    assert sanitized.result.session_id == "session-1"


def test_clean_result_has_no_issues():
    sanitized = sanitize_structured_session(make_result())
    assert sanitized.issues == []
    assert sanitized.residual_issues == []
    assert sanitized.result.to_dict() == make_result().to_dict()


def test_residual_patient_honorific_is_unsafe():
    sanitized = sanitize_structured_session(make_result("김민준 환자 상태 안정적입니다."))
    assert not sanitized.is_safe
    assert sanitized.residual_issues[0].field == "patients[0].summary"


def test_pronoun_is_not_residual():
    assert detect_residual_phi(make_result("상기 환자 상태 안정적입니다.")) == []


def test_detect_residual_accepts_dict_payload():
    payload = make_result("701호 혈압 90/60").to_dict()
    issues = detect_residual_phi(payload)
    assert [(i.field, i.pattern) for i in issues] == [("patients[0].summary", "room")]


def test_sanitize_accepts_dict_payload():
    sanitized = sanitize_structured_session(make_result("주민번호 900101-1234567").to_dict())
    assert isinstance(sanitized.result, HandoverSessionResult)
    assert "900101" not in sanitized.result.patients[0].summary


def test_whitespace_collapsed_after_redaction():
    text, _ = sanitize_text("연락처   010-1234-5678   확인", "x")
    assert text == f"연락처 {REDACTED} 확인"


def test_malformed_phone_is_caught_by_residual_scan():
    sanitized = sanitize_structured_session(make_result("보호자 010/1234/5678 연락 요망"))
    assert ("patients[0].summary", "phone") in [(i.field, i.pattern) for i in sanitized.residual_issues]
    assert not sanitized.is_safe
