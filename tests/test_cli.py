"""Tests for the handoffguard command line."""

import json

import pytest
import yaml
from typer.testing import CliRunner

from handoffguard.audit import HandoffAuditLog
from handoffguard.cli import app
from handoffguard.vault import SQLiteStorage

from conftest import NIGHT_HANDOFF, make_result

runner = CliRunner()


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def transcript(tmp_path):
    path = tmp_path / "handoff.txt"
    path.write_text("\n".join(NIGHT_HANDOFF), encoding="utf-8")
    return path


def invoke(*args):
    return runner.invoke(app, [str(a) for a in args])


def run_handoff(transcript, data_dir, *extra):
    return invoke("run", transcript, "--duty", "night", "-s", "session-1", "-d", data_dir, *extra)


def audit_actions(data_dir):
    events = HandoffAuditLog(SQLiteStorage(data_dir / "handoff.db")).list()
    return [e.action.value for e in events]


# =============================================================================
# RUN
# =============================================================================

def test_run_writes_result(transcript, data_dir, tmp_path):
    output = tmp_path / "out" / "result.json"
    result = run_handoff(transcript, data_dir, "-o", output)

    assert result.exit_code == 0, result.output
    data = json.loads(output.read_text(encoding="utf-8"))
    assert data["sessionId"] == "session-1"
    assert data["dutyType"] == "night"
    assert len(data["patients"]) == 2

    text = output.read_text(encoding="utf-8")
    for token in ("김민준", "이서연", "010-1234-5678"):
        assert token not in text
    assert audit_actions(data_dir) == ["pipeline_run"]


def test_run_missing_transcript(tmp_path, data_dir):
    result = invoke("run", tmp_path / "absent.txt", "-d", data_dir)
    assert result.exit_code == 1


def test_run_blocked_by_policy(transcript, data_dir):
    data_dir.mkdir(parents=True)
    (data_dir / "config.yaml").write_text(
        yaml.dump({"privacy": {"execution_mode": "remote_only"}}), encoding="utf-8"
    )

    result = run_handoff(transcript, data_dir)
    assert result.exit_code == 1
    assert audit_actions(data_dir) == ["policy_blocked"]


# =============================================================================
# VAULT
# =============================================================================

def test_save_then_list(transcript, data_dir):
    assert run_handoff(transcript, data_dir, "--save").exit_code == 0

    result = invoke("vault", "list", "-d", data_dir)
    assert result.exit_code == 0
    assert "session-1" in result.output
    assert audit_actions(data_dir) == ["session_saved", "pipeline_run"]


def test_vault_list_empty(data_dir):
    result = invoke("vault", "list", "-d", data_dir)
    assert result.exit_code == 0
    assert "No stored sessions" in result.output


def test_shred_removes_session(transcript, data_dir):
    run_handoff(transcript, data_dir, "--save")

    assert invoke("vault", "shred", "session-1", "-d", data_dir).exit_code == 0
    assert "No stored sessions" in invoke("vault", "list", "-d", data_dir).output
    assert audit_actions(data_dir)[0] == "session_shred"


def test_purge_all(transcript, data_dir):
    run_handoff(transcript, data_dir, "--save")

    result = invoke("vault", "purge", "--all", "--yes", "-d", data_dir)
    assert result.exit_code == 0
    assert "Deleted 1 raw and 1 structured" in result.output
    assert "No stored sessions" in invoke("vault", "list", "-d", data_dir).output


def test_purge_expired_keeps_live_sessions(transcript, data_dir):
    run_handoff(transcript, data_dir, "--save")

    result = invoke("vault", "purge", "-d", data_dir)
    assert result.exit_code == 0
    assert "Purged 0 raw and 0 structured" in result.output
    assert "session-1" in invoke("vault", "list", "-d", data_dir).output


# =============================================================================
# AUDIT
# =============================================================================

def test_audit_list_and_verify(transcript, data_dir):
    run_handoff(transcript, data_dir)
    run_handoff(transcript, data_dir)

    listed = invoke("audit", "list", "-d", data_dir)
    assert listed.exit_code == 0
    assert "pipeline_run" in listed.output

    verified = invoke("audit", "verify", "-d", data_dir)
    assert verified.exit_code == 0
    assert "valid" in verified.output


def test_audit_list_empty(data_dir):
    result = invoke("audit", "list", "-d", data_dir)
    assert result.exit_code == 0
    assert "No audit events" in result.output


# =============================================================================
# SANITIZE
# =============================================================================

def test_sanitize_redacts_file(tmp_path):
    source = tmp_path / "result.json"
    source.write_text(json.dumps(make_result("보호자 010-1234-5678 연락 요망").to_dict(), ensure_ascii=False), encoding="utf-8")
    target = tmp_path / "clean.json"

    result = invoke("sanitize", source, "-o", target)
    assert result.exit_code == 0
    assert "010-1234-5678" not in target.read_text(encoding="utf-8")


def test_sanitize_fails_on_residual_phi(tmp_path):
    source = tmp_path / "result.json"
    source.write_text(json.dumps(make_result("김민준 환자 상태 안정적").to_dict(), ensure_ascii=False), encoding="utf-8")
    assert invoke("sanitize", source).exit_code == 1


def test_sanitize_unreadable_file(tmp_path):
    source = tmp_path / "result.json"
    source.write_text("not json", encoding="utf-8")
    assert invoke("sanitize", source).exit_code == 1


# =============================================================================
# SYNTH / EVAL
# =============================================================================

def test_synth_then_eval(tmp_path, data_dir):
    dataset = tmp_path / "cases.json"
    report = tmp_path / "report.json"

    assert invoke("synth", dataset, "-n", 2, "--seed", 3).exit_code == 0
    assert len(json.loads(dataset.read_text(encoding="utf-8"))["cases"]) == 2

    result = invoke("eval", dataset, "-o", report, "--json", "-d", data_dir)
    assert result.exit_code == 0
    summary = json.loads(report.read_text(encoding="utf-8"))["summary"]
    assert summary["dataset"] == "synthetic"
    assert summary["totalCases"] == 2


def test_synth_rejects_bad_range(tmp_path):
    result = invoke("synth", tmp_path / "cases.json", "--min-patients", 4, "--max-patients", 2)
    assert result.exit_code == 1


def test_eval_missing_dataset(tmp_path, data_dir):
    assert invoke("eval", tmp_path / "absent.json", "-d", data_dir).exit_code == 1


# =============================================================================
# CONFIG
# =============================================================================

def test_config_init_and_show(data_dir):
    assert invoke("config", "init", "-d", data_dir).exit_code == 0
    assert (data_dir / "config.yaml").exists()

    assert invoke("config", "init", "-d", data_dir).exit_code == 1
    assert invoke("config", "init", "--force", "-d", data_dir).exit_code == 0

    shown = invoke("config", "show", "-d", data_dir)
    assert shown.exit_code == 0
    assert "strict" in shown.output
