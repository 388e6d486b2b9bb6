"""
Tests for cli/cli.py

Validates:
- Commands exit 0 on success and print a confirmation
- Engine errors print "Error: ..." to stderr and exit 1
- --db and --project-root override auto-discovery
- Listings print their empty-state messages
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from controlplane.cli.cli import main


@pytest.fixture
def run(tmp_path, capsys):
    """Invoke the CLI against a database under tmp_path; returns (exit code, stdout, stderr)."""
    db_path = tmp_path / "state" / "cli.db"

    def _run(*argv: str) -> tuple[int, str, str]:
        with pytest.raises(SystemExit) as exc_info:
            main(["--db", str(db_path), "--project-root", str(tmp_path), *argv])
        captured = capsys.readouterr()
        return exc_info.value.code, captured.out, captured.err

    return _run


# ---------------------------------------------------------------------------
# Feature commands
# ---------------------------------------------------------------------------


def test_create_and_list(run, tmp_path):
    code, out, _ = run("create", "F001", "Search", "--complexity", "1", "--by", "planner")
    assert code == 0
    assert out.strip() == "Feature F001 created at phase 0 (Planning)."
    assert (tmp_path / "state" / "cli.db").exists()

    code, out, _ = run("list")
    assert code == 0
    assert "F001" in out
    assert "0 (Planning)" in out
    assert "1 feature(s)." in out


def test_list_empty(run):
    code, out, _ = run("list")
    assert code == 0
    assert "No features found." in out


def test_duplicate_create_fails(run):
    run("create", "F001", "Search")
    code, _, err = run("create", "F001", "Again")
    assert code == 1
    assert err.startswith("Error: Feature 'F001' already exists")


def test_transition_and_skip(run):
    run("create", "F001", "Search")
    code, out, _ = run("transition", "F001", "1", "--note", "scoped")
    assert code == 0
    assert "0 (Planning) -> 1 (Discovery) (FORWARD)" in out

    code, _, err = run("transition", "F001", "4")
    assert code == 1
    assert err.startswith("Error:")


def test_status_shows_open_blockers(run):
    run("create", "F001", "Search")
    code, out, _ = run("block", "F001", "HUMAN_DECISION_REQUIRED", "HIGH", "Pick a vendor")
    assert code == 0
    assert "is BLOCKED" in out

    code, out, _ = run("status", "F001")
    assert code == 0
    assert "Status      : BLOCKED" in out
    assert "Blockers    : 1 open / 1 total" in out
    assert "HUMAN_DECISION_REQUIRED: Pick a vendor" in out


def test_status_unknown_feature(run):
    code, _, err = run("status", "NOPE")
    assert code == 1
    assert "Error: Feature 'NOPE' not found" in err


def test_resolve_then_complete(run):
    run("create", "F001", "Search", "--complexity", "1")
    run("block", "F001", "VALIDATION_FAILED", "LOW", "Flaky")

    code, _, err = run("complete", "F001")
    assert code == 1
    assert "unresolved blocker" in err

    code, out, _ = run("resolve", "1", "--notes", "Retried")
    assert code == 0
    assert "Remaining open : 0" in out
    assert "Feature status : IN_PROGRESS" in out

    code, out, _ = run("complete", "F001")
    assert code == 0
    assert "Feature F001 COMPLETE." in out
    assert "Evaluation :" in out


def test_cancel(run):
    run("create", "F001", "Search")
    code, out, _ = run("cancel", "F001", "--reason", "dropped")
    assert code == 0
    assert "Feature F001 CANCELLED." in out

    code, _, err = run("transition", "F001", "1")
    assert code == 1


def test_gate_decision_and_collision(run):
    run("create", "F001", "Search")
    code, out, _ = run("gate", "F001", "design_review", "APPROVED", "--by", "guardian")
    assert code == 0
    assert "Gate 'design_review' APPROVED at phase 0 (Planning) (attempt 1)." in out

    code, _, err = run("gate", "F001", "design_review", "REJECTED")
    assert code == 1
    assert "already APPROVED by guardian" in err


def test_invalid_gate_decision_is_usage_error(run):
    run("create", "F001", "Search")
    code, _, _ = run("gate", "F001", "design_review", "PENDING")
    assert code == 2


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("argv,message", [
    (["locks"], "No active locks."),
    (["conflicts"], "No conflicts."),
    (["learnings"], "No learnings found."),
    (["propagation", "queue"], "Propagation queue is empty."),
    (["propagation", "syncs"], "No pending evolution syncs."),
    (["propagation", "history"], "No propagation history."),
    (["alerts"], "No active alerts."),
    (["audit"], "No audit entries found."),
])
def test_empty_listings(run, argv, message):
    code, out, _ = run(*argv)
    assert code == 0
    assert message in out


def test_audit_lists_actions(run):
    run("create", "F001", "Search", "--by", "planner")
    run("transition", "F001", "1", "--by", "planner")
    code, out, _ = run("audit", "--feature", "F001")
    assert code == 0
    assert "create_feature" in out
    assert "transition_phase" in out
    assert out.index("transition_phase") < out.index("create_feature")


# ---------------------------------------------------------------------------
# Evaluation commands
# ---------------------------------------------------------------------------


def test_eval_and_alerts(run):
    run("create", "F001", "Search", "--complexity", "1")
    for n in range(4):
        run("block", "F001", "VALIDATION_FAILED", "HIGH", f"Broken {n}")
    run("gate", "F001", "design_review", "REJECTED")

    code, out, _ = run("eval", "F001")
    assert code == 0
    assert "Feature F001: CONCERNING" in out
    assert "Quality    : 20.0" in out
    assert "Overall    : 52.0" in out

    code, out, _ = run("alerts")
    assert code == 0
    assert "overall_score" in out


def test_ack_unknown_alert(run):
    code, _, err = run("ack", "missing")
    assert code == 1
    assert "Error: Alert 'missing' not found" in err


def test_health(run):
    code, out, _ = run("health", "--period", "30")
    assert code == 0
    assert "System health (30 days): HEALTHY" in out
    assert "Overall : 85.0" in out


def test_health_rejects_period(run):
    code, _, _ = run("health", "--period", "14")
    assert code == 2
