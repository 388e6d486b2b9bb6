"""
Tests for engine/gating.py

Validates:
- create_blocker forces the feature into BLOCKED
- resolve_blocker unblocks only when the last unresolved blocker closes
- Blocker lifecycle (in progress, escalated, resolved) is enforced
- Gate evaluations are unique per (feature, gate, phase, attempt)
- Re-entering a phase opens a new gate occasion
- Concurrent resolution of the last two blockers unblocks exactly once
"""

import sqlite3
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from controlplane.engine.audit import query_audit
from controlplane.engine.errors import CollisionError, InvariantViolationError, NotFoundError
from controlplane.engine.features import cancel_feature, create_feature, get_feature, transition_phase
from controlplane.engine.gating import (
    create_blocker,
    current_phase_attempt,
    escalate_blocker,
    evaluate_gate,
    get_blocker,
    list_blockers,
    list_gates,
    mark_blocker_in_progress,
    resolve_blocker,
)
from controlplane.engine.models import (
    BlockerStatus,
    BlockerType,
    FeatureStatus,
    GateStatus,
    Phase,
)
from controlplane.engine.schema import create_db
from controlplane.engine.state_machine import InvalidBlockerTransitionError


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def db_conn(tmp_path):
    conn = create_db(str(tmp_path / "test.db"))
    yield conn
    conn.close()


@pytest.fixture
def feature(db_conn):
    return create_feature(db_conn, "F001", "Checkout", 2, "planner")


def _open_blocker(conn, title: str = "Spec unclear"):
    return create_blocker(conn, "F001", BlockerType.HUMAN_DECISION_REQUIRED, "HIGH", title, "agent")


# ---------------------------------------------------------------------------
# Blockers
# ---------------------------------------------------------------------------


def test_create_blocker_blocks_feature(db_conn, feature):
    blocker = _open_blocker(db_conn)

    assert blocker.status is BlockerStatus.OPEN
    assert blocker.phase is Phase.PLANNING
    assert blocker.created_by == "agent"
    assert get_feature(db_conn, "F001").status is FeatureStatus.BLOCKED


def test_create_blocker_rejects_unknown_type(db_conn, feature):
    with pytest.raises(ValueError):
        create_blocker(db_conn, "F001", "NOT_A_TYPE", "HIGH", "x", "agent")


def test_create_blocker_on_terminal_feature(db_conn, feature):
    cancel_feature(db_conn, "F001", "manager")
    with pytest.raises(InvariantViolationError):
        _open_blocker(db_conn)


def test_resolve_last_blocker_unblocks(db_conn, feature):
    blocker = _open_blocker(db_conn)
    result = resolve_blocker(db_conn, blocker.id, "human", "Decided: option B")

    assert result["remaining_open"] == 0
    assert result["feature_status"] == "IN_PROGRESS"
    assert result["blocker"].status is BlockerStatus.RESOLVED
    assert result["blocker"].resolution_notes == "Decided: option B"
    assert get_feature(db_conn, "F001").status is FeatureStatus.IN_PROGRESS


def test_resolve_one_of_two_stays_blocked(db_conn, feature):
    first = _open_blocker(db_conn, "One")
    _open_blocker(db_conn, "Two")

    result = resolve_blocker(db_conn, first.id, "human")

    assert result["remaining_open"] == 1
    assert result["feature_status"] == "BLOCKED"


def test_escalated_blocker_keeps_feature_blocked(db_conn, feature):
    first = _open_blocker(db_conn, "One")
    second = _open_blocker(db_conn, "Two")
    escalated = escalate_blocker(db_conn, second.id, "agent", "Needs product call")

    assert escalated.status is BlockerStatus.ESCALATED
    assert escalated.escalation_notes == "Needs product call"

    result = resolve_blocker(db_conn, first.id, "human")
    assert result["feature_status"] == "BLOCKED"

    result = resolve_blocker(db_conn, second.id, "human")
    assert result["feature_status"] == "IN_PROGRESS"


def test_blocker_in_progress_then_resolved(db_conn, feature):
    blocker = _open_blocker(db_conn)
    assert mark_blocker_in_progress(db_conn, blocker.id, "agent").status is BlockerStatus.IN_PROGRESS
    assert get_feature(db_conn, "F001").status is FeatureStatus.BLOCKED

    resolve_blocker(db_conn, blocker.id, "agent")
    assert get_blocker(db_conn, blocker.id).status is BlockerStatus.RESOLVED


def test_resolve_twice_rejected(db_conn, feature):
    blocker = _open_blocker(db_conn)
    resolve_blocker(db_conn, blocker.id, "human")
    with pytest.raises(InvalidBlockerTransitionError):
        resolve_blocker(db_conn, blocker.id, "human")


def test_resolve_unknown_blocker(db_conn):
    with pytest.raises(NotFoundError):
        resolve_blocker(db_conn, 999, "human")


def test_list_blockers_unresolved_only(db_conn, feature):
    first = _open_blocker(db_conn, "One")
    _open_blocker(db_conn, "Two")
    resolve_blocker(db_conn, first.id, "human")

    assert len(list_blockers(db_conn, "F001")) == 2
    open_titles = [b.title for b in list_blockers(db_conn, "F001", unresolved_only=True)]
    assert open_titles == ["Two"]


def test_blocker_audit_trail(db_conn, feature):
    blocker = _open_blocker(db_conn)
    resolve_blocker(db_conn, blocker.id, "human")

    actions = [e["action"] for e in query_audit(db_conn, feature_id="F001")]
    assert "create_blocker" in actions
    assert "resolve_blocker" in actions


# ---------------------------------------------------------------------------
# Concurrent resolution
# ---------------------------------------------------------------------------


def test_concurrent_resolution_unblocks_once(tmp_path):
    """
    Two threads each resolve one of the feature's two blockers at the same time.

    Uses separate connections (one per thread) to simulate true concurrency.
    Exactly one resolution sees zero remaining blockers, and the feature ends
    IN_PROGRESS.
    """
    db_path = str(tmp_path / "concurrent_test.db")

    setup_conn = create_db(db_path)
    create_feature(setup_conn, "F001", "Race", 1, "planner")
    blocker_ids = [
        create_blocker(setup_conn, "F001", "VALIDATION_FAILED", "LOW", f"b{i}", "ci").id
        for i in range(2)
    ]
    setup_conn.close()

    results: list[dict] = []
    errors: list[Exception] = []
    barrier = threading.Barrier(2)

    def resolve(blocker_id: int):
        # Each thread opens its own connection
        conn = sqlite3.connect(db_path, check_same_thread=False, timeout=10.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            barrier.wait()
            results.append(resolve_blocker(conn, blocker_id, f"agent-{blocker_id}"))
        except Exception as exc:
            errors.append(exc)
        finally:
            conn.close()

    threads = [threading.Thread(target=resolve, args=(bid,)) for bid in blocker_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30.0)

    assert not errors, f"errors: {errors}"
    assert sorted(r["remaining_open"] for r in results) == [0, 1]

    check = create_db(db_path)
    try:
        assert get_feature(check, "F001").status is FeatureStatus.IN_PROGRESS
        unblocks = check.execute(
            "SELECT COUNT(*) FROM audit_log WHERE action = 'resolve_blocker' "
            "AND json_extract(details, '$.feature_status') = 'IN_PROGRESS'"
        ).fetchone()[0]
        assert unblocks == 1
    finally:
        check.close()


# ---------------------------------------------------------------------------
# Quality gates
# ---------------------------------------------------------------------------


def test_evaluate_gate_records_decision(db_conn, feature):
    gate = evaluate_gate(db_conn, "F001", "plan_review", GateStatus.APPROVED, "lead", "LGTM")

    assert gate.status is GateStatus.APPROVED
    assert gate.phase is Phase.PLANNING
    assert gate.attempt == 1
    assert gate.approver == "lead"


def test_evaluate_gate_twice_in_same_visit_collides(db_conn, feature):
    evaluate_gate(db_conn, "F001", "plan_review", "REJECTED", "lead")
    with pytest.raises(CollisionError) as exc_info:
        evaluate_gate(db_conn, "F001", "plan_review", "APPROVED", "other")
    assert exc_info.value.holder == "lead"


def test_evaluate_gate_after_reentry_opens_new_attempt(db_conn, feature):
    """Rework back into a phase allows the same gate to be evaluated again."""
    transition_phase(db_conn, "F001", "1", "agent")
    evaluate_gate(db_conn, "F001", "discovery_review", "REJECTED", "lead")
    transition_phase(db_conn, "F001", "0", "agent")
    transition_phase(db_conn, "F001", "1", "agent")

    assert current_phase_attempt(db_conn, "F001") == 2
    gate = evaluate_gate(db_conn, "F001", "discovery_review", "APPROVED", "lead")
    assert gate.attempt == 2
    assert [g.status for g in list_gates(db_conn, "F001")] == [GateStatus.REJECTED, GateStatus.APPROVED]


def test_evaluate_gate_rejects_pending(db_conn, feature):
    with pytest.raises(InvariantViolationError):
        evaluate_gate(db_conn, "F001", "plan_review", "PENDING", "lead")


def test_evaluate_gate_unknown_feature(db_conn):
    with pytest.raises(NotFoundError):
        evaluate_gate(db_conn, "NOPE", "plan_review", "APPROVED", "lead")


def test_list_gates_unknown_feature(db_conn):
    with pytest.raises(NotFoundError):
        list_gates(db_conn, "NOPE")
