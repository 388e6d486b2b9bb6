"""
Tests for engine/coordination.py

Validates:
- Locks are unique per (feature, path) and a held lock names its holder
- release_lock reports whether anything was released
- detect_conflicts records one canonical row per overlapping feature pair
- Risk is HIGH only when both features are actively progressing
- Repeat detection merges paths and a new overlap reopens a resolved conflict
- Resolution strategies map to conflict statuses
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from controlplane.engine.coordination import (
    acquire_lock,
    canonical_pair,
    close_conflict,
    detect_conflicts,
    get_conflict,
    list_conflicts,
    list_locks,
    release_all_locks,
    release_lock,
    resolve_conflict,
)
from controlplane.engine.errors import CollisionError, InvariantViolationError, NotFoundError
from controlplane.engine.features import cancel_feature, create_feature
from controlplane.engine.gating import create_blocker
from controlplane.engine.models import (
    ConflictRisk,
    ConflictStatus,
    ConflictStrategy,
    LockKind,
)
from controlplane.engine.schema import create_db


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def db_conn(tmp_path):
    conn = create_db(str(tmp_path / "test.db"))
    yield conn
    conn.close()


@pytest.fixture
def two_features(db_conn):
    create_feature(db_conn, "F001", "Auth", 2, "planner")
    create_feature(db_conn, "F002", "Billing", 2, "planner")


# ---------------------------------------------------------------------------
# Locks
# ---------------------------------------------------------------------------


def test_acquire_lock(db_conn, two_features):
    lock = acquire_lock(db_conn, "F001", "src/auth.py", "builder-1")

    assert lock.feature_id == "F001"
    assert lock.path == "src/auth.py"
    assert lock.kind is LockKind.FILE
    assert lock.holder == "builder-1"


def test_acquire_held_lock_names_holder(db_conn, two_features):
    acquire_lock(db_conn, "F001", "src/auth.py", "builder-1")
    with pytest.raises(CollisionError, match="builder-1") as exc_info:
        acquire_lock(db_conn, "F001", "src/auth.py", "builder-2")
    assert exc_info.value.holder == "builder-1"


def test_same_path_different_features_allowed(db_conn, two_features):
    """Locks are scoped per feature; cross-feature overlap is a conflict, not a collision."""
    acquire_lock(db_conn, "F001", "src/shared.py", "builder-1")
    acquire_lock(db_conn, "F002", "src/shared.py", "builder-2")
    assert len(list_locks(db_conn, path="src/shared.py")) == 2


def test_acquire_lock_rejects_empty_path(db_conn, two_features):
    with pytest.raises(InvariantViolationError):
        acquire_lock(db_conn, "F001", "   ", "builder-1")


def test_acquire_lock_on_cancelled_feature(db_conn, two_features):
    cancel_feature(db_conn, "F001", "manager")
    with pytest.raises(InvariantViolationError):
        acquire_lock(db_conn, "F001", "src/auth.py", "builder-1")


def test_acquire_lock_unknown_feature(db_conn):
    with pytest.raises(NotFoundError):
        acquire_lock(db_conn, "NOPE", "src/auth.py", "builder-1")


def test_release_lock(db_conn, two_features):
    acquire_lock(db_conn, "F001", "src/auth.py", "builder-1")

    assert release_lock(db_conn, "F001", "src/auth.py", "builder-1") is True
    assert release_lock(db_conn, "F001", "src/auth.py", "builder-1") is False
    assert list_locks(db_conn, "F001") == []


def test_release_then_reacquire(db_conn, two_features):
    acquire_lock(db_conn, "F001", "src/auth.py", "builder-1")
    release_lock(db_conn, "F001", "src/auth.py", "builder-1")
    lock = acquire_lock(db_conn, "F001", "src/auth.py", "builder-2")
    assert lock.holder == "builder-2"


def test_release_all_locks(db_conn, two_features):
    acquire_lock(db_conn, "F001", "b.py", "builder-1")
    acquire_lock(db_conn, "F001", "a.py", "builder-1")
    assert release_all_locks(db_conn, "F001", "builder-1") == ["a.py", "b.py"]


# ---------------------------------------------------------------------------
# Conflict detection
# ---------------------------------------------------------------------------


def test_canonical_pair_orders_ids():
    assert canonical_pair("F002", "F001") == ("F001", "F002")
    with pytest.raises(InvariantViolationError):
        canonical_pair("F001", "F001")


def test_detect_conflicts_no_overlap(db_conn, two_features):
    acquire_lock(db_conn, "F002", "src/billing.py", "builder-2")
    assert detect_conflicts(db_conn, "F001", ["src/auth.py"], "builder-1") == []


def test_detect_conflicts_records_canonical_pair(db_conn, two_features):
    """Detection from the higher id still stores the lower id first."""
    acquire_lock(db_conn, "F001", "src/shared.py", "builder-1")

    conflicts = detect_conflicts(db_conn, "F002", ["src/shared.py", "src/other.py"], "builder-2")

    assert len(conflicts) == 1
    conflict = conflicts[0]
    assert (conflict.feature_a_id, conflict.feature_b_id) == ("F001", "F002")
    assert conflict.paths == ["src/shared.py"]
    assert conflict.risk is ConflictRisk.HIGH
    assert conflict.status is ConflictStatus.DETECTED


def test_detect_conflicts_medium_risk_when_other_blocked(db_conn, two_features):
    acquire_lock(db_conn, "F001", "src/shared.py", "builder-1")
    create_blocker(db_conn, "F001", "VALIDATION_FAILED", "LOW", "Flaky", "ci")

    conflict = detect_conflicts(db_conn, "F002", ["src/shared.py"], "builder-2")[0]
    assert conflict.risk is ConflictRisk.MEDIUM


def test_detect_conflicts_ignores_terminal_features(db_conn, two_features):
    acquire_lock(db_conn, "F001", "src/shared.py", "builder-1")
    # Locks survive only on live features; seed one on a cancelled feature directly
    cancel_feature(db_conn, "F001", "manager")
    db_conn.execute(
        "INSERT INTO locks (feature_id, path, holder) VALUES ('F001', 'src/shared.py', 'ghost')"
    )
    db_conn.commit()

    assert detect_conflicts(db_conn, "F002", ["src/shared.py"], "builder-2") == []


def test_repeat_detection_merges_into_one_row(db_conn, two_features):
    acquire_lock(db_conn, "F001", "a.py", "builder-1")
    acquire_lock(db_conn, "F001", "b.py", "builder-1")

    detect_conflicts(db_conn, "F002", ["a.py"], "builder-2")
    conflicts = detect_conflicts(db_conn, "F002", ["b.py"], "builder-2")

    assert len(list_conflicts(db_conn)) == 1
    assert conflicts[0].paths == ["a.py", "b.py"]


def test_detection_from_either_side_shares_one_row(db_conn, two_features):
    acquire_lock(db_conn, "F001", "a.py", "builder-1")
    acquire_lock(db_conn, "F002", "b.py", "builder-2")

    first = detect_conflicts(db_conn, "F002", ["a.py"], "builder-2")[0]
    second = detect_conflicts(db_conn, "F001", ["b.py"], "builder-1")[0]

    rows = list_conflicts(db_conn)
    assert len(rows) == 1
    assert second.id == first.id
    assert (rows[0].feature_a_id, rows[0].feature_b_id) == ("F001", "F002")
    assert rows[0].paths == ["a.py", "b.py"]


def test_new_overlap_reopens_resolved_conflict(db_conn, two_features):
    acquire_lock(db_conn, "F001", "a.py", "builder-1")
    acquire_lock(db_conn, "F001", "b.py", "builder-1")
    conflict = detect_conflicts(db_conn, "F002", ["a.py"], "builder-2")[0]
    resolve_conflict(db_conn, conflict.id, ConflictStrategy.ALLOW_PARALLEL, "lead")

    same = detect_conflicts(db_conn, "F002", ["a.py"], "builder-2")[0]
    assert same.status is ConflictStatus.RESOLVED

    reopened = detect_conflicts(db_conn, "F002", ["b.py"], "builder-2")[0]
    assert reopened.status is ConflictStatus.DETECTED


@pytest.mark.parametrize("strategy,expected", [
    (ConflictStrategy.SERIALIZE, ConflictStatus.SERIALIZED),
    (ConflictStrategy.COORDINATE, ConflictStatus.COORDINATED),
    (ConflictStrategy.ALLOW_PARALLEL, ConflictStatus.RESOLVED),
])
def test_resolve_conflict_strategies(db_conn, two_features, strategy, expected):
    acquire_lock(db_conn, "F001", "a.py", "builder-1")
    conflict = detect_conflicts(db_conn, "F002", ["a.py"], "builder-2")[0]

    resolved = resolve_conflict(db_conn, conflict.id, strategy, "lead", "talked it through")

    assert resolved.status is expected
    assert resolved.strategy is strategy
    assert resolved.notes == "talked it through"


def test_close_conflict(db_conn, two_features):
    acquire_lock(db_conn, "F001", "a.py", "builder-1")
    conflict = detect_conflicts(db_conn, "F002", ["a.py"], "builder-2")[0]
    resolve_conflict(db_conn, conflict.id, "SERIALIZE", "lead")

    closed = close_conflict(db_conn, conflict.id, "lead")
    assert closed.status is ConflictStatus.RESOLVED
    assert closed.strategy is ConflictStrategy.SERIALIZE

    with pytest.raises(InvariantViolationError):
        close_conflict(db_conn, conflict.id, "lead")


def test_resolved_conflict_cannot_be_re_resolved(db_conn, two_features):
    acquire_lock(db_conn, "F001", "a.py", "builder-1")
    conflict = detect_conflicts(db_conn, "F002", ["a.py"], "builder-2")[0]
    resolve_conflict(db_conn, conflict.id, "ALLOW_PARALLEL", "lead")

    with pytest.raises(InvariantViolationError, match="already RESOLVED"):
        resolve_conflict(db_conn, conflict.id, "SERIALIZE", "lead")

    assert get_conflict(db_conn, conflict.id).status is ConflictStatus.RESOLVED
    resolutions = db_conn.execute(
        "SELECT COUNT(*) FROM audit_log WHERE entity_type = 'conflict' AND action = 'resolve_conflict'"
    ).fetchone()[0]
    assert resolutions == 1


def test_list_conflicts_unresolved_only(db_conn, two_features):
    acquire_lock(db_conn, "F001", "a.py", "builder-1")
    conflict = detect_conflicts(db_conn, "F002", ["a.py"], "builder-2")[0]

    assert len(list_conflicts(db_conn, "F001", unresolved_only=True)) == 1
    resolve_conflict(db_conn, conflict.id, "ALLOW_PARALLEL", "lead")
    assert list_conflicts(db_conn, "F002", unresolved_only=True) == []


def test_resolve_unknown_conflict(db_conn):
    with pytest.raises(NotFoundError):
        resolve_conflict(db_conn, 42, "SERIALIZE", "lead")
