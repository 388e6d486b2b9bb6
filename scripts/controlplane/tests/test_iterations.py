"""
Tests for engine/iterations.py

Validates:
- Iterations are numbered 1, 2, 3 per feature
- Convergence: no issues, or change at or below the threshold
- Thrashing: a full window without convergence and without fewer issues
- Explicit thrashing flags override detection
- rework_iterations counts the larger of iterations and backward moves
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from controlplane.engine.errors import InvariantViolationError, NotFoundError
from controlplane.engine.features import create_feature, transition_phase
from controlplane.engine.iterations import (
    is_converged,
    list_iterations,
    record_iteration,
    rework_iterations,
    thrashing_count,
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
def feature(db_conn):
    return create_feature(db_conn, "F001", "Reports", 2, "planner")


# ---------------------------------------------------------------------------
# Convergence
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("issues,change,expected", [
    (0, None, True),
    (0, 50.0, True),
    (3, 5.0, True),
    (3, 5.1, False),
    (3, None, False),
])
def test_is_converged(issues, change, expected):
    assert is_converged(issues, change, 5.0) is expected


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------


def test_record_iteration_numbers_sequentially(db_conn, feature):
    first = record_iteration(db_conn, "F001", "reviewer", "v1", issues_found=4, change_percent=30)
    second = record_iteration(db_conn, "F001", "reviewer", "v2", issues_found=1, change_percent=3)

    assert first.iteration_number == 1
    assert second.iteration_number == 2
    assert second.convergence_detected is True
    assert second.spec_version == "v2"
    assert [r.iteration_number for r in list_iterations(db_conn, "F001")] == [1, 2]


def test_thrashing_detected_over_window(db_conn, feature):
    """Three non-converging iterations with a non-decreasing issue count."""
    record_iteration(db_conn, "F001", "reviewer", issues_found=3, change_percent=40)
    second = record_iteration(db_conn, "F001", "reviewer", issues_found=2, change_percent=35)
    third = record_iteration(db_conn, "F001", "reviewer", issues_found=4, change_percent=45)

    assert second.thrashing_detected is False
    assert third.thrashing_detected is True
    assert thrashing_count(db_conn, "F001") == 1


def test_no_thrashing_when_issues_decrease(db_conn, feature):
    record_iteration(db_conn, "F001", "reviewer", issues_found=6, change_percent=40)
    record_iteration(db_conn, "F001", "reviewer", issues_found=5, change_percent=40)
    third = record_iteration(db_conn, "F001", "reviewer", issues_found=3, change_percent=40)
    assert third.thrashing_detected is False


def test_no_thrashing_when_window_converged(db_conn, feature):
    record_iteration(db_conn, "F001", "reviewer", issues_found=3, change_percent=40)
    record_iteration(db_conn, "F001", "reviewer", issues_found=3, change_percent=2)
    third = record_iteration(db_conn, "F001", "reviewer", issues_found=3, change_percent=40)
    assert third.thrashing_detected is False


def test_custom_thrashing_window(db_conn, feature):
    record_iteration(db_conn, "F001", "reviewer", issues_found=2, change_percent=40)
    second = record_iteration(
        db_conn, "F001", "reviewer", issues_found=2, change_percent=40, thrashing_window=2,
    )
    assert second.thrashing_detected is True


def test_explicit_thrashing_flag(db_conn, feature):
    record = record_iteration(db_conn, "F001", "reviewer", issues_found=1, thrashing=True)
    assert record.thrashing_detected is True


@pytest.mark.parametrize("kwargs", [
    {"issues_found": -1},
    {"issues_resolved": -2},
    {"change_percent": 101.0},
    {"change_percent": -0.5},
])
def test_record_iteration_rejects_bad_values(db_conn, feature, kwargs):
    with pytest.raises(InvariantViolationError):
        record_iteration(db_conn, "F001", "reviewer", **kwargs)


def test_record_iteration_unknown_feature(db_conn):
    with pytest.raises(NotFoundError):
        record_iteration(db_conn, "NOPE", "reviewer")


# ---------------------------------------------------------------------------
# Rework count
# ---------------------------------------------------------------------------


def test_rework_iterations_uses_backward_transitions(db_conn, feature):
    transition_phase(db_conn, "F001", "1", "agent")
    transition_phase(db_conn, "F001", "0", "agent")
    transition_phase(db_conn, "F001", "1", "agent")
    transition_phase(db_conn, "F001", "0", "agent")
    record_iteration(db_conn, "F001", "reviewer", issues_found=0)

    assert rework_iterations(db_conn, "F001") == 2


def test_rework_iterations_uses_recorded_iterations(db_conn, feature):
    for _ in range(3):
        record_iteration(db_conn, "F001", "reviewer", issues_found=0)
    assert rework_iterations(db_conn, "F001") == 3
