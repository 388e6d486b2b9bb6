"""
Tests for engine/evaluation.py

Validates:
- Point tables for duration, iterations and blockers
- Efficiency/quality/overall composition and health classification
- Feature evals prefer agent invocation time over wall clock
- Alerts are raised on low scores, long durations and thrashing
- Alerts are acknowledged and resolved once
- System health accepts only 7, 30 or 90 day periods
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from controlplane.engine.durations import end_invocation, start_invocation
from controlplane.engine.errors import InvariantViolationError, NotFoundError
from controlplane.engine.evaluation import (
    acknowledge_alert,
    blocker_points,
    compute_feature_eval,
    compute_system_health,
    duration_points,
    efficiency_score,
    get_alert,
    get_feature_eval,
    iteration_points,
    latest_feature_eval,
    latest_system_health,
    list_alerts,
    overall_score,
    quality_score,
    resolve_alert,
)
from controlplane.engine.features import complete_feature, create_feature
from controlplane.engine.gating import create_blocker, evaluate_gate
from controlplane.engine.iterations import record_iteration
from controlplane.engine.models import AlertSeverity, HealthStatus
from controlplane.engine.schema import create_db


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def db_conn(tmp_path):
    conn = create_db(str(tmp_path / "test.db"))
    yield conn
    conn.close()


def _timed_invocation(conn, feature_id: str, minutes: int) -> None:
    invocation_id = start_invocation(conn, feature_id, "builder", "implement")
    conn.execute(
        "UPDATE agent_invocations SET started_at = datetime('now', ?) WHERE id = ?",
        (f"-{minutes} minutes", invocation_id),
    )
    conn.commit()
    end_invocation(conn, invocation_id)


@pytest.fixture
def troubled(db_conn):
    """A feature that ran long, thrashed, hit blockers and failed its gate."""
    create_feature(db_conn, "F002", "Migration", 1, "planner")
    _timed_invocation(db_conn, "F002", 200)
    record_iteration(db_conn, "F002", "reviewer", issues_found=5, thrashing=True)
    for n in range(4):
        create_blocker(db_conn, "F002", "VALIDATION_FAILED", "HIGH", f"Broken {n}", "builder")
    evaluate_gate(db_conn, "F002", "design_review", "REJECTED", "guardian")
    return "F002"


# ---------------------------------------------------------------------------
# Scoring rules
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("actual,expected,points", [
    (30, 60, 70),
    (60, 60, 70),
    (90, 60, 55),
    (120, 60, 35),
    (121, 60, 15),
])
def test_duration_points(actual, expected, points):
    assert duration_points(actual, expected) == points


@pytest.mark.parametrize("iterations,points", [(0, 30), (2, 30), (3, 25), (4, 15), (9, 5)])
def test_iteration_points(iterations, points):
    assert iteration_points(iterations) == points


@pytest.mark.parametrize("blockers,points", [(0, 30), (1, 20), (3, 10), (4, 0)])
def test_blocker_points(blockers, points):
    assert blocker_points(blockers) == points


def test_score_composition():
    assert efficiency_score(30, 60, 1) == 100
    assert quality_score(1, 2, 1, 0) == 65
    assert quality_score(0, 0, 0, 0) == 100
    assert quality_score(0, 1, 5, 2) == 0
    assert overall_score(100, 65) == pytest.approx(79.0)


@pytest.mark.parametrize("score,status", [
    (100, HealthStatus.HEALTHY),
    (70, HealthStatus.HEALTHY),
    (69.9, HealthStatus.CONCERNING),
    (50, HealthStatus.CONCERNING),
    (49.9, HealthStatus.CRITICAL),
])
def test_health_classification(score, status):
    assert HealthStatus.classify(score) is status


# ---------------------------------------------------------------------------
# Feature evals
# ---------------------------------------------------------------------------


def test_clean_completion_scores_full_marks(db_conn):
    create_feature(db_conn, "F001", "Search", 1, "planner")
    _timed_invocation(db_conn, "F001", 30)
    evaluate_gate(db_conn, "F001", "design_review", "APPROVED", "guardian")
    evaluate_gate(db_conn, "F001", "test_review", "APPROVED", "guardian")

    result = complete_feature(db_conn, "F001", "planner")
    evaluation = get_feature_eval(db_conn, result["eval_id"])

    assert evaluation.efficiency_score == 100
    assert evaluation.quality_score == 100
    assert evaluation.overall_score == 100
    assert evaluation.health_status is HealthStatus.HEALTHY
    assert evaluation.efficiency_breakdown["duration_source"] == "agent_invocations"
    assert evaluation.efficiency_breakdown["expected_duration_minutes"] == 60
    assert evaluation.efficiency_breakdown["actual_duration_minutes"] == pytest.approx(30, abs=0.2)
    assert evaluation.quality_breakdown["approvals"] == 2
    assert evaluation.quality_breakdown["approval_rate"] == 100
    assert evaluation.raw_metrics["feature_status"] == "COMPLETED"
    assert list_alerts(db_conn) == []


def test_wall_clock_fallback(db_conn):
    create_feature(db_conn, "F001", "Search", 2, "planner")
    eval_id = compute_feature_eval(db_conn, "F001", "evaluator")
    breakdown = get_feature_eval(db_conn, eval_id).efficiency_breakdown
    assert breakdown["duration_source"] == "wall_clock"
    assert breakdown["expected_duration_minutes"] == 180
    assert breakdown["agent_invocations"] == 0


def test_troubled_feature_raises_alerts(db_conn, troubled):
    eval_id = compute_feature_eval(db_conn, troubled, "evaluator")
    evaluation = get_feature_eval(db_conn, eval_id)

    assert evaluation.efficiency_score == 45
    assert evaluation.quality_score == 0
    assert evaluation.overall_score == pytest.approx(18.0)
    assert evaluation.health_status is HealthStatus.CRITICAL
    assert evaluation.quality_breakdown["rejections"] == 1
    assert evaluation.quality_breakdown["thrashing_incidents"] == 1

    alerts = {a.dimension: a for a in list_alerts(db_conn, feature_id=troubled)}
    assert set(alerts) == {"overall_score", "duration", "thrashing"}
    assert alerts["overall_score"].severity is AlertSeverity.CRITICAL
    assert alerts["duration"].severity is AlertSeverity.WARNING
    assert all(a.source_id == eval_id for a in alerts.values())


def test_evals_are_snapshots(db_conn):
    create_feature(db_conn, "F001", "Search", 1, "planner")
    first = compute_feature_eval(db_conn, "F001", "evaluator")
    second = compute_feature_eval(db_conn, "F001", "evaluator")

    assert first != second
    assert get_feature_eval(db_conn, first).id == first
    assert latest_feature_eval(db_conn, "F001").id == second
    assert latest_feature_eval(db_conn, "F404") is None


def test_eval_unknown_feature(db_conn):
    with pytest.raises(NotFoundError):
        compute_feature_eval(db_conn, "NOPE", "evaluator")


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


def test_acknowledge_and_resolve_once(db_conn, troubled):
    compute_feature_eval(db_conn, troubled, "evaluator")
    alert = list_alerts(db_conn)[0]

    assert acknowledge_alert(db_conn, alert.id, "lead") is True
    assert acknowledge_alert(db_conn, alert.id, "someone") is False
    assert get_alert(db_conn, alert.id).acknowledged_by == "lead"

    assert resolve_alert(db_conn, alert.id, "lead", "Root cause fixed") is True
    assert resolve_alert(db_conn, alert.id, "lead") is False
    resolved = get_alert(db_conn, alert.id)
    assert resolved.resolution_notes == "Root cause fixed"

    assert alert.id not in [a.id for a in list_alerts(db_conn)]
    assert alert.id in [a.id for a in list_alerts(db_conn, active_only=False)]


def test_unknown_alert(db_conn):
    with pytest.raises(NotFoundError):
        acknowledge_alert(db_conn, "missing", "lead")
    with pytest.raises(NotFoundError):
        resolve_alert(db_conn, "missing", "lead")


# ---------------------------------------------------------------------------
# System health
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("period", [0, 14, 365])
def test_system_health_rejects_period(db_conn, period):
    with pytest.raises(InvariantViolationError):
        compute_system_health(db_conn, period, "evaluator")


def test_system_health_empty(db_conn):
    assert latest_system_health(db_conn) is None
    eval_id = compute_system_health(db_conn, 7, "evaluator")
    health = latest_system_health(db_conn)

    assert health.id == eval_id
    assert health.overall_score == 85
    assert health.health_status is HealthStatus.HEALTHY
    assert health.alerts == []
    assert list_alerts(db_conn) == []


def test_system_health_concerning(db_conn):
    create_feature(db_conn, "F001", "Search", 1, "planner")
    create_feature(db_conn, "F002", "Reports", 1, "planner")
    create_blocker(db_conn, "F002", "HUMAN_DECISION_REQUIRED", "MEDIUM", "Pick a vendor", "builder")
    record_iteration(db_conn, "F001", "reviewer", issues_found=3, thrashing=True)

    eval_id = compute_system_health(db_conn, 30, "evaluator")
    health = latest_system_health(db_conn, 30)

    assert health.id == eval_id
    assert health.overall_score == 50
    assert health.health_status is HealthStatus.CONCERNING
    assert health.workflow_metrics["features_blocked"] == 1
    assert health.workflow_metrics["features_in_progress"] == 1
    assert health.quality_metrics["thrashing_rate"] == 100
    assert [a["dimension"] for a in health.alerts] == ["thrashing_rate"]

    system_alerts = [a for a in list_alerts(db_conn) if a.source_type == "system"]
    assert len(system_alerts) == 1
    assert system_alerts[0].severity is AlertSeverity.WARNING
    assert latest_system_health(db_conn, 90) is None
