#!/usr/bin/env python3
# Ticket: 0091_workflow_control_plane
# Design: DESIGN.md
"""
Control Plane Evaluation Engine

Scores completed (or in-flight) features and the workflow as a whole, and
raises alerts when scores cross thresholds.

Feature eval (0-100 each):
- efficiency = duration part + rework part
- quality    = gate approval part + blocker part + thrashing part
- overall    = 0.4 * efficiency + 0.6 * quality

Actual duration prefers the summed agent invocation time; features without
ended invocations fall back to wall clock time since creation.

System health sums four parts (throughput, iterations, thrashing rate,
blocked ratio) over a 7, 30 or 90 day window.

Every eval is an immutable snapshot; recomputing inserts a new row. Alerts
are acknowledged and resolved at most once each.
"""

import json
import logging
import sqlite3
import uuid
from typing import Any

from . import audit
from .errors import InvariantViolationError, NotFoundError
from .features import get_feature
from .iterations import rework_iterations, thrashing_count
from .models import (
    OPEN_LEARNING_CONFLICT_STATUSES,
    Alert,
    AlertSeverity,
    FeatureEval,
    HealthStatus,
    SystemHealthEval,
)
from .schema import write_transaction

logger = logging.getLogger(__name__)

EXPECTED_MINUTES = {1: 60, 2: 180, 3: 480}
DEFAULT_EXPECTED_MINUTES = 180
VALID_PERIODS = (7, 30, 90)

CRITICAL_SCORE = 50
HEALTHY_SCORE = 70
THRASHING_RATE_LIMIT = 15

_OPEN_CONFLICT_SQL = ", ".join(f"'{s.value}'" for s in OPEN_LEARNING_CONFLICT_STATUSES)


def _clamp(score: float) -> float:
    return round(max(0.0, min(100.0, score)), 2)


# ---------------------------------------------------------------------------
# Scoring rules
# ---------------------------------------------------------------------------


def duration_points(actual_minutes: float, expected_minutes: float) -> int:
    if actual_minutes <= expected_minutes:
        return 70
    if actual_minutes <= expected_minutes * 1.5:
        return 55
    if actual_minutes <= expected_minutes * 2:
        return 35
    return 15


def iteration_points(iterations: int) -> int:
    if iterations <= 2:
        return 30
    if iterations <= 3:
        return 25
    if iterations <= 4:
        return 15
    return 5


def blocker_points(blocker_count: int) -> int:
    if blocker_count == 0:
        return 30
    if blocker_count == 1:
        return 20
    if blocker_count <= 3:
        return 10
    return 0


def efficiency_score(actual_minutes: float, expected_minutes: float, iterations: int) -> float:
    return _clamp(duration_points(actual_minutes, expected_minutes) + iteration_points(iterations))


def quality_score(approvals: int, total_gates: int, blocker_count: int, thrashing: int) -> float:
    gate_part = 50.0 if total_gates == 0 else approvals / total_gates * 50
    thrashing_part = 20 if thrashing == 0 else 0
    return _clamp(gate_part + blocker_points(blocker_count) + thrashing_part)


def overall_score(efficiency: float, quality: float) -> float:
    return round(efficiency * 0.4 + quality * 0.6, 2)


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


def _insert_alert(
    conn: sqlite3.Connection,
    severity: AlertSeverity,
    dimension: str,
    message: str,
    current_value: float,
    threshold: float,
    source_type: str,
    source_id: str,
    feature_id: str | None = None,
) -> str:
    alert_id = str(uuid.uuid4())
    conn.execute(
        """
        INSERT INTO eval_alerts (id, severity, dimension, message, current_value, threshold,
                                 source_type, source_id, feature_id)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            alert_id, severity.value, dimension, message, current_value, threshold,
            source_type, source_id, feature_id,
        ),
    )
    logger.warning("%s alert on %s %s: %s", severity.value, source_type, source_id, message)
    return alert_id


def get_alert(conn: sqlite3.Connection, alert_id: str) -> Alert:
    row = conn.execute("SELECT * FROM eval_alerts WHERE id = ?", (alert_id,)).fetchone()
    if row is None:
        raise NotFoundError("alert", alert_id)
    return Alert.from_row(row)


def list_alerts(
    conn: sqlite3.Connection,
    active_only: bool = True,
    feature_id: str | None = None,
) -> list[Alert]:
    """Alerts newest first; active means not yet resolved."""
    conditions: list[str] = []
    params: list[Any] = []
    if active_only:
        conditions.append("resolved_at IS NULL")
    if feature_id is not None:
        conditions.append("feature_id = ?")
        params.append(feature_id)

    where_clause = "WHERE " + " AND ".join(conditions) if conditions else ""
    rows = conn.execute(
        f"SELECT * FROM eval_alerts {where_clause} ORDER BY created_at DESC, rowid DESC",
        params,
    ).fetchall()
    return [Alert.from_row(r) for r in rows]


def acknowledge_alert(conn: sqlite3.Connection, alert_id: str, actor: str) -> bool:
    """Acknowledge an alert. Returns False if it was already acknowledged."""
    with write_transaction(conn):
        get_alert(conn, alert_id)
        cursor = conn.execute(
            """
            UPDATE eval_alerts
            SET acknowledged_at = datetime('now'), acknowledged_by = ?
            WHERE id = ? AND acknowledged_at IS NULL
            """,
            (actor, alert_id),
        )
        changed = cursor.rowcount == 1
        if changed:
            audit.log(
                conn,
                actor=actor,
                action="acknowledge_alert",
                entity_type="alert",
                entity_id=alert_id,
                new_state="acknowledged",
            )
    return changed


def resolve_alert(
    conn: sqlite3.Connection,
    alert_id: str,
    actor: str,
    notes: str | None = None,
) -> bool:
    """Resolve an alert. Returns False if it was already resolved."""
    with write_transaction(conn):
        get_alert(conn, alert_id)
        cursor = conn.execute(
            """
            UPDATE eval_alerts
            SET resolved_at = datetime('now'), resolved_by = ?, resolution_notes = ?
            WHERE id = ? AND resolved_at IS NULL
            """,
            (actor, notes, alert_id),
        )
        changed = cursor.rowcount == 1
        if changed:
            audit.log(
                conn,
                actor=actor,
                action="resolve_alert",
                entity_type="alert",
                entity_id=alert_id,
                new_state="resolved",
                details={"notes": notes} if notes else None,
            )
    return changed


# ---------------------------------------------------------------------------
# Feature evals
# ---------------------------------------------------------------------------


def record_feature_eval(conn: sqlite3.Connection, feature_id: str, actor: str) -> str:
    """
    Compute and insert a FeatureEval snapshot plus its alerts.

    Runs inside the caller's transaction (complete_feature uses it that way);
    compute_feature_eval() is the standalone entry point.
    """
    feature = get_feature(conn, feature_id)
    expected = EXPECTED_MINUTES.get(feature.complexity_level, DEFAULT_EXPECTED_MINUTES)

    duration = conn.execute(
        """
        SELECT COALESCE(SUM(duration_ms), 0) AS total_ms, COUNT(*) AS invocations
        FROM agent_invocations
        WHERE feature_id = ? AND ended_at IS NOT NULL
        """,
        (feature_id,),
    ).fetchone()
    wall_clock = conn.execute(
        """
        SELECT (julianday(COALESCE(completed_at, datetime('now'))) - julianday(created_at)) * 1440
        FROM features WHERE id = ?
        """,
        (feature_id,),
    ).fetchone()[0] or 0.0

    if duration["total_ms"] > 0:
        actual = duration["total_ms"] / 60000.0
        source = "agent_invocations"
    else:
        actual = max(0.0, wall_clock)
        source = "wall_clock"

    gates = conn.execute(
        """
        SELECT SUM(CASE WHEN status = 'APPROVED' THEN 1 ELSE 0 END) AS approvals,
               SUM(CASE WHEN status = 'REJECTED' THEN 1 ELSE 0 END) AS rejections,
               COUNT(*) AS total
        FROM quality_gates WHERE feature_id = ?
        """,
        (feature_id,),
    ).fetchone()
    approvals = gates["approvals"] or 0
    rejections = gates["rejections"] or 0
    total_gates = gates["total"]

    blocker_count = conn.execute(
        "SELECT COUNT(*) FROM blockers WHERE feature_id = ?", (feature_id,)
    ).fetchone()[0]
    iterations = rework_iterations(conn, feature_id)
    thrashing = thrashing_count(conn, feature_id)

    learnings = conn.execute(
        """
        SELECT COUNT(*) AS total,
               SUM(CASE WHEN confidence >= 0.80 THEN 1 ELSE 0 END) AS high_confidence,
               SUM(CASE WHEN propagated_to != '[]' OR EXISTS (
                       SELECT 1 FROM propagation_records r WHERE r.learning_id = learnings.id
                   ) THEN 1 ELSE 0 END) AS propagated
        FROM learnings WHERE feature_id = ?
        """,
        (feature_id,),
    ).fetchone()

    efficiency = efficiency_score(actual, expected, iterations)
    quality = quality_score(approvals, total_gates, blocker_count, thrashing)
    overall = overall_score(efficiency, quality)
    health = HealthStatus.classify(overall)

    eval_id = str(uuid.uuid4())
    computed_at = conn.execute("SELECT datetime('now')").fetchone()[0]
    efficiency_breakdown = {
        "actual_duration_minutes": round(actual, 1),
        "expected_duration_minutes": expected,
        "duration_ratio": round(actual / expected, 2),
        "wall_clock_minutes": round(max(0.0, wall_clock), 1),
        "total_agent_duration_ms": duration["total_ms"],
        "agent_invocations": duration["invocations"],
        "iterations": iterations,
        "duration_source": source,
    }
    quality_breakdown = {
        "approvals": approvals,
        "rejections": rejections,
        "total_gates": total_gates,
        "approval_rate": round(approvals / total_gates * 100, 1) if total_gates else 100,
        "thrashing_incidents": thrashing,
        "blocker_count": blocker_count,
    }
    learning_metrics = {
        "total_learnings": learnings["total"],
        "high_confidence": learnings["high_confidence"] or 0,
        "propagated": learnings["propagated"] or 0,
    }
    raw_metrics = {
        "computed_at": computed_at,
        "feature_status": feature.status.value,
        "feature_phase": feature.current_phase.value,
    }

    conn.execute(
        """
        INSERT INTO feature_evals (
            id, feature_id, efficiency_score, quality_score, overall_score, health_status,
            efficiency_breakdown, quality_breakdown, learning_metrics, raw_metrics, computed_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            eval_id, feature_id, efficiency, quality, overall, health.value,
            json.dumps(efficiency_breakdown), json.dumps(quality_breakdown),
            json.dumps(learning_metrics), json.dumps(raw_metrics), computed_at,
        ),
    )

    if overall < CRITICAL_SCORE:
        _insert_alert(
            conn, AlertSeverity.CRITICAL, "overall_score", "Feature health is critical",
            overall, CRITICAL_SCORE, "feature", eval_id, feature_id,
        )
    elif overall < HEALTHY_SCORE:
        _insert_alert(
            conn, AlertSeverity.WARNING, "overall_score", "Feature health is concerning",
            overall, HEALTHY_SCORE, "feature", eval_id, feature_id,
        )
    if actual > expected * 2:
        _insert_alert(
            conn, AlertSeverity.WARNING, "duration",
            "Feature duration significantly exceeds expectation",
            round(actual, 1), expected * 2, "feature", eval_id, feature_id,
        )
    if thrashing > 0:
        _insert_alert(
            conn, AlertSeverity.WARNING, "thrashing", "Spec thrashing detected",
            thrashing, 0, "feature", eval_id, feature_id,
        )

    audit.log(
        conn,
        actor=actor,
        action="compute_feature_eval",
        entity_type="feature_eval",
        entity_id=eval_id,
        feature_id=feature_id,
        new_state=health.value,
        details={"efficiency": efficiency, "quality": quality, "overall": overall},
    )
    logger.info(
        "Feature %s eval %s: overall %.1f (%s)", feature_id, eval_id, overall, health.value,
    )
    return eval_id


def compute_feature_eval(conn: sqlite3.Connection, feature_id: str, actor: str) -> str:
    """Compute a fresh FeatureEval snapshot. Returns the eval id."""
    with write_transaction(conn):
        return record_feature_eval(conn, feature_id, actor)


def get_feature_eval(conn: sqlite3.Connection, eval_id: str) -> FeatureEval:
    row = conn.execute("SELECT * FROM feature_evals WHERE id = ?", (eval_id,)).fetchone()
    if row is None:
        raise NotFoundError("feature eval", eval_id)
    return FeatureEval.from_row(row)


def latest_feature_eval(conn: sqlite3.Connection, feature_id: str) -> FeatureEval | None:
    row = conn.execute(
        """
        SELECT * FROM feature_evals WHERE feature_id = ?
        ORDER BY computed_at DESC, rowid DESC LIMIT 1
        """,
        (feature_id,),
    ).fetchone()
    return FeatureEval.from_row(row) if row else None


# ---------------------------------------------------------------------------
# System health
# ---------------------------------------------------------------------------


def _throughput_points(completed: int, in_progress: int) -> int:
    if completed > 0:
        return 30
    if in_progress > 0:
        return 20
    return 15


def _avg_iteration_points(avg_iterations: float) -> int:
    if avg_iterations <= 2:
        return 25
    if avg_iterations <= 3:
        return 20
    if avg_iterations <= 4:
        return 10
    return 5


def _thrashing_rate_points(rate: float) -> int:
    if rate <= 5:
        return 20
    if rate <= 15:
        return 10
    return 0


def _blocked_ratio_points(in_progress: int, blocked: int) -> int:
    if in_progress == 0:
        return 25
    ratio = blocked / (in_progress + blocked) * 100
    if ratio <= 10:
        return 25
    if ratio <= 25:
        return 15
    return 5


def compute_system_health(conn: sqlite3.Connection, period_days: int, actor: str) -> str:
    """
    Compute a SystemHealthEval snapshot over the last period_days.

    Raises:
        InvariantViolationError: period_days is not 7, 30 or 90
    """
    if period_days not in VALID_PERIODS:
        raise InvariantViolationError(
            f"period_days must be one of {', '.join(str(p) for p in VALID_PERIODS)}, got {period_days}"
        )
    window = f"-{period_days} days"

    with write_transaction(conn):
        period_start = conn.execute("SELECT datetime('now', ?)", (window,)).fetchone()[0]

        workflow = conn.execute(
            """
            SELECT SUM(CASE WHEN status = 'COMPLETED' AND completed_at >= :start THEN 1 ELSE 0 END) AS completed,
                   SUM(CASE WHEN status = 'BLOCKED' THEN 1 ELSE 0 END) AS blocked,
                   SUM(CASE WHEN status = 'IN_PROGRESS' THEN 1 ELSE 0 END) AS in_progress,
                   AVG(CASE WHEN status = 'COMPLETED' AND completed_at >= :start
                            THEN (julianday(completed_at) - julianday(created_at)) * 24 END) AS avg_cycle_hours
            FROM features
            """,
            {"start": period_start},
        ).fetchone()
        completed = workflow["completed"] or 0
        blocked = workflow["blocked"] or 0
        in_progress = workflow["in_progress"] or 0

        invocations = conn.execute(
            """
            SELECT COALESCE(AVG(duration_ms), 0) AS avg_ms,
                   COALESCE(SUM(duration_ms), 0) AS total_ms,
                   COUNT(DISTINCT feature_id) AS features
            FROM agent_invocations
            WHERE started_at >= ? AND ended_at IS NOT NULL
            """,
            (period_start,),
        ).fetchone()

        iterations = conn.execute(
            """
            SELECT AVG(iteration_number) AS avg_iterations,
                   SUM(thrashing_detected) * 100.0 / COUNT(*) AS thrashing_rate
            FROM iteration_tracking
            WHERE recorded_at >= ?
            """,
            (period_start,),
        ).fetchone()
        avg_iterations = iterations["avg_iterations"] if iterations["avg_iterations"] is not None else 1.0
        thrashing_rate = iterations["thrashing_rate"] or 0.0

        learnings = conn.execute(
            """
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN confidence >= 0.80 THEN 1 ELSE 0 END) AS high_confidence
            FROM learnings WHERE created_at >= ?
            """,
            (period_start,),
        ).fetchone()
        open_conflicts = conn.execute(
            f"SELECT COUNT(*) FROM learning_conflicts WHERE status IN ({_OPEN_CONFLICT_SQL})"
        ).fetchone()[0]

        score = _clamp(
            _throughput_points(completed, in_progress)
            + _avg_iteration_points(avg_iterations)
            + _thrashing_rate_points(thrashing_rate)
            + _blocked_ratio_points(in_progress, blocked)
        )
        health = HealthStatus.classify(score)

        alerts: list[dict[str, Any]] = []
        if score < CRITICAL_SCORE:
            alerts.append({
                "severity": AlertSeverity.CRITICAL.value, "dimension": "overall_health",
                "message": "System health is critical",
                "current_value": score, "threshold": CRITICAL_SCORE,
            })
        if thrashing_rate > THRASHING_RATE_LIMIT:
            alerts.append({
                "severity": AlertSeverity.CRITICAL.value, "dimension": "thrashing_rate",
                "message": "High thrashing rate detected",
                "current_value": round(thrashing_rate, 1), "threshold": THRASHING_RATE_LIMIT,
            })
        if open_conflicts > 0:
            alerts.append({
                "severity": AlertSeverity.WARNING.value, "dimension": "learning_conflicts",
                "message": "Open learning conflicts require attention",
                "current_value": open_conflicts, "threshold": 0,
            })

        workflow_metrics = {
            "features_completed": completed,
            "features_blocked": blocked,
            "features_in_progress": in_progress,
            "avg_cycle_time_hours": round(workflow["avg_cycle_hours"] or 0.0, 1),
            "avg_invocation_ms": round(invocations["avg_ms"], 1),
            "total_duration_ms": invocations["total_ms"],
            "features_with_invocations": invocations["features"],
        }
        quality_metrics = {
            "avg_iterations_to_approval": round(avg_iterations, 1),
            "thrashing_rate": round(thrashing_rate, 1),
        }
        learning_metrics = {
            "total_learnings": learnings["total"],
            "high_confidence_learnings": learnings["high_confidence"] or 0,
            "open_conflicts": open_conflicts,
        }

        eval_id = str(uuid.uuid4())
        conn.execute(
            """
            INSERT INTO system_health_evals (
                id, period_days, overall_score, health_status,
                workflow_metrics, quality_metrics, learning_metrics, alerts
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                eval_id, period_days, score, health.value,
                json.dumps(workflow_metrics), json.dumps(quality_metrics),
                json.dumps(learning_metrics), json.dumps(alerts),
            ),
        )

        if health is HealthStatus.CRITICAL:
            _insert_alert(
                conn, AlertSeverity.CRITICAL, "system_health", "System health is critical",
                score, CRITICAL_SCORE, "system", eval_id,
            )
        elif health is HealthStatus.CONCERNING:
            _insert_alert(
                conn, AlertSeverity.WARNING, "system_health", "System health is concerning",
                score, HEALTHY_SCORE, "system", eval_id,
            )

        audit.log(
            conn,
            actor=actor,
            action="compute_system_health",
            entity_type="system_health_eval",
            entity_id=eval_id,
            new_state=health.value,
            details={"period_days": period_days, "overall_score": score},
        )

    logger.info("System health (%d days): %.1f (%s)", period_days, score, health.value)
    return eval_id


def get_system_health(conn: sqlite3.Connection, eval_id: str) -> SystemHealthEval:
    row = conn.execute("SELECT * FROM system_health_evals WHERE id = ?", (eval_id,)).fetchone()
    if row is None:
        raise NotFoundError("system health eval", eval_id)
    return SystemHealthEval.from_row(row)


def latest_system_health(
    conn: sqlite3.Connection,
    period_days: int | None = None,
) -> SystemHealthEval | None:
    sql = "SELECT * FROM system_health_evals"
    params: list[Any] = []
    if period_days is not None:
        sql += " WHERE period_days = ?"
        params.append(period_days)
    row = conn.execute(sql + " ORDER BY computed_at DESC, rowid DESC LIMIT 1", params).fetchone()
    return SystemHealthEval.from_row(row) if row else None
