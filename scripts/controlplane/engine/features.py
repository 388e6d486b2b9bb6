#!/usr/bin/env python3
# Ticket: 0091_workflow_control_plane
# Design: DESIGN.md
"""
Control Plane Feature Registry

Owns the canonical record for each feature (identity, complexity, current
phase, status) and applies phase transitions decided by state_machine.py.

Every mutation runs in one write_transaction(): the feature row update, the
phase_transitions row and the audit entry are committed together or not at
all. Preconditions (current phase, open blocker count) are read inside the
same transaction so two concurrent callers cannot both act on a stale view.
"""

import logging
import sqlite3
from dataclasses import asdict
from typing import Any

from . import audit
from .errors import CollisionError, InvariantViolationError, NotFoundError
from .models import (
    UNRESOLVED_BLOCKER_STATUSES,
    Feature,
    FeatureStatus,
    Phase,
    PhaseTransition,
    SeverityTier,
    TransitionKind,
)
from .schema import write_transaction
from .state_machine import classify_transition, parse_phase

logger = logging.getLogger(__name__)

_UNRESOLVED_SQL = ", ".join(f"'{s.value}'" for s in UNRESOLVED_BLOCKER_STATUSES)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def get_feature(conn: sqlite3.Connection, feature_id: str) -> Feature:
    """Return the feature or raise NotFoundError."""
    row = conn.execute("SELECT * FROM features WHERE id = ?", (feature_id,)).fetchone()
    if row is None:
        raise NotFoundError("feature", feature_id)
    return Feature.from_row(row)


def list_features(
    conn: sqlite3.Connection,
    status: str | FeatureStatus | None = None,
) -> list[Feature]:
    """List features, newest first, optionally filtered by status."""
    if status is not None:
        rows = conn.execute(
            "SELECT * FROM features WHERE status = ? ORDER BY created_at DESC, id",
            (FeatureStatus(status).value,),
        ).fetchall()
    else:
        rows = conn.execute("SELECT * FROM features ORDER BY created_at DESC, id").fetchall()
    return [Feature.from_row(r) for r in rows]


def get_transitions(conn: sqlite3.Connection, feature_id: str) -> list[PhaseTransition]:
    """Return the feature's phase history in the order it happened."""
    get_feature(conn, feature_id)
    rows = conn.execute(
        "SELECT * FROM phase_transitions WHERE feature_id = ? ORDER BY id",
        (feature_id,),
    ).fetchall()
    return [PhaseTransition.from_row(r) for r in rows]


def count_unresolved_blockers(conn: sqlite3.Connection, feature_id: str) -> int:
    return conn.execute(
        f"SELECT COUNT(*) FROM blockers WHERE feature_id = ? AND status IN ({_UNRESOLVED_SQL})",
        (feature_id,),
    ).fetchone()[0]


def _insert_transition(
    conn: sqlite3.Connection,
    feature_id: str,
    from_phase: Phase,
    to_phase: Phase,
    kind: TransitionKind,
    actor: str,
    note: str | None,
) -> PhaseTransition:
    cursor = conn.execute(
        """
        INSERT INTO phase_transitions (feature_id, from_phase, to_phase, kind, actor, note)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (feature_id, from_phase.value, to_phase.value, kind.value, actor, note),
    )
    row = conn.execute(
        "SELECT * FROM phase_transitions WHERE id = ?", (cursor.lastrowid,)
    ).fetchone()
    return PhaseTransition.from_row(row)


def _release_locks(conn: sqlite3.Connection, feature_id: str) -> list[str]:
    rows = conn.execute(
        "DELETE FROM locks WHERE feature_id = ? RETURNING path", (feature_id,)
    ).fetchall()
    return sorted(r["path"] for r in rows)


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def create_feature(
    conn: sqlite3.Connection,
    feature_id: str,
    name: str,
    complexity_level: int,
    actor: str,
    severity: str | SeverityTier = SeverityTier.ROUTINE,
    epic_id: str | None = None,
    parent_feature_id: str | None = None,
) -> Feature:
    """
    Register a new feature at phase "0" with status IN_PROGRESS.

    Also records the initial 0 → 0 FORWARD transition so the phase history
    starts at creation time.

    Raises:
        InvariantViolationError: complexity_level outside 1-3, empty id
        CollisionError: a feature with this id already exists
        NotFoundError: parent_feature_id does not exist
    """
    if not feature_id or not feature_id.strip():
        raise InvariantViolationError("Feature id must be a non-empty string")
    if complexity_level not in (1, 2, 3):
        raise InvariantViolationError(
            f"Complexity level must be 1, 2 or 3, got {complexity_level!r}"
        )
    severity = SeverityTier(severity)

    with write_transaction(conn):
        existing = conn.execute(
            "SELECT 1 FROM features WHERE id = ?", (feature_id,)
        ).fetchone()
        if existing is not None:
            raise CollisionError(f"Feature '{feature_id}' already exists")
        if parent_feature_id is not None:
            get_feature(conn, parent_feature_id)

        conn.execute(
            """
            INSERT INTO features (id, name, complexity_level, severity, epic_id, parent_feature_id)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (feature_id, name, complexity_level, severity.value, epic_id, parent_feature_id),
        )
        _insert_transition(
            conn, feature_id, Phase.PLANNING, Phase.PLANNING,
            TransitionKind.FORWARD, actor, "Feature created",
        )
        audit.log(
            conn,
            actor=actor,
            action="create_feature",
            entity_type="feature",
            entity_id=feature_id,
            feature_id=feature_id,
            new_state=FeatureStatus.IN_PROGRESS.value,
            details={
                "name": name,
                "complexity_level": complexity_level,
                "severity": severity.value,
                "epic_id": epic_id,
                "parent_feature_id": parent_feature_id,
            },
        )

    logger.info("Created feature %s (complexity %d)", feature_id, complexity_level)
    return get_feature(conn, feature_id)


# ---------------------------------------------------------------------------
# Phase transitions
# ---------------------------------------------------------------------------


def _apply_transition(
    conn: sqlite3.Connection,
    feature_id: str,
    target_phase: str | int | Phase,
    actor: str,
    note: str | None,
    escalation: bool,
) -> PhaseTransition:
    target = parse_phase(target_phase)

    with write_transaction(conn):
        feature = get_feature(conn, feature_id)
        if feature.is_terminal:
            raise InvariantViolationError(
                f"Feature '{feature_id}' is {feature.status.value}; "
                f"terminal features cannot change phase"
            )

        kind = classify_transition(feature.current_phase, target, feature_id)
        if escalation:
            kind = TransitionKind.ESCALATION

        conn.execute(
            "UPDATE features SET current_phase = ?, updated_at = datetime('now') WHERE id = ?",
            (target.value, feature_id),
        )
        transition = _insert_transition(
            conn, feature_id, feature.current_phase, target, kind, actor, note,
        )
        audit.log(
            conn,
            actor=actor,
            action="escalate_phase" if escalation else "transition_phase",
            entity_type="feature",
            entity_id=feature_id,
            feature_id=feature_id,
            old_state=feature.current_phase.value,
            new_state=target.value,
            details={"kind": kind.value, "note": note, "transition_id": transition.id},
        )

    logger.info(
        "Feature %s phase %s -> %s (%s)",
        feature_id, feature.current_phase.display, target.display, kind.value,
    )
    return transition


def transition_phase(
    conn: sqlite3.Connection,
    feature_id: str,
    target_phase: str | int | Phase,
    actor: str,
    note: str | None = None,
) -> PhaseTransition:
    """
    Move a feature to target_phase.

    Same phase or the next phase is FORWARD, any earlier phase is BACKWARD
    (rework). Skipping ahead raises PhaseSkipError naming both phases.

    Raises:
        NotFoundError: unknown feature
        PhaseSkipError: target is more than one phase ahead
        UnknownPhaseError: target is not "0".."8"
        InvariantViolationError: feature is COMPLETED or CANCELLED
    """
    return _apply_transition(conn, feature_id, target_phase, actor, note, escalation=False)


def escalate_phase(
    conn: sqlite3.Connection,
    feature_id: str,
    target_phase: str | int | Phase,
    actor: str,
    note: str | None = None,
) -> PhaseTransition:
    """Record a human-escalated phase move (kind ESCALATION), same skip rule."""
    return _apply_transition(conn, feature_id, target_phase, actor, note, escalation=True)


# ---------------------------------------------------------------------------
# Completion / cancellation
# ---------------------------------------------------------------------------


def complete_feature(
    conn: sqlite3.Connection,
    feature_id: str,
    actor: str,
) -> dict[str, Any]:
    """
    Complete a feature and compute its evaluation.

    Requires zero unresolved blockers. Forces the phase to "8", appends a final
    FORWARD transition, releases the feature's locks and writes a FeatureEval
    snapshot, all in one transaction.

    Returns:
        {"feature": Feature, "eval_id": str, "released_locks": [paths]}
    """
    from .evaluation import record_feature_eval

    with write_transaction(conn):
        feature = get_feature(conn, feature_id)
        if feature.is_terminal:
            raise InvariantViolationError(
                f"Feature '{feature_id}' is already {feature.status.value}"
            )

        open_blockers = count_unresolved_blockers(conn, feature_id)
        if open_blockers > 0:
            raise InvariantViolationError(
                f"Cannot complete feature '{feature_id}': {open_blockers} unresolved "
                f"blocker(s). All blockers must be resolved before completion."
            )

        conn.execute(
            """
            UPDATE features
            SET status = 'COMPLETED',
                current_phase = ?,
                completed_at = datetime('now'),
                updated_at = datetime('now')
            WHERE id = ?
            """,
            (Phase.COMPLETE.value, feature_id),
        )
        _insert_transition(
            conn, feature_id, feature.current_phase, Phase.COMPLETE,
            TransitionKind.FORWARD, actor, "Feature completed",
        )
        released = _release_locks(conn, feature_id)
        eval_id = record_feature_eval(conn, feature_id, actor)
        audit.log(
            conn,
            actor=actor,
            action="complete_feature",
            entity_type="feature",
            entity_id=feature_id,
            feature_id=feature_id,
            old_state=feature.status.value,
            new_state=FeatureStatus.COMPLETED.value,
            details={
                "from_phase": feature.current_phase.value,
                "eval_id": eval_id,
                "released_locks": released,
            },
        )

    logger.info("Completed feature %s (eval %s)", feature_id, eval_id)
    return {
        "feature": get_feature(conn, feature_id),
        "eval_id": eval_id,
        "released_locks": released,
    }


def cancel_feature(
    conn: sqlite3.Connection,
    feature_id: str,
    actor: str,
    reason: str | None = None,
) -> Feature:
    """Terminate a feature as CANCELLED and release its locks. Rows are kept."""
    with write_transaction(conn):
        feature = get_feature(conn, feature_id)
        if feature.is_terminal:
            raise InvariantViolationError(
                f"Feature '{feature_id}' is already {feature.status.value}"
            )
        conn.execute(
            "UPDATE features SET status = 'CANCELLED', updated_at = datetime('now') WHERE id = ?",
            (feature_id,),
        )
        released = _release_locks(conn, feature_id)
        audit.log(
            conn,
            actor=actor,
            action="cancel_feature",
            entity_type="feature",
            entity_id=feature_id,
            feature_id=feature_id,
            old_state=feature.status.value,
            new_state=FeatureStatus.CANCELLED.value,
            details={"reason": reason, "released_locks": released},
        )

    logger.info("Cancelled feature %s", feature_id)
    return get_feature(conn, feature_id)


# ---------------------------------------------------------------------------
# Aggregated status
# ---------------------------------------------------------------------------


def get_feature_status(conn: sqlite3.Connection, feature_id: str) -> dict[str, Any]:
    """
    Full feature status with aggregated counts and durations.

    Returns the feature fields plus:
        total_duration_ms, phase_count, total_transitions, open_blockers,
        total_blockers, gates_approved, gates_rejected, total_learnings,
        active_invocations, active_locks, open_conflicts,
        agent_ms_by_phase ({phase: ms})
    """
    feature = get_feature(conn, feature_id)

    transitions = conn.execute(
        """
        SELECT COUNT(*) AS total, COUNT(DISTINCT to_phase) AS phases
        FROM phase_transitions WHERE feature_id = ?
        """,
        (feature_id,),
    ).fetchone()

    invocations = conn.execute(
        """
        SELECT COALESCE(SUM(duration_ms), 0) AS total_ms,
               SUM(CASE WHEN ended_at IS NULL THEN 1 ELSE 0 END) AS active
        FROM agent_invocations WHERE feature_id = ?
        """,
        (feature_id,),
    ).fetchone()

    by_phase = conn.execute(
        """
        SELECT phase, COALESCE(SUM(duration_ms), 0) AS total_ms
        FROM agent_invocations
        WHERE feature_id = ? AND ended_at IS NOT NULL
        GROUP BY phase ORDER BY phase
        """,
        (feature_id,),
    ).fetchall()

    gates = conn.execute(
        """
        SELECT SUM(CASE WHEN status = 'APPROVED' THEN 1 ELSE 0 END) AS approved,
               SUM(CASE WHEN status = 'REJECTED' THEN 1 ELSE 0 END) AS rejected
        FROM quality_gates WHERE feature_id = ?
        """,
        (feature_id,),
    ).fetchone()

    def _count(sql: str, params: tuple) -> int:
        return conn.execute(sql, params).fetchone()[0]

    status = asdict(feature)
    status.update({
        "total_duration_ms": invocations["total_ms"],
        "phase_count": transitions["phases"],
        "total_transitions": transitions["total"],
        "open_blockers": count_unresolved_blockers(conn, feature_id),
        "total_blockers": _count("SELECT COUNT(*) FROM blockers WHERE feature_id = ?", (feature_id,)),
        "gates_approved": gates["approved"] or 0,
        "gates_rejected": gates["rejected"] or 0,
        "total_learnings": _count("SELECT COUNT(*) FROM learnings WHERE feature_id = ?", (feature_id,)),
        "active_invocations": invocations["active"] or 0,
        "active_locks": _count("SELECT COUNT(*) FROM locks WHERE feature_id = ?", (feature_id,)),
        "open_conflicts": _count(
            """
            SELECT COUNT(*) FROM feature_conflicts
            WHERE (feature_a_id = ? OR feature_b_id = ?) AND status != 'RESOLVED'
            """,
            (feature_id, feature_id),
        ),
        "agent_ms_by_phase": {r["phase"]: r["total_ms"] for r in by_phase},
    })
    return status
