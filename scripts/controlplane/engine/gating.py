#!/usr/bin/env python3
# Ticket: 0091_workflow_control_plane
# Design: DESIGN.md
"""
Control Plane Gating Subsystem

Blockers: open issues that force a feature into BLOCKED. Creating a blocker
always sets the feature to BLOCKED. Resolving one recounts the feature's
unresolved blockers inside the same BEGIN IMMEDIATE transaction and, when the
count reaches zero, returns the feature to IN_PROGRESS. The recount and the
status change are a single conditional UPDATE, so two simultaneous
resolutions serialize on the write lock and only the one that actually
clears the last blocker flips the status.

Quality gates: approve/reject checkpoints. Each evaluation inserts a new row
keyed by (feature, gate name, phase, attempt) where attempt is the number of
times the feature has entered its current phase. A second evaluation of the
same gate within one phase visit is a CollisionError; re-entering the phase
(rework or re-run) opens a new occasion.
"""

import logging
import sqlite3
from typing import Any

from . import audit
from .errors import CollisionError, InvariantViolationError, NotFoundError
from .features import count_unresolved_blockers, get_feature
from .models import (
    UNRESOLVED_BLOCKER_STATUSES,
    Blocker,
    BlockerSeverity,
    BlockerStatus,
    BlockerType,
    FeatureStatus,
    GateStatus,
    QualityGate,
)
from .schema import write_transaction
from .state_machine import validate_blocker_transition

logger = logging.getLogger(__name__)

_UNRESOLVED_SQL = ", ".join(f"'{s.value}'" for s in UNRESOLVED_BLOCKER_STATUSES)


# ---------------------------------------------------------------------------
# Blockers
# ---------------------------------------------------------------------------


def get_blocker(conn: sqlite3.Connection, blocker_id: int) -> Blocker:
    row = conn.execute("SELECT * FROM blockers WHERE id = ?", (blocker_id,)).fetchone()
    if row is None:
        raise NotFoundError("blocker", blocker_id)
    return Blocker.from_row(row)


def list_blockers(
    conn: sqlite3.Connection,
    feature_id: str | None = None,
    status: str | BlockerStatus | None = None,
    unresolved_only: bool = False,
) -> list[Blocker]:
    """List blockers, oldest first, with optional filters."""
    conditions: list[str] = []
    params: list[Any] = []
    if feature_id is not None:
        conditions.append("feature_id = ?")
        params.append(feature_id)
    if status is not None:
        conditions.append("status = ?")
        params.append(BlockerStatus(status).value)
    if unresolved_only:
        conditions.append(f"status IN ({_UNRESOLVED_SQL})")

    where_clause = "WHERE " + " AND ".join(conditions) if conditions else ""
    rows = conn.execute(
        f"SELECT * FROM blockers {where_clause} ORDER BY id", params
    ).fetchall()
    return [Blocker.from_row(r) for r in rows]


def create_blocker(
    conn: sqlite3.Connection,
    feature_id: str,
    blocker_type: str | BlockerType,
    severity: str | BlockerSeverity,
    title: str,
    actor: str,
    description: str | None = None,
) -> Blocker:
    """
    Open a blocker against a feature in its current phase.

    The feature is forced to BLOCKED regardless of how many blockers it
    already has.

    Raises:
        NotFoundError: unknown feature
        InvariantViolationError: feature is COMPLETED or CANCELLED
    """
    blocker_type = BlockerType(blocker_type)
    severity = BlockerSeverity(severity)

    with write_transaction(conn):
        feature = get_feature(conn, feature_id)
        if feature.is_terminal:
            raise InvariantViolationError(
                f"Cannot raise a blocker on feature '{feature_id}': it is {feature.status.value}"
            )

        cursor = conn.execute(
            """
            INSERT INTO blockers (feature_id, phase, blocker_type, severity, title,
                                  description, created_by)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                feature_id, feature.current_phase.value, blocker_type.value,
                severity.value, title, description, actor,
            ),
        )
        blocker_id = cursor.lastrowid
        conn.execute(
            "UPDATE features SET status = 'BLOCKED', updated_at = datetime('now') WHERE id = ?",
            (feature_id,),
        )
        audit.log(
            conn,
            actor=actor,
            action="create_blocker",
            entity_type="blocker",
            entity_id=blocker_id,
            feature_id=feature_id,
            old_state=feature.status.value,
            new_state=FeatureStatus.BLOCKED.value,
            details={
                "blocker_type": blocker_type.value,
                "severity": severity.value,
                "title": title,
                "phase": feature.current_phase.value,
            },
        )

    logger.info("Blocker %d opened on feature %s: %s", blocker_id, feature_id, title)
    return get_blocker(conn, blocker_id)


def resolve_blocker(
    conn: sqlite3.Connection,
    blocker_id: int,
    actor: str,
    resolution_notes: str | None = None,
) -> dict[str, Any]:
    """
    Resolve a blocker; unblock the feature when no unresolved blockers remain.

    Returns:
        {"blocker": Blocker, "remaining_open": int, "feature_status": str}

    Raises:
        NotFoundError: unknown blocker
        InvalidBlockerTransitionError: blocker already RESOLVED
    """
    with write_transaction(conn):
        blocker = get_blocker(conn, blocker_id)
        validate_blocker_transition(blocker.status, BlockerStatus.RESOLVED, blocker_id)

        conn.execute(
            """
            UPDATE blockers
            SET status = 'RESOLVED',
                resolved_by = ?,
                resolved_at = datetime('now'),
                resolution_notes = ?
            WHERE id = ?
            """,
            (actor, resolution_notes, blocker_id),
        )

        # Recount and unblock in one statement; never from an in-memory count
        conn.execute(
            f"""
            UPDATE features
            SET status = 'IN_PROGRESS', updated_at = datetime('now')
            WHERE id = :feature_id
              AND status = 'BLOCKED'
              AND NOT EXISTS (
                  SELECT 1 FROM blockers
                  WHERE feature_id = :feature_id AND status IN ({_UNRESOLVED_SQL})
              )
            """,
            {"feature_id": blocker.feature_id},
        )

        remaining = count_unresolved_blockers(conn, blocker.feature_id)
        feature_status = conn.execute(
            "SELECT status FROM features WHERE id = ?", (blocker.feature_id,)
        ).fetchone()["status"]

        audit.log(
            conn,
            actor=actor,
            action="resolve_blocker",
            entity_type="blocker",
            entity_id=blocker_id,
            feature_id=blocker.feature_id,
            old_state=blocker.status.value,
            new_state=BlockerStatus.RESOLVED.value,
            details={
                "resolution_notes": resolution_notes,
                "remaining_open": remaining,
                "feature_status": feature_status,
            },
        )

    logger.info(
        "Blocker %d resolved on feature %s (%d remaining)",
        blocker_id, blocker.feature_id, remaining,
    )
    return {
        "blocker": get_blocker(conn, blocker_id),
        "remaining_open": remaining,
        "feature_status": feature_status,
    }


def _move_blocker(
    conn: sqlite3.Connection,
    blocker_id: int,
    to_status: BlockerStatus,
    actor: str,
    action: str,
    escalation_notes: str | None = None,
) -> Blocker:
    with write_transaction(conn):
        blocker = get_blocker(conn, blocker_id)
        validate_blocker_transition(blocker.status, to_status, blocker_id)
        conn.execute(
            """
            UPDATE blockers
            SET status = ?, escalation_notes = COALESCE(?, escalation_notes)
            WHERE id = ?
            """,
            (to_status.value, escalation_notes, blocker_id),
        )
        audit.log(
            conn,
            actor=actor,
            action=action,
            entity_type="blocker",
            entity_id=blocker_id,
            feature_id=blocker.feature_id,
            old_state=blocker.status.value,
            new_state=to_status.value,
            details={"escalation_notes": escalation_notes} if escalation_notes else None,
        )
    return get_blocker(conn, blocker_id)


def mark_blocker_in_progress(conn: sqlite3.Connection, blocker_id: int, actor: str) -> Blocker:
    """Mark a blocker as being worked on. The feature stays BLOCKED."""
    return _move_blocker(conn, blocker_id, BlockerStatus.IN_PROGRESS, actor, "blocker_in_progress")


def escalate_blocker(
    conn: sqlite3.Connection,
    blocker_id: int,
    actor: str,
    escalation_notes: str | None = None,
) -> Blocker:
    """Hand a blocker to a human. The feature stays BLOCKED until it is resolved."""
    return _move_blocker(
        conn, blocker_id, BlockerStatus.ESCALATED, actor, "escalate_blocker", escalation_notes,
    )


# ---------------------------------------------------------------------------
# Quality gates
# ---------------------------------------------------------------------------


def current_phase_attempt(conn: sqlite3.Connection, feature_id: str) -> int:
    """Number of times the feature has entered its current phase (1-based)."""
    count = conn.execute(
        """
        SELECT COUNT(*) FROM phase_transitions pt
        JOIN features f ON f.id = pt.feature_id
        WHERE pt.feature_id = ? AND pt.to_phase = f.current_phase
        """,
        (feature_id,),
    ).fetchone()[0]
    return max(1, count)


def evaluate_gate(
    conn: sqlite3.Connection,
    feature_id: str,
    gate_name: str,
    status: str | GateStatus,
    approver: str,
    notes: str | None = None,
) -> QualityGate:
    """
    Record an approve/reject decision for a named gate in the current phase visit.

    Raises:
        NotFoundError: unknown feature
        InvariantViolationError: status is PENDING, or feature is terminal
        CollisionError: this gate was already evaluated in this phase visit
    """
    status = GateStatus(status)
    if status is GateStatus.PENDING:
        raise InvariantViolationError(
            "A gate evaluation must be APPROVED or REJECTED; PENDING is not a decision"
        )

    with write_transaction(conn):
        feature = get_feature(conn, feature_id)
        if feature.is_terminal:
            raise InvariantViolationError(
                f"Cannot evaluate gates on feature '{feature_id}': it is {feature.status.value}"
            )

        phase = feature.current_phase
        attempt = current_phase_attempt(conn, feature_id)
        existing = conn.execute(
            """
            SELECT status, approver FROM quality_gates
            WHERE feature_id = ? AND gate_name = ? AND phase = ? AND attempt = ?
            """,
            (feature_id, gate_name, phase.value, attempt),
        ).fetchone()
        if existing is not None:
            raise CollisionError(
                f"Gate '{gate_name}' was already {existing['status']} by "
                f"{existing['approver']} for feature '{feature_id}' in phase "
                f"{phase.display} (attempt {attempt})",
                holder=existing["approver"],
            )

        cursor = conn.execute(
            """
            INSERT INTO quality_gates (feature_id, gate_name, phase, attempt, status, approver, notes)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (feature_id, gate_name, phase.value, attempt, status.value, approver, notes),
        )
        gate_id = cursor.lastrowid
        audit.log(
            conn,
            actor=approver,
            action="evaluate_gate",
            entity_type="gate",
            entity_id=gate_id,
            feature_id=feature_id,
            new_state=status.value,
            details={
                "gate_name": gate_name,
                "phase": phase.value,
                "attempt": attempt,
                "notes": notes,
            },
        )

    logger.info("Gate %s %s for feature %s", gate_name, status.value, feature_id)
    row = conn.execute("SELECT * FROM quality_gates WHERE id = ?", (gate_id,)).fetchone()
    return QualityGate.from_row(row)


def list_gates(conn: sqlite3.Connection, feature_id: str) -> list[QualityGate]:
    get_feature(conn, feature_id)
    rows = conn.execute(
        "SELECT * FROM quality_gates WHERE feature_id = ? ORDER BY id", (feature_id,)
    ).fetchall()
    return [QualityGate.from_row(r) for r in rows]
