#!/usr/bin/env python3
# Ticket: 0091_workflow_control_plane
# Design: DESIGN.md
"""
Control Plane Iteration Tracking

Append-only record of review/rework iterations on a feature, numbered
1, 2, 3, ... per feature. Each iteration notes how many issues were found
and resolved and how much of the design changed.

An iteration has converged when it found no issues or changed less than the
convergence threshold. Thrashing is flagged when a full window of
consecutive iterations contains no converged iteration and the issue count
did not go down across the window: the work is cycling without settling.
Callers that already know (e.g. a reviewer declaring thrashing) may pass the
flag explicitly.
"""

import logging
import sqlite3

from . import audit
from .errors import InvariantViolationError
from .features import get_feature
from .models import IterationRecord
from .schema import write_transaction

logger = logging.getLogger(__name__)

DEFAULT_CONVERGENCE_THRESHOLD = 5.0
DEFAULT_THRASHING_WINDOW = 3


def is_converged(issues_found: int, change_percent: float | None, threshold: float) -> bool:
    if issues_found == 0:
        return True
    return change_percent is not None and change_percent <= threshold


def detect_thrashing(
    window: list[IterationRecord],
    issues_found: int,
    converged: bool,
    window_size: int,
) -> bool:
    """
    Decide whether the newest iteration completes a thrashing window.

    window holds the previous iterations, oldest first; the newest iteration
    is described by issues_found/converged.
    """
    if len(window) < window_size - 1:
        return False
    recent = window[-(window_size - 1):]
    if converged or any(r.convergence_detected for r in recent):
        return False
    return issues_found >= recent[0].issues_found


def record_iteration(
    conn: sqlite3.Connection,
    feature_id: str,
    actor: str,
    spec_version: str | None = None,
    issues_found: int = 0,
    issues_resolved: int = 0,
    change_percent: float | None = None,
    thrashing: bool | None = None,
    convergence_threshold: float = DEFAULT_CONVERGENCE_THRESHOLD,
    thrashing_window: int = DEFAULT_THRASHING_WINDOW,
) -> IterationRecord:
    """Append the next iteration for a feature and classify it."""
    if issues_found < 0 or issues_resolved < 0:
        raise InvariantViolationError("Issue counts cannot be negative")
    if change_percent is not None and not 0.0 <= change_percent <= 100.0:
        raise InvariantViolationError(
            f"change_percent must be within [0, 100], got {change_percent}"
        )

    with write_transaction(conn):
        get_feature(conn, feature_id)
        previous = [
            IterationRecord.from_row(r)
            for r in conn.execute(
                "SELECT * FROM iteration_tracking WHERE feature_id = ? ORDER BY iteration_number",
                (feature_id,),
            ).fetchall()
        ]
        number = previous[-1].iteration_number + 1 if previous else 1
        converged = is_converged(issues_found, change_percent, convergence_threshold)
        if thrashing is None:
            thrashing = detect_thrashing(previous, issues_found, converged, thrashing_window)

        cursor = conn.execute(
            """
            INSERT INTO iteration_tracking (
                feature_id, iteration_number, spec_version, issues_found, issues_resolved,
                change_percent, convergence_detected, thrashing_detected, recorded_by
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                feature_id, number, spec_version, issues_found, issues_resolved,
                change_percent, int(converged), int(thrashing), actor,
            ),
        )
        record_id = cursor.lastrowid
        audit.log(
            conn,
            actor=actor,
            action="record_iteration",
            entity_type="iteration",
            entity_id=record_id,
            feature_id=feature_id,
            details={
                "iteration_number": number,
                "issues_found": issues_found,
                "converged": converged,
                "thrashing": thrashing,
            },
        )

    if thrashing:
        logger.warning("Thrashing detected on feature %s at iteration %d", feature_id, number)
    row = conn.execute("SELECT * FROM iteration_tracking WHERE id = ?", (record_id,)).fetchone()
    return IterationRecord.from_row(row)


def list_iterations(conn: sqlite3.Connection, feature_id: str) -> list[IterationRecord]:
    get_feature(conn, feature_id)
    rows = conn.execute(
        "SELECT * FROM iteration_tracking WHERE feature_id = ? ORDER BY iteration_number",
        (feature_id,),
    ).fetchall()
    return [IterationRecord.from_row(r) for r in rows]


def rework_iterations(conn: sqlite3.Connection, feature_id: str) -> int:
    """Rework count: the larger of recorded iterations and BACKWARD transitions."""
    recorded = conn.execute(
        "SELECT COALESCE(MAX(iteration_number), 0) FROM iteration_tracking WHERE feature_id = ?",
        (feature_id,),
    ).fetchone()[0]
    backward = conn.execute(
        "SELECT COUNT(*) FROM phase_transitions WHERE feature_id = ? AND kind = 'BACKWARD'",
        (feature_id,),
    ).fetchone()[0]
    return max(recorded, backward)


def thrashing_count(conn: sqlite3.Connection, feature_id: str) -> int:
    return conn.execute(
        "SELECT COUNT(*) FROM iteration_tracking WHERE feature_id = ? AND thrashing_detected = 1",
        (feature_id,),
    ).fetchone()[0]
