#!/usr/bin/env python3
# Ticket: 0091_workflow_control_plane
# Design: DESIGN.md
"""
Control Plane Propagation Subsystem

Moves validated learnings into persistent destinations (global notes, skill
files, agent definitions).

Flow:
1. declare_target(): a learning names where it should go, with a relevance
   score. Declaring the same (learning, kind, path) twice returns the
   existing target.
2. get_propagation_queue(): every declared target whose learning is current,
   confident enough (>= 0.80), free of open conflicts, relevant enough
   (>= 0.60) and not yet recorded as delivered.
3. record_propagation(): the caller writes the text and records delivery.
   Recording the same triple twice is reported as a duplicate, not an error.

A global note has no path; skills and agent definitions always have one. The
DDL enforces this and SQLite's ``IS`` operator matches NULL paths when
comparing targets to records.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

from . import audit
from .errors import InvariantViolationError, NotFoundError
from .knowledge import count_open_conflicts, get_learning
from .models import (
    OPEN_LEARNING_CONFLICT_STATUSES,
    Learning,
    PropagationRecord,
    PropagationTarget,
    TargetKind,
)
from .schema import write_transaction

logger = logging.getLogger(__name__)

MIN_CONFIDENCE = 0.80
MIN_RELEVANCE = 0.60
DEFAULT_RELEVANCE = 0.80
CONTENT_PREVIEW_CHARS = 300

_OPEN_CONFLICT_SQL = ", ".join(f"'{s.value}'" for s in OPEN_LEARNING_CONFLICT_STATUSES)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class Eligibility:
    eligible: bool
    reason: str
    title: str | None = None
    confidence: float | None = None


@dataclass
class PropagationRecorded:
    record: PropagationRecord
    success: bool = True


@dataclass
class PropagationDuplicate:
    """The triple was already delivered; ``record`` is the original delivery."""
    record: PropagationRecord
    success: bool = False


def _check_target_shape(target_kind: TargetKind, target_path: str | None) -> str | None:
    if target_kind.requires_path:
        if not target_path or not target_path.strip():
            raise InvariantViolationError(
                f"A {target_kind.value} target requires a target_path"
            )
        return target_path.strip()
    if target_path:
        raise InvariantViolationError("A global_note target must not have a target_path")
    return None


def _destination(target_kind: TargetKind, target_path: str | None) -> str:
    return target_path or target_kind.value


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------


def check_eligibility(conn: sqlite3.Connection, learning_id: str) -> Eligibility:
    """
    Decide whether a learning may be propagated.

    Checked in order: exists, current, confidence >= 0.80, not already
    fully propagated, no OPEN/INVESTIGATING conflicts. A failed check is a
    normal result.
    """
    row = conn.execute("SELECT * FROM learnings WHERE id = ?", (learning_id,)).fetchone()
    if row is None:
        return Eligibility(False, "Learning not found")

    learning = Learning.from_row(row)
    if learning.is_superseded:
        return Eligibility(False, "Learning has been superseded", learning.title, learning.confidence)
    if learning.confidence < MIN_CONFIDENCE:
        return Eligibility(
            False,
            f"Confidence score ({learning.confidence:.2f}) below threshold ({MIN_CONFIDENCE:.2f})",
            learning.title,
            learning.confidence,
        )
    if learning.propagated_to:
        return Eligibility(
            False,
            f"Already propagated to: {', '.join(learning.propagated_to)}",
            learning.title,
            learning.confidence,
        )
    conflicts = count_open_conflicts(conn, learning_id)
    if conflicts:
        return Eligibility(
            False,
            f"Learning has {conflicts} unresolved conflict(s)",
            learning.title,
            learning.confidence,
        )
    return Eligibility(True, "Eligible for propagation", learning.title, learning.confidence)


# ---------------------------------------------------------------------------
# Targets and queue
# ---------------------------------------------------------------------------


def _find_target(
    conn: sqlite3.Connection, learning_id: str, target_kind: TargetKind, target_path: str | None,
) -> sqlite3.Row | None:
    return conn.execute(
        """
        SELECT * FROM propagation_targets
        WHERE learning_id = ? AND target_kind = ? AND target_path IS ?
        """,
        (learning_id, target_kind.value, target_path),
    ).fetchone()


def declare_target(
    conn: sqlite3.Connection,
    learning_id: str,
    target_kind: str | TargetKind,
    actor: str,
    target_path: str | None = None,
    relevance: float = DEFAULT_RELEVANCE,
) -> PropagationTarget:
    """
    Declare where a learning should be propagated. Idempotent.

    Raises:
        NotFoundError: unknown learning
        InvariantViolationError: relevance outside [0.60, 1.00], path missing
            (or present for a global note), or the learning is superseded
    """
    target_kind = TargetKind(target_kind)
    target_path = _check_target_shape(target_kind, target_path)
    if not MIN_RELEVANCE <= relevance <= 1.0:
        raise InvariantViolationError(
            f"Relevance must be within [{MIN_RELEVANCE:.2f}, 1.00], got {relevance}"
        )

    with write_transaction(conn):
        learning = get_learning(conn, learning_id)
        existing = _find_target(conn, learning_id, target_kind, target_path)
        if existing is not None:
            return PropagationTarget.from_row(existing)
        if learning.is_superseded:
            raise InvariantViolationError(
                f"Cannot declare targets for learning '{learning_id}': it is superseded"
            )

        cursor = conn.execute(
            """
            INSERT INTO propagation_targets (learning_id, target_kind, target_path, relevance)
            VALUES (?, ?, ?, ?)
            """,
            (learning_id, target_kind.value, target_path, round(relevance, 2)),
        )
        target_id = cursor.lastrowid
        audit.log(
            conn,
            actor=actor,
            action="declare_target",
            entity_type="propagation_target",
            entity_id=target_id,
            feature_id=learning.feature_id,
            details={
                "learning_id": learning_id,
                "target_kind": target_kind.value,
                "target_path": target_path,
                "relevance": relevance,
            },
        )

    logger.info("Target %s declared for learning %s", _destination(target_kind, target_path), learning_id)
    row = conn.execute("SELECT * FROM propagation_targets WHERE id = ?", (target_id,)).fetchone()
    return PropagationTarget.from_row(row)


def get_propagation_queue(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    """
    Targets ready for delivery, most confident learning first.

    Each entry: {learning_id, title, category, content, confidence,
    feature_id, target_kind, target_path, relevance}
    """
    rows = conn.execute(
        f"""
        SELECT l.id AS learning_id, l.title, l.category, l.content, l.confidence,
               l.feature_id, t.target_kind, t.target_path, t.relevance
        FROM learnings l
        JOIN propagation_targets t ON t.learning_id = l.id
        LEFT JOIN propagation_records r
          ON r.learning_id = t.learning_id
         AND r.target_kind = t.target_kind
         AND r.target_path IS t.target_path
        WHERE l.is_superseded = 0
          AND l.confidence >= :min_confidence
          AND t.relevance >= :min_relevance
          AND r.id IS NULL
          AND NOT EXISTS (
              SELECT 1 FROM learning_conflicts c
              WHERE (c.learning_a_id = l.id OR c.learning_b_id = l.id)
                AND c.status IN ({_OPEN_CONFLICT_SQL})
          )
        ORDER BY l.confidence DESC, t.relevance DESC, t.id
        """,
        {"min_confidence": MIN_CONFIDENCE, "min_relevance": MIN_RELEVANCE},
    ).fetchall()
    return [dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------


def _find_record(
    conn: sqlite3.Connection, learning_id: str, target_kind: TargetKind, target_path: str | None,
) -> sqlite3.Row | None:
    return conn.execute(
        """
        SELECT * FROM propagation_records
        WHERE learning_id = ? AND target_kind = ? AND target_path IS ?
        """,
        (learning_id, target_kind.value, target_path),
    ).fetchone()


def record_propagation(
    conn: sqlite3.Connection,
    learning_id: str,
    target_kind: str | TargetKind,
    target_path: str | None,
    actor: str,
    section: str | None = None,
) -> PropagationRecorded | PropagationDuplicate:
    """
    Record that a learning was written into a destination.

    Eligibility is not re-checked here; callers work from the queue. A
    repeat delivery of the same triple returns PropagationDuplicate and
    leaves no audit entry.

    Raises:
        NotFoundError: unknown learning
        InvariantViolationError: path missing (or present for a global note)
    """
    target_kind = TargetKind(target_kind)
    target_path = _check_target_shape(target_kind, target_path)
    if section is None:
        section = "Learnings" if target_kind is TargetKind.AGENT_DEFINITION else "Session Learnings"

    with write_transaction(conn):
        learning = get_learning(conn, learning_id)
        existing = _find_record(conn, learning_id, target_kind, target_path)
        if existing is not None:
            duplicate = PropagationDuplicate(PropagationRecord.from_row(existing))
        else:
            duplicate = None
            cursor = conn.execute(
                """
                INSERT INTO propagation_records (learning_id, target_kind, target_path, propagated_by, section)
                VALUES (?, ?, ?, ?, ?)
                """,
                (learning_id, target_kind.value, target_path, actor, section),
            )
            record_id = cursor.lastrowid
            audit.log(
                conn,
                actor=actor,
                action="record_propagation",
                entity_type="propagation_record",
                entity_id=record_id,
                feature_id=learning.feature_id,
                details={
                    "learning_id": learning_id,
                    "learning_title": learning.title,
                    "destination": _destination(target_kind, target_path),
                    "target_kind": target_kind.value,
                    "section": section,
                    "confidence": learning.confidence,
                },
            )

    if duplicate is not None:
        logger.debug(
            "Learning %s already propagated to %s",
            learning_id, _destination(target_kind, target_path),
        )
        return duplicate

    logger.info("Learning %s propagated to %s", learning_id, _destination(target_kind, target_path))
    row = conn.execute("SELECT * FROM propagation_records WHERE id = ?", (record_id,)).fetchone()
    return PropagationRecorded(PropagationRecord.from_row(row))


def mark_fully_propagated(
    conn: sqlite3.Connection,
    learning_id: str,
    destinations: list[str],
    summary: str | None,
    actor: str,
) -> bool:
    """
    Legacy all-or-nothing marker: stamp the learning with its destinations.

    Returns False when the learning is superseded.
    """
    with write_transaction(conn):
        learning = get_learning(conn, learning_id)
        cursor = conn.execute(
            """
            UPDATE learnings
            SET propagated_to = ?,
                propagated_at = datetime('now'),
                propagation_summary = COALESCE(?, propagation_summary),
                updated_at = datetime('now')
            WHERE id = ? AND is_superseded = 0
            """,
            (json.dumps(list(destinations)), summary, learning_id),
        )
        if cursor.rowcount == 0:
            return False
        audit.log(
            conn,
            actor=actor,
            action="mark_fully_propagated",
            entity_type="learning",
            entity_id=learning_id,
            feature_id=learning.feature_id,
            details={
                "learning_id": learning_id,
                "learning_title": learning.title,
                "destination": ", ".join(destinations),
                "confidence": learning.confidence,
            },
        )
    return True


# ---------------------------------------------------------------------------
# Status and history
# ---------------------------------------------------------------------------


def get_propagation_status(conn: sqlite3.Connection, learning_id: str) -> dict[str, Any]:
    """
    Declared targets of a learning with their delivery state.

    Returns {"learning_id", "targets": [...], "total", "propagated", "pending"}
    where each target has target_kind, target_path, relevance, is_propagated,
    propagated_at, propagated_by and section.
    """
    get_learning(conn, learning_id)
    rows = conn.execute(
        """
        SELECT t.target_kind, t.target_path, t.relevance,
               r.id IS NOT NULL AS is_propagated,
               r.propagated_at, r.propagated_by, r.section
        FROM propagation_targets t
        LEFT JOIN propagation_records r
          ON r.learning_id = t.learning_id
         AND r.target_kind = t.target_kind
         AND r.target_path IS t.target_path
        WHERE t.learning_id = ?
        ORDER BY t.relevance DESC, t.id
        """,
        (learning_id,),
    ).fetchall()

    targets = []
    for row in rows:
        entry = dict(row)
        entry["is_propagated"] = bool(entry["is_propagated"])
        targets.append(entry)
    propagated = sum(1 for t in targets if t["is_propagated"])
    return {
        "learning_id": learning_id,
        "targets": targets,
        "total": len(targets),
        "propagated": propagated,
        "pending": len(targets) - propagated,
    }


def get_pending_evolution_syncs(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    """
    Destinations holding a superseded learning whose successor has not reached them.

    Each entry: {old_learning_id, new_learning_id, old_title, new_title,
    new_content, target_kind, target_path, propagated_at}
    """
    rows = conn.execute(
        """
        SELECT old_l.id AS old_learning_id, new_l.id AS new_learning_id,
               old_l.title AS old_title, new_l.title AS new_title,
               new_l.content AS new_content,
               r.target_kind, r.target_path, r.propagated_at
        FROM learnings old_l
        JOIN learnings new_l ON new_l.id = old_l.superseded_by
        JOIN propagation_records r ON r.learning_id = old_l.id
        LEFT JOIN propagation_records new_r
          ON new_r.learning_id = new_l.id
         AND new_r.target_kind = r.target_kind
         AND new_r.target_path IS r.target_path
        WHERE old_l.is_superseded = 1
          AND new_r.id IS NULL
        ORDER BY r.propagated_at, r.id
        """
    ).fetchall()
    return [dict(r) for r in rows]


def get_propagations_for_target(conn: sqlite3.Connection, target_path: str) -> list[dict[str, Any]]:
    """Learnings delivered to one destination path, newest first."""
    rows = conn.execute(
        """
        SELECT l.id AS learning_id, l.title, l.category, l.content, l.confidence,
               l.feature_id, r.target_kind, r.section, r.propagated_at, r.propagated_by
        FROM propagation_records r
        JOIN learnings l ON l.id = r.learning_id
        WHERE r.target_path = ?
        ORDER BY r.propagated_at DESC, r.id DESC
        """,
        (target_path,),
    ).fetchall()
    return [dict(r) for r in rows]


def get_propagation_history(conn: sqlite3.Connection, limit: int = 50) -> list[dict[str, Any]]:
    """Propagation events from the audit log, newest first."""
    rows = conn.execute(
        """
        SELECT timestamp, actor, details FROM audit_log
        WHERE action IN ('record_propagation', 'mark_fully_propagated')
        ORDER BY id DESC
        LIMIT ?
        """,
        (limit,),
    ).fetchall()

    history = []
    for row in rows:
        details = json.loads(row["details"]) if row["details"] else {}
        history.append({
            "propagated_at": row["timestamp"],
            "learning_id": details.get("learning_id"),
            "learning_title": details.get("learning_title"),
            "destination": details.get("destination"),
            "propagated_by": row["actor"],
            "confidence": details.get("confidence"),
        })
    return history


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def format_learning(conn: sqlite3.Connection, learning_id: str) -> tuple[str | None, str]:
    """
    Render an eligible learning as a markdown block for a destination file.

    Returns (markdown, reason); markdown is None when the learning is not
    eligible.
    """
    eligibility = check_eligibility(conn, learning_id)
    if not eligibility.eligible:
        return None, eligibility.reason

    learning = get_learning(conn, learning_id)
    if learning.propagation_summary:
        body = learning.propagation_summary
    elif len(learning.content) > CONTENT_PREVIEW_CHARS:
        body = learning.content[:CONTENT_PREVIEW_CHARS] + "..."
    else:
        body = learning.content

    date = (learning.created_at or "")[:10]
    validators = ", ".join(learning.validated_by) if learning.validated_by else "none"
    source = learning.feature_id or "general"
    markdown = (
        f"### {learning.category.value}: {learning.title} ({date})\n\n"
        f"{body}\n\n"
        f"**Confidence**: {learning.confidence:.2f} | "
        f"**Validated by**: {validators} | "
        f"**Source**: {source}"
    )
    return markdown, eligibility.reason
