#!/usr/bin/env python3
# Ticket: 0091_workflow_control_plane
# Design: DESIGN.md
"""
Control Plane Knowledge Evolution Engine

Learnings are versioned, confidence-scored knowledge items. A learning is
never edited in place: evolve_learning() appends a successor with the next
iteration number and marks the predecessor superseded in the same
transaction. At most one learning per chain is current.

Confidence only moves up, in SQL, capped at 1.00:
- validate_learning: +0.15 and the validator recorded
- reference_learning: +0.10

Superseded learnings cannot be validated, referenced or evolved again.

Conflicts between learnings are recorded per unordered pair (stored in
canonical id order). detect_learning_conflicts() only reports candidates
(same category, shared tags or similar titles); flag_learning_conflict()
records one.
"""

import json
import logging
import sqlite3
import uuid
from typing import Any

from . import audit
from .errors import CollisionError, InvariantViolationError, NotFoundError
from .features import get_feature
from .models import (
    OPEN_LEARNING_CONFLICT_STATUSES,
    Importance,
    Learning,
    LearningCategory,
    LearningConflict,
    LearningConflictKind,
    LearningConflictStatus,
    Phase,
)
from .schema import write_transaction
from .similarity import DEFAULT_SIMILARITY_THRESHOLD, title_similarity
from .state_machine import parse_phase

logger = logging.getLogger(__name__)

VALIDATION_BOOST = 0.15
REFERENCE_BOOST = 0.10

_OPEN_CONFLICT_SQL = ", ".join(f"'{s.value}'" for s in OPEN_LEARNING_CONFLICT_STATUSES)


def _normalize_tags(tags: list[str] | None) -> list[str]:
    seen: list[str] = []
    for tag in tags or []:
        tag = tag.strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def get_learning(conn: sqlite3.Connection, learning_id: str) -> Learning:
    row = conn.execute("SELECT * FROM learnings WHERE id = ?", (learning_id,)).fetchone()
    if row is None:
        raise NotFoundError("learning", learning_id)
    return Learning.from_row(row)


def list_learnings(
    conn: sqlite3.Connection,
    feature_id: str | None = None,
    include_superseded: bool = False,
    category: str | LearningCategory | None = None,
) -> list[Learning]:
    """List learnings, highest confidence first."""
    conditions: list[str] = []
    params: list[Any] = []
    if feature_id is not None:
        conditions.append("feature_id = ?")
        params.append(feature_id)
    if not include_superseded:
        conditions.append("is_superseded = 0")
    if category is not None:
        conditions.append("category = ?")
        params.append(LearningCategory(category).value)

    where_clause = "WHERE " + " AND ".join(conditions) if conditions else ""
    rows = conn.execute(
        f"SELECT * FROM learnings {where_clause} ORDER BY confidence DESC, created_at, id",
        params,
    ).fetchall()
    return [Learning.from_row(r) for r in rows]


def get_learning_chain(conn: sqlite3.Connection, learning_id: str) -> list[Learning]:
    """
    Full evolution chain containing learning_id, oldest iteration first.

    Walks backward through predecessor_id and forward through superseded_by.
    """
    start = get_learning(conn, learning_id)
    chain: dict[str, Learning] = {start.id: start}

    current = start
    while current.predecessor_id and current.predecessor_id not in chain:
        current = get_learning(conn, current.predecessor_id)
        chain[current.id] = current

    current = start
    while current.superseded_by and current.superseded_by not in chain:
        current = get_learning(conn, current.superseded_by)
        chain[current.id] = current

    return sorted(chain.values(), key=lambda item: item.iteration_number)


# ---------------------------------------------------------------------------
# Creation and evolution
# ---------------------------------------------------------------------------


def create_learning(
    conn: sqlite3.Connection,
    category: str | LearningCategory,
    title: str,
    content: str,
    actor: str,
    confidence: float = 0.50,
    importance: str | Importance = Importance.MEDIUM,
    tags: list[str] | None = None,
    feature_id: str | None = None,
    phase: str | int | Phase | None = None,
    agent: str | None = None,
    task_id: str | None = None,
) -> Learning:
    """
    Record the first iteration of a new learning.

    Raises:
        InvariantViolationError: empty title/content or confidence outside [0, 1]
        NotFoundError: feature_id given but unknown
    """
    category = LearningCategory(category)
    importance = Importance(importance)
    if not title or not title.strip():
        raise InvariantViolationError("A learning needs a non-empty title")
    if not content or not content.strip():
        raise InvariantViolationError("A learning needs non-empty content")
    if not 0.0 <= confidence <= 1.0:
        raise InvariantViolationError(f"Confidence must be within [0, 1], got {confidence}")
    learning_phase = parse_phase(phase) if phase is not None else None
    tag_list = _normalize_tags(tags)

    learning_id = str(uuid.uuid4())
    with write_transaction(conn):
        if feature_id is not None:
            get_feature(conn, feature_id)
        conn.execute(
            """
            INSERT INTO learnings (
                id, iteration_number, feature_id, task_id, phase, agent, category,
                title, content, confidence, importance, tags, created_by
            ) VALUES (?, 1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                learning_id, feature_id, task_id,
                learning_phase.value if learning_phase else None, agent,
                category.value, title.strip(), content, round(confidence, 2),
                importance.value, json.dumps(tag_list), actor,
            ),
        )
        audit.log(
            conn,
            actor=actor,
            action="create_learning",
            entity_type="learning",
            entity_id=learning_id,
            feature_id=feature_id,
            details={"category": category.value, "title": title, "tags": tag_list},
        )

    logger.info("Learning %s created: %s", learning_id, title)
    return get_learning(conn, learning_id)


def evolve_learning(
    conn: sqlite3.Connection,
    predecessor_id: str,
    title: str,
    content: str,
    delta_summary: str,
    actor: str,
) -> Learning:
    """
    Append the next iteration of a learning and supersede the predecessor.

    The successor inherits category, importance, tags, confidence and the
    feature/task/phase/agent linkage of its predecessor.

    Raises:
        NotFoundError: unknown predecessor
        InvariantViolationError: predecessor already superseded
    """
    if not title or not title.strip():
        raise InvariantViolationError("A learning needs a non-empty title")
    if not content or not content.strip():
        raise InvariantViolationError("A learning needs non-empty content")

    new_id = str(uuid.uuid4())
    with write_transaction(conn):
        predecessor = get_learning(conn, predecessor_id)
        if predecessor.is_superseded:
            raise InvariantViolationError(
                f"Learning '{predecessor_id}' is already superseded by "
                f"'{predecessor.superseded_by}'; evolve the current iteration instead"
            )

        conn.execute(
            """
            INSERT INTO learnings (
                id, predecessor_id, iteration_number, feature_id, task_id, phase, agent,
                category, title, content, delta_summary, confidence, importance, tags,
                created_by
            )
            SELECT ?, id, iteration_number + 1, feature_id, task_id, phase, agent,
                   category, ?, ?, ?, confidence, importance, tags, ?
            FROM learnings WHERE id = ?
            """,
            (new_id, title.strip(), content, delta_summary, actor, predecessor_id),
        )
        cursor = conn.execute(
            """
            UPDATE learnings
            SET is_superseded = 1,
                superseded_by = ?,
                superseded_at = datetime('now'),
                updated_at = datetime('now')
            WHERE id = ? AND is_superseded = 0
            """,
            (new_id, predecessor_id),
        )
        if cursor.rowcount != 1:
            raise InvariantViolationError(
                f"Learning '{predecessor_id}' was superseded concurrently"
            )
        audit.log(
            conn,
            actor=actor,
            action="evolve_learning",
            entity_type="learning",
            entity_id=new_id,
            feature_id=predecessor.feature_id,
            details={
                "predecessor_id": predecessor_id,
                "iteration_number": predecessor.iteration_number + 1,
                "delta_summary": delta_summary,
            },
        )

    logger.info(
        "Learning %s evolved to %s (iteration %d)",
        predecessor_id, new_id, predecessor.iteration_number + 1,
    )
    return get_learning(conn, new_id)


# ---------------------------------------------------------------------------
# Confidence
# ---------------------------------------------------------------------------


def _reject_superseded(conn: sqlite3.Connection, learning_id: str, action: str) -> None:
    learning = get_learning(conn, learning_id)
    raise InvariantViolationError(
        f"Cannot {action} learning '{learning_id}': it is superseded by "
        f"'{learning.superseded_by}'"
    )


def validate_learning(conn: sqlite3.Connection, learning_id: str, actor: str) -> Learning:
    """
    Record an independent confirmation: confidence +0.15 (max 1.00).

    Raises:
        NotFoundError: unknown learning
        InvariantViolationError: learning is superseded
    """
    with write_transaction(conn):
        row = conn.execute(
            f"""
            UPDATE learnings
            SET confidence = MIN(1.0, ROUND(confidence + {VALIDATION_BOOST}, 2)),
                validation_count = validation_count + 1,
                validated_by = json_insert(validated_by, '$[#]', ?),
                last_validated_at = datetime('now'),
                updated_at = datetime('now')
            WHERE id = ? AND is_superseded = 0
            RETURNING *
            """,
            (actor, learning_id),
        ).fetchone()
        if row is None:
            _reject_superseded(conn, learning_id, "validate")

        learning = Learning.from_row(row)
        audit.log(
            conn,
            actor=actor,
            action="validate_learning",
            entity_type="learning",
            entity_id=learning_id,
            feature_id=learning.feature_id,
            details={
                "confidence": learning.confidence,
                "validation_count": learning.validation_count,
            },
        )

    logger.info("Learning %s validated by %s (confidence %.2f)", learning_id, actor, learning.confidence)
    return learning


def reference_learning(
    conn: sqlite3.Connection,
    learning_id: str,
    referenced_by: str | None = None,
) -> float:
    """Record that a learning was applied: confidence +0.10 (max 1.00). Returns the new confidence."""
    with write_transaction(conn):
        row = conn.execute(
            f"""
            UPDATE learnings
            SET confidence = MIN(1.0, ROUND(confidence + {REFERENCE_BOOST}, 2)),
                updated_at = datetime('now')
            WHERE id = ? AND is_superseded = 0
            RETURNING confidence, feature_id
            """,
            (learning_id,),
        ).fetchone()
        if row is None:
            _reject_superseded(conn, learning_id, "reference")

        audit.log(
            conn,
            actor=referenced_by or "unknown",
            action="reference_learning",
            entity_type="learning",
            entity_id=learning_id,
            feature_id=row["feature_id"],
            details={"confidence": row["confidence"]},
        )

    logger.debug("Learning %s referenced (confidence %.2f)", learning_id, row["confidence"])
    return row["confidence"]


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


def get_learning_conflict(conn: sqlite3.Connection, conflict_id: int) -> LearningConflict:
    row = conn.execute("SELECT * FROM learning_conflicts WHERE id = ?", (conflict_id,)).fetchone()
    if row is None:
        raise NotFoundError("learning conflict", conflict_id)
    return LearningConflict.from_row(row)


def list_learning_conflicts(
    conn: sqlite3.Connection,
    status: str | LearningConflictStatus | None = None,
    learning_id: str | None = None,
) -> list[LearningConflict]:
    conditions: list[str] = []
    params: list[Any] = []
    if status is not None:
        conditions.append("status = ?")
        params.append(LearningConflictStatus(status).value)
    if learning_id is not None:
        conditions.append("(learning_a_id = ? OR learning_b_id = ?)")
        params.extend([learning_id, learning_id])

    where_clause = "WHERE " + " AND ".join(conditions) if conditions else ""
    rows = conn.execute(
        f"SELECT * FROM learning_conflicts {where_clause} ORDER BY id", params
    ).fetchall()
    return [LearningConflict.from_row(r) for r in rows]


def count_open_conflicts(conn: sqlite3.Connection, learning_id: str) -> int:
    return conn.execute(
        f"""
        SELECT COUNT(*) FROM learning_conflicts
        WHERE (learning_a_id = ? OR learning_b_id = ?) AND status IN ({_OPEN_CONFLICT_SQL})
        """,
        (learning_id, learning_id),
    ).fetchone()[0]


def detect_learning_conflicts(
    conn: sqlite3.Connection,
    learning_id: str,
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> list[dict[str, Any]]:
    """
    Find current learnings of the same category that may overlap this one.

    A candidate shares at least one tag or has a title keyword similarity
    above similarity_threshold. Pairs that already have an OPEN or
    INVESTIGATING conflict are skipped. Nothing is written.

    Returns a list of
        {learning_id, title, kind, reason, shared_tags, similarity}
    ordered by similarity, highest first.
    """
    learning = get_learning(conn, learning_id)
    already_open = {
        row[0]
        for row in conn.execute(
            f"""
            SELECT CASE WHEN learning_a_id = :id THEN learning_b_id ELSE learning_a_id END
            FROM learning_conflicts
            WHERE (learning_a_id = :id OR learning_b_id = :id)
              AND status IN ({_OPEN_CONFLICT_SQL})
            """,
            {"id": learning_id},
        ).fetchall()
    }

    rows = conn.execute(
        """
        SELECT * FROM learnings
        WHERE category = ? AND is_superseded = 0 AND id != ?
        ORDER BY created_at, id
        """,
        (learning.category.value, learning_id),
    ).fetchall()

    own_tags = set(learning.tags)
    candidates = []
    for row in rows:
        other = Learning.from_row(row)
        if other.id in already_open:
            continue
        shared = sorted(own_tags & set(other.tags))
        similarity = round(title_similarity(learning.title, other.title), 3)
        if not shared and similarity <= similarity_threshold:
            continue

        reasons = []
        if shared:
            reasons.append(f"shared tags: {', '.join(shared)}")
        if similarity > similarity_threshold:
            reasons.append(f"title similarity {similarity:.2f}")
        candidates.append({
            "learning_id": other.id,
            "title": other.title,
            "kind": LearningConflictKind.SCOPE_OVERLAP.value,
            "reason": "; ".join(reasons),
            "shared_tags": shared,
            "similarity": similarity,
        })

    candidates.sort(key=lambda c: c["similarity"], reverse=True)
    logger.debug("Learning %s: %d conflict candidate(s)", learning_id, len(candidates))
    return candidates


def flag_learning_conflict(
    conn: sqlite3.Connection,
    learning_a_id: str,
    learning_b_id: str,
    kind: str | LearningConflictKind,
    description: str | None,
    actor: str,
) -> LearningConflict:
    """
    Record a conflict between two learnings.

    Raises:
        InvariantViolationError: both ids are the same learning
        NotFoundError: either learning is unknown
        CollisionError: the pair already has a conflict record
    """
    kind = LearningConflictKind(kind)
    if learning_a_id == learning_b_id:
        raise InvariantViolationError("A learning cannot conflict with itself")
    first, second = sorted([learning_a_id, learning_b_id])

    with write_transaction(conn):
        get_learning(conn, first)
        get_learning(conn, second)
        existing = conn.execute(
            "SELECT id, status FROM learning_conflicts WHERE learning_a_id = ? AND learning_b_id = ?",
            (first, second),
        ).fetchone()
        if existing is not None:
            raise CollisionError(
                f"Learnings '{first}' and '{second}' already have conflict "
                f"{existing['id']} ({existing['status']})"
            )

        cursor = conn.execute(
            """
            INSERT INTO learning_conflicts (learning_a_id, learning_b_id, kind, description, detected_by)
            VALUES (?, ?, ?, ?, ?)
            """,
            (first, second, kind.value, description, actor),
        )
        conflict_id = cursor.lastrowid
        audit.log(
            conn,
            actor=actor,
            action="flag_learning_conflict",
            entity_type="learning_conflict",
            entity_id=conflict_id,
            new_state=LearningConflictStatus.OPEN.value,
            details={"learning_a_id": first, "learning_b_id": second, "kind": kind.value},
        )

    logger.info("Learning conflict %d flagged between %s and %s", conflict_id, first, second)
    return get_learning_conflict(conn, conflict_id)


def resolve_learning_conflict(
    conn: sqlite3.Connection,
    conflict_id: int,
    status: str | LearningConflictStatus,
    actor: str,
    resolution: str | None = None,
    winning_learning_id: str | None = None,
) -> LearningConflict:
    """
    Move a learning conflict to INVESTIGATING, RESOLVED or DEFERRED.

    Raises:
        NotFoundError: unknown conflict
        InvariantViolationError: conflict already RESOLVED, target status OPEN,
            or the winner is not one of the pair
    """
    status = LearningConflictStatus(status)
    if status is LearningConflictStatus.OPEN:
        raise InvariantViolationError("A learning conflict cannot be moved back to OPEN")

    with write_transaction(conn):
        conflict = get_learning_conflict(conn, conflict_id)
        if conflict.status is LearningConflictStatus.RESOLVED:
            raise InvariantViolationError(f"Learning conflict {conflict_id} is already RESOLVED")
        if winning_learning_id is not None and winning_learning_id not in (
            conflict.learning_a_id, conflict.learning_b_id,
        ):
            raise InvariantViolationError(
                f"Winning learning '{winning_learning_id}' is not part of conflict {conflict_id}"
            )

        closing = status in (LearningConflictStatus.RESOLVED, LearningConflictStatus.DEFERRED)
        conn.execute(
            """
            UPDATE learning_conflicts
            SET status = ?,
                resolution = COALESCE(?, resolution),
                winning_learning_id = COALESCE(?, winning_learning_id),
                resolved_by = CASE WHEN ? THEN ? ELSE resolved_by END,
                resolved_at = CASE WHEN ? THEN datetime('now') ELSE resolved_at END
            WHERE id = ?
            """,
            (
                status.value, resolution, winning_learning_id,
                int(closing), actor, int(closing), conflict_id,
            ),
        )
        audit.log(
            conn,
            actor=actor,
            action="resolve_learning_conflict",
            entity_type="learning_conflict",
            entity_id=conflict_id,
            old_state=conflict.status.value,
            new_state=status.value,
            details={"resolution": resolution, "winning_learning_id": winning_learning_id},
        )

    logger.info("Learning conflict %d -> %s", conflict_id, status.value)
    return get_learning_conflict(conn, conflict_id)
