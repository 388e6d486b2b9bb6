#!/usr/bin/env python3
# Ticket: 0091_workflow_control_plane
# Design: DESIGN.md
"""
Control Plane Concurrency Coordinator

Locks are cooperative advisory records scoped to (feature, resource path).
Nothing stops a caller from ignoring a held lock; correctness depends on all
callers going through acquire_lock()/release_lock().

Conflict detection compares a feature's proposed paths against the locks
held by every other non-terminal feature. Each overlapping pair of features
is stored once, with the lexicographically smaller feature id first, and
later detections merge into that row. Risk is HIGH when both features are
actively progressing (IN_PROGRESS and not yet in phase "8"), MEDIUM
otherwise. Detection is advisory and never changes feature status; the
resolution strategy is recorded afterwards by a human or orchestrator.
"""

import json
import logging
import sqlite3
from typing import Any

from . import audit
from .errors import CollisionError, InvariantViolationError, NotFoundError
from .features import get_feature
from .models import (
    Conflict,
    ConflictRisk,
    ConflictStatus,
    ConflictStrategy,
    Feature,
    FeatureStatus,
    Lock,
    LockKind,
    Phase,
)
from .schema import write_transaction

logger = logging.getLogger(__name__)

STRATEGY_STATUS: dict[ConflictStrategy, ConflictStatus] = {
    ConflictStrategy.SERIALIZE: ConflictStatus.SERIALIZED,
    ConflictStrategy.COORDINATE: ConflictStatus.COORDINATED,
    ConflictStrategy.ALLOW_PARALLEL: ConflictStatus.RESOLVED,
}


def canonical_pair(first: str, second: str) -> tuple[str, str]:
    """Order two ids so the same unordered pair always maps to one key."""
    if first == second:
        raise InvariantViolationError(f"A conflict needs two different ids, got '{first}' twice")
    return (first, second) if first < second else (second, first)


def _normalize_paths(paths: list[str]) -> list[str]:
    return sorted({p.strip() for p in paths if p and p.strip()})


# ---------------------------------------------------------------------------
# Locks
# ---------------------------------------------------------------------------


def acquire_lock(
    conn: sqlite3.Connection,
    feature_id: str,
    path: str,
    holder: str,
    kind: str | LockKind = LockKind.FILE,
) -> Lock:
    """
    Acquire the (feature, path) lock.

    Raises:
        NotFoundError: unknown feature
        InvariantViolationError: feature is terminal, or path is empty
        CollisionError: the lock is already held (message names the holder)
    """
    kind = LockKind(kind)
    path = path.strip() if path else ""
    if not path:
        raise InvariantViolationError("Lock path must be a non-empty string")

    with write_transaction(conn):
        feature = get_feature(conn, feature_id)
        if feature.is_terminal:
            raise InvariantViolationError(
                f"Cannot lock '{path}' for feature '{feature_id}': it is {feature.status.value}"
            )

        existing = conn.execute(
            "SELECT holder, acquired_at FROM locks WHERE feature_id = ? AND path = ?",
            (feature_id, path),
        ).fetchone()
        if existing is not None:
            raise CollisionError(
                f"Lock on '{path}' for feature '{feature_id}' is already held by "
                f"{existing['holder']} (since {existing['acquired_at']})",
                holder=existing["holder"],
            )

        cursor = conn.execute(
            "INSERT INTO locks (feature_id, path, kind, holder) VALUES (?, ?, ?, ?)",
            (feature_id, path, kind.value, holder),
        )
        lock_id = cursor.lastrowid
        audit.log(
            conn,
            actor=holder,
            action="acquire_lock",
            entity_type="lock",
            entity_id=lock_id,
            feature_id=feature_id,
            new_state="held",
            details={"path": path, "kind": kind.value},
        )

    row = conn.execute("SELECT * FROM locks WHERE id = ?", (lock_id,)).fetchone()
    return Lock.from_row(row)


def release_lock(
    conn: sqlite3.Connection,
    feature_id: str,
    path: str,
    actor: str,
) -> bool:
    """
    Release the (feature, path) lock.

    Returns False (and writes nothing) when no such lock is held.
    """
    with write_transaction(conn):
        row = conn.execute(
            "DELETE FROM locks WHERE feature_id = ? AND path = ? RETURNING id, holder",
            (feature_id, path.strip()),
        ).fetchone()
        if row is None:
            return False
        audit.log(
            conn,
            actor=actor,
            action="release_lock",
            entity_type="lock",
            entity_id=row["id"],
            feature_id=feature_id,
            old_state="held",
            new_state="released",
            details={"path": path, "holder": row["holder"]},
        )
    return True


def release_all_locks(conn: sqlite3.Connection, feature_id: str, actor: str) -> list[str]:
    """Release every lock held by a feature. Returns the released paths."""
    with write_transaction(conn):
        rows = conn.execute(
            "DELETE FROM locks WHERE feature_id = ? RETURNING path", (feature_id,)
        ).fetchall()
        paths = sorted(r["path"] for r in rows)
        if paths:
            audit.log(
                conn,
                actor=actor,
                action="release_lock",
                entity_type="feature",
                entity_id=feature_id,
                feature_id=feature_id,
                old_state="held",
                new_state="released",
                details={"paths": paths},
            )
    return paths


def list_locks(
    conn: sqlite3.Connection,
    feature_id: str | None = None,
    path: str | None = None,
) -> list[Lock]:
    conditions: list[str] = []
    params: list[Any] = []
    if feature_id is not None:
        conditions.append("feature_id = ?")
        params.append(feature_id)
    if path is not None:
        conditions.append("path = ?")
        params.append(path)
    where_clause = "WHERE " + " AND ".join(conditions) if conditions else ""
    rows = conn.execute(
        f"SELECT * FROM locks {where_clause} ORDER BY path, feature_id", params
    ).fetchall()
    return [Lock.from_row(r) for r in rows]


# ---------------------------------------------------------------------------
# Conflict detection
# ---------------------------------------------------------------------------


def _is_actively_progressing(status: str | FeatureStatus, phase: str | Phase) -> bool:
    return FeatureStatus(status) is FeatureStatus.IN_PROGRESS and Phase(phase) is not Phase.COMPLETE


def get_conflict(conn: sqlite3.Connection, conflict_id: int) -> Conflict:
    row = conn.execute("SELECT * FROM feature_conflicts WHERE id = ?", (conflict_id,)).fetchone()
    if row is None:
        raise NotFoundError("conflict", conflict_id)
    return Conflict.from_row(row)


def _upsert_conflict(
    conn: sqlite3.Connection,
    feature: Feature,
    other_id: str,
    paths: list[str],
    risk: ConflictRisk,
    actor: str,
) -> int:
    a_id, b_id = canonical_pair(feature.id, other_id)
    existing = conn.execute(
        "SELECT * FROM feature_conflicts WHERE feature_a_id = ? AND feature_b_id = ?",
        (a_id, b_id),
    ).fetchone()

    if existing is None:
        cursor = conn.execute(
            """
            INSERT INTO feature_conflicts (feature_a_id, feature_b_id, paths, risk, detected_phase)
            VALUES (?, ?, ?, ?, ?)
            """,
            (a_id, b_id, json.dumps(paths), risk.value, feature.current_phase.value),
        )
        audit.log(
            conn,
            actor=actor,
            action="detect_conflict",
            entity_type="conflict",
            entity_id=cursor.lastrowid,
            feature_id=feature.id,
            new_state=ConflictStatus.DETECTED.value,
            details={"feature_a_id": a_id, "feature_b_id": b_id, "paths": paths, "risk": risk.value},
        )
        logger.info("Conflict detected between %s and %s on %s", a_id, b_id, paths)
        return cursor.lastrowid

    current = Conflict.from_row(existing)
    merged = sorted(set(current.paths) | set(paths))
    merged_risk = risk if risk.rank > current.risk.rank else current.risk
    status = current.status
    if status is ConflictStatus.RESOLVED and merged != current.paths:
        status = ConflictStatus.DETECTED     # new overlap reopens a closed conflict

    if merged == current.paths and merged_risk is current.risk and status is current.status:
        return current.id

    conn.execute(
        """
        UPDATE feature_conflicts
        SET paths = ?, risk = ?, status = ?, updated_at = datetime('now')
        WHERE id = ?
        """,
        (json.dumps(merged), merged_risk.value, status.value, current.id),
    )
    audit.log(
        conn,
        actor=actor,
        action="detect_conflict",
        entity_type="conflict",
        entity_id=current.id,
        feature_id=feature.id,
        old_state=current.status.value,
        new_state=status.value,
        details={"paths": merged, "risk": merged_risk.value},
    )
    return current.id


def detect_conflicts(
    conn: sqlite3.Connection,
    feature_id: str,
    paths: list[str],
    actor: str,
) -> list[Conflict]:
    """
    Record conflicts between feature_id's proposed paths and other features' locks.

    Returns one Conflict per overlapping feature pair (new or merged). An empty
    list means no overlap.
    """
    proposed = _normalize_paths(paths)
    if not proposed:
        return []

    with write_transaction(conn):
        feature = get_feature(conn, feature_id)
        placeholders = ", ".join("?" for _ in proposed)
        rows = conn.execute(
            f"""
            SELECT l.feature_id, l.path, f.status, f.current_phase
            FROM locks l
            JOIN features f ON f.id = l.feature_id
            WHERE l.feature_id != ?
              AND f.status NOT IN ('COMPLETED', 'CANCELLED')
              AND l.path IN ({placeholders})
            ORDER BY l.feature_id, l.path
            """,
            [feature_id, *proposed],
        ).fetchall()

        overlaps: dict[str, dict[str, Any]] = {}
        for row in rows:
            entry = overlaps.setdefault(
                row["feature_id"],
                {"paths": set(), "status": row["status"], "phase": row["current_phase"]},
            )
            entry["paths"].add(row["path"])

        self_active = _is_actively_progressing(feature.status, feature.current_phase)
        conflict_ids = []
        for other_id, entry in overlaps.items():
            both_active = self_active and _is_actively_progressing(entry["status"], entry["phase"])
            risk = ConflictRisk.HIGH if both_active else ConflictRisk.MEDIUM
            conflict_ids.append(
                _upsert_conflict(conn, feature, other_id, sorted(entry["paths"]), risk, actor)
            )

    return [get_conflict(conn, cid) for cid in conflict_ids]


def resolve_conflict(
    conn: sqlite3.Connection,
    conflict_id: int,
    strategy: str | ConflictStrategy,
    actor: str,
    notes: str | None = None,
) -> Conflict:
    """
    Record the chosen resolution strategy for a conflict.

    SERIALIZE → SERIALIZED, COORDINATE → COORDINATED, ALLOW_PARALLEL → RESOLVED.

    Raises:
        NotFoundError: unknown conflict
        InvariantViolationError: conflict is already RESOLVED
    """
    strategy = ConflictStrategy(strategy)
    new_status = STRATEGY_STATUS[strategy]

    with write_transaction(conn):
        conflict = get_conflict(conn, conflict_id)
        if conflict.status is ConflictStatus.RESOLVED:
            raise InvariantViolationError(f"Conflict {conflict_id} is already RESOLVED")
        conn.execute(
            """
            UPDATE feature_conflicts
            SET strategy = ?, status = ?, notes = COALESCE(?, notes), updated_at = datetime('now')
            WHERE id = ?
            """,
            (strategy.value, new_status.value, notes, conflict_id),
        )
        audit.log(
            conn,
            actor=actor,
            action="resolve_conflict",
            entity_type="conflict",
            entity_id=conflict_id,
            old_state=conflict.status.value,
            new_state=new_status.value,
            details={
                "strategy": strategy.value,
                "notes": notes,
                "feature_a_id": conflict.feature_a_id,
                "feature_b_id": conflict.feature_b_id,
            },
        )
    return get_conflict(conn, conflict_id)


def close_conflict(
    conn: sqlite3.Connection,
    conflict_id: int,
    actor: str,
    notes: str | None = None,
) -> Conflict:
    """Mark a coordinated or serialized conflict as RESOLVED, keeping its strategy."""
    with write_transaction(conn):
        conflict = get_conflict(conn, conflict_id)
        if conflict.status is ConflictStatus.RESOLVED:
            raise InvariantViolationError(f"Conflict {conflict_id} is already RESOLVED")
        conn.execute(
            """
            UPDATE feature_conflicts
            SET status = 'RESOLVED', notes = COALESCE(?, notes), updated_at = datetime('now')
            WHERE id = ?
            """,
            (notes, conflict_id),
        )
        audit.log(
            conn,
            actor=actor,
            action="resolve_conflict",
            entity_type="conflict",
            entity_id=conflict_id,
            old_state=conflict.status.value,
            new_state=ConflictStatus.RESOLVED.value,
            details={"notes": notes},
        )
    return get_conflict(conn, conflict_id)


def list_conflicts(
    conn: sqlite3.Connection,
    feature_id: str | None = None,
    status: str | ConflictStatus | None = None,
    unresolved_only: bool = False,
) -> list[Conflict]:
    """List feature conflicts, highest risk first."""
    conditions: list[str] = []
    params: list[Any] = []
    if feature_id is not None:
        conditions.append("(feature_a_id = ? OR feature_b_id = ?)")
        params.extend([feature_id, feature_id])
    if status is not None:
        conditions.append("status = ?")
        params.append(ConflictStatus(status).value)
    if unresolved_only:
        conditions.append("status != 'RESOLVED'")
    where_clause = "WHERE " + " AND ".join(conditions) if conditions else ""
    rows = conn.execute(
        f"""
        SELECT * FROM feature_conflicts {where_clause}
        ORDER BY CASE risk WHEN 'HIGH' THEN 0 WHEN 'MEDIUM' THEN 1 ELSE 2 END, id
        """,
        params,
    ).fetchall()
    return [Conflict.from_row(r) for r in rows]
