#!/usr/bin/env python3
# Ticket: 0091_workflow_control_plane
# Design: DESIGN.md
"""
Control Plane Audit Log Helpers

Every successful mutation in the control plane appends one entry to the
audit_log table inside the same transaction as the state change. The audit
trail is append-only and never modified after insertion.

Actors are opaque identity strings supplied by the caller (human or agent
name); the control plane does not authenticate them.

Actions:
- create_feature / transition_phase / escalate_phase / complete_feature / cancel_feature
- create_blocker / resolve_blocker / blocker_in_progress / escalate_blocker
- evaluate_gate
- acquire_lock / release_lock / detect_conflict / resolve_conflict
- start_invocation / end_invocation / record_iteration
- create_learning / evolve_learning / validate_learning / reference_learning
- flag_learning_conflict / resolve_learning_conflict
- declare_target / record_propagation / mark_fully_propagated
- compute_feature_eval / compute_system_health / acknowledge_alert / resolve_alert
"""

import json
import sqlite3
from typing import Any


def log(
    conn: sqlite3.Connection,
    actor: str,
    action: str,
    entity_type: str,
    entity_id: str | int,
    feature_id: str | None = None,
    old_state: str | None = None,
    new_state: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    """
    Insert an audit log entry.

    This function does NOT commit; the caller must be inside
    write_transaction() so the entry is atomic with the state change it
    records.

    Args:
        conn: Open database connection (must be inside a transaction)
        actor: Who initiated the action
        action: What happened (e.g. "transition_phase", "validate_learning")
        entity_type: Type of entity affected ("feature", "blocker", "learning", ...)
        entity_id: ID of the affected entity
        feature_id: Owning feature, when there is one
        old_state: Status/state before the action (optional)
        new_state: Status/state after the action (optional)
        details: Additional context as a dict (will be JSON-serialized)
    """
    details_json = json.dumps(details, default=str) if details is not None else None
    conn.execute(
        """
        INSERT INTO audit_log (actor, action, entity_type, entity_id, feature_id,
                               old_state, new_state, details)
        VALUES (:actor, :action, :entity_type, :entity_id, :feature_id,
                :old_state, :new_state, :details)
        """,
        {
            "actor": actor,
            "action": action,
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "feature_id": feature_id,
            "old_state": old_state,
            "new_state": new_state,
            "details": details_json,
        },
    )


def query_audit(
    conn: sqlite3.Connection,
    feature_id: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    actor: str | None = None,
    action: str | None = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    """
    Query the audit log with optional filters.

    All filters are combined with AND. Results are ordered newest-first.
    """
    conditions: list[str] = []
    params: list[Any] = []

    if feature_id is not None:
        conditions.append("(feature_id = ? OR (entity_type = 'feature' AND entity_id = ?))")
        params.extend([feature_id, feature_id])

    if entity_type is not None:
        conditions.append("entity_type = ?")
        params.append(entity_type)

    if entity_id is not None:
        conditions.append("entity_id = ?")
        params.append(str(entity_id))

    if actor is not None:
        conditions.append("actor = ?")
        params.append(actor)

    if action is not None:
        conditions.append("action = ?")
        params.append(action)

    where_clause = "WHERE " + " AND ".join(conditions) if conditions else ""

    rows = conn.execute(
        f"""
        SELECT id, timestamp, actor, action, entity_type, entity_id, feature_id,
               old_state, new_state, details
        FROM audit_log
        {where_clause}
        ORDER BY id DESC
        LIMIT ?
        """,
        params + [limit],
    ).fetchall()

    result = []
    for row in rows:
        entry = dict(row)
        if entry.get("details"):
            entry["details"] = json.loads(entry["details"])
        result.append(entry)
    return result
