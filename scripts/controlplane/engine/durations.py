#!/usr/bin/env python3
# Ticket: 0091_workflow_control_plane
# Design: DESIGN.md
"""
Control Plane Duration Tracker

Records timed units of work ("invocations") performed by a named actor
within a feature and phase. The duration is computed exactly once, in SQL,
when the invocation ends; the end update is guarded by ``ended_at IS NULL``
so an invocation cannot be completed twice even by concurrent callers.

Also derives per-phase and per-actor duration summaries. Phase windows come
only from the ordered phase_transitions history.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any

from . import audit
from .errors import InvariantViolationError, NotFoundError
from .features import get_feature, get_transitions
from .models import AgentInvocation, Phase
from .schema import write_transaction
from .state_machine import parse_phase

logger = logging.getLogger(__name__)

_SQLITE_TS = "%Y-%m-%d %H:%M:%S"


def parse_timestamp(value: str) -> datetime:
    """Parse a SQLite datetime('now') string as an aware UTC datetime."""
    return datetime.strptime(value[:19], _SQLITE_TS).replace(tzinfo=timezone.utc)


def get_invocation(conn: sqlite3.Connection, invocation_id: str) -> AgentInvocation:
    row = conn.execute(
        "SELECT * FROM agent_invocations WHERE id = ?", (invocation_id,)
    ).fetchone()
    if row is None:
        raise NotFoundError("invocation", invocation_id)
    return AgentInvocation.from_row(row)


def list_invocations(
    conn: sqlite3.Connection,
    feature_id: str,
    active_only: bool = False,
) -> list[AgentInvocation]:
    sql = "SELECT * FROM agent_invocations WHERE feature_id = ?"
    if active_only:
        sql += " AND ended_at IS NULL"
    rows = conn.execute(sql + " ORDER BY started_at, id", (feature_id,)).fetchall()
    return [AgentInvocation.from_row(r) for r in rows]


def start_invocation(
    conn: sqlite3.Connection,
    feature_id: str,
    actor: str,
    operation: str,
    phase: str | int | Phase | None = None,
    aids: list[str] | None = None,
) -> str:
    """
    Start timing a unit of work. Returns the invocation id.

    phase defaults to the feature's current phase. aids are opaque
    identifiers stored for later analytics and never interpreted.
    """
    aid_list = list(aids or [])
    with write_transaction(conn):
        feature = get_feature(conn, feature_id)
        invocation_phase = parse_phase(phase) if phase is not None else feature.current_phase
        invocation_id = str(uuid.uuid4())
        conn.execute(
            """
            INSERT INTO agent_invocations (id, feature_id, phase, actor, operation, aids)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (invocation_id, feature_id, invocation_phase.value, actor, operation, json.dumps(aid_list)),
        )
        audit.log(
            conn,
            actor=actor,
            action="start_invocation",
            entity_type="invocation",
            entity_id=invocation_id,
            feature_id=feature_id,
            new_state="running",
            details={"phase": invocation_phase.value, "operation": operation, "aids": aid_list},
        )

    logger.debug("Invocation %s started by %s on %s", invocation_id, actor, feature_id)
    return invocation_id


def end_invocation(
    conn: sqlite3.Connection,
    invocation_id: str,
    notes: str | None = None,
) -> int:
    """
    Stop timing an invocation and return its duration in milliseconds.

    Raises:
        NotFoundError: unknown invocation
        InvariantViolationError: the invocation has already ended
    """
    with write_transaction(conn):
        row = conn.execute(
            """
            UPDATE agent_invocations
            SET ended_at = datetime('now'),
                duration_ms = CAST(ROUND((julianday('now') - julianday(started_at)) * 86400000) AS INTEGER),
                notes = COALESCE(?, notes)
            WHERE id = ? AND ended_at IS NULL
            RETURNING *
            """,
            (notes, invocation_id),
        ).fetchone()

        if row is None:
            existing = get_invocation(conn, invocation_id)
            raise InvariantViolationError(
                f"Invocation '{invocation_id}' already ended at {existing.ended_at}; "
                f"an invocation can only be completed once"
            )

        invocation = AgentInvocation.from_row(row)
        duration_ms = max(0, invocation.duration_ms or 0)
        audit.log(
            conn,
            actor=invocation.actor,
            action="end_invocation",
            entity_type="invocation",
            entity_id=invocation_id,
            feature_id=invocation.feature_id,
            old_state="running",
            new_state="ended",
            details={"duration_ms": duration_ms, "notes": notes},
        )

    logger.debug("Invocation %s ended after %d ms", invocation_id, duration_ms)
    return duration_ms


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


def get_phase_durations(conn: sqlite3.Connection, feature_id: str) -> list[dict[str, Any]]:
    """
    Per-phase duration summary.

    Each transition opens a window on its to_phase that closes at the next
    transition (or at completion / now for the last one). Returns one entry
    per phase the feature has entered:
        {phase, phase_name, visits, wall_clock_minutes, invocation_count, agent_ms}
    """
    feature = get_feature(conn, feature_id)
    transitions = get_transitions(conn, feature_id)

    closed_at = feature.completed_at or conn.execute("SELECT datetime('now')").fetchone()[0]
    end_of_history = parse_timestamp(closed_at)

    summary: dict[str, dict[str, Any]] = {}
    for index, transition in enumerate(transitions):
        start = parse_timestamp(transition.transitioned_at)
        if index + 1 < len(transitions):
            end = parse_timestamp(transitions[index + 1].transitioned_at)
        else:
            end = end_of_history
        entry = summary.setdefault(transition.to_phase.value, {
            "phase": transition.to_phase.value,
            "phase_name": transition.to_phase.label,
            "visits": 0,
            "wall_clock_minutes": 0.0,
            "invocation_count": 0,
            "agent_ms": 0,
        })
        entry["visits"] += 1
        entry["wall_clock_minutes"] += max(0.0, (end - start).total_seconds() / 60)

    rows = conn.execute(
        """
        SELECT phase, COUNT(*) AS invocation_count, COALESCE(SUM(duration_ms), 0) AS agent_ms
        FROM agent_invocations
        WHERE feature_id = ? AND ended_at IS NOT NULL
        GROUP BY phase
        """,
        (feature_id,),
    ).fetchall()
    for row in rows:
        phase = Phase(row["phase"])
        entry = summary.setdefault(phase.value, {
            "phase": phase.value,
            "phase_name": phase.label,
            "visits": 0,
            "wall_clock_minutes": 0.0,
            "invocation_count": 0,
            "agent_ms": 0,
        })
        entry["invocation_count"] = row["invocation_count"]
        entry["agent_ms"] = row["agent_ms"]

    for entry in summary.values():
        entry["wall_clock_minutes"] = round(entry["wall_clock_minutes"], 1)
    return [summary[key] for key in sorted(summary)]


def get_agent_durations(conn: sqlite3.Connection, feature_id: str) -> list[dict[str, Any]]:
    """Per (actor, phase) invocation statistics over ended invocations."""
    get_feature(conn, feature_id)
    rows = conn.execute(
        """
        SELECT actor, phase,
               COUNT(*) AS invocation_count,
               SUM(duration_ms) AS total_ms,
               AVG(duration_ms) AS avg_ms,
               MIN(duration_ms) AS min_ms,
               MAX(duration_ms) AS max_ms
        FROM agent_invocations
        WHERE feature_id = ? AND ended_at IS NOT NULL
        GROUP BY actor, phase
        ORDER BY phase, actor
        """,
        (feature_id,),
    ).fetchall()
    return [dict(r) for r in rows]
