#!/usr/bin/env python3
# Ticket: 0091_workflow_control_plane
# Design: DESIGN.md
"""
Control Plane Database Schema

SQLite schema for the control plane. Includes:
- features: the canonical record for each unit of work
- phase_transitions: immutable phase history
- blockers / quality_gates: the gating subsystem
- locks / feature_conflicts: the concurrency coordinator
- agent_invocations / iteration_tracking: durations and rework history
- learnings / learning_conflicts: the knowledge evolution engine
- propagation_targets / propagation_records: the propagation subsystem
- feature_evals / system_health_evals / eval_alerts: evaluation snapshots
- audit_log: immutable audit trail for every mutation

Schema version is stored in PRAGMA user_version. The migrate() function
applies schema changes incrementally and is idempotent.

Every write goes through write_transaction(), which opens the transaction
with BEGIN IMMEDIATE so concurrent writers serialize on the reserved lock
instead of failing with OperationalError mid-transaction.
"""

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .models import (
    AlertSeverity,
    BlockerSeverity,
    BlockerStatus,
    BlockerType,
    ConflictRisk,
    ConflictStatus,
    ConflictStrategy,
    FeatureStatus,
    GateStatus,
    HealthStatus,
    Importance,
    LearningCategory,
    LearningConflictKind,
    LearningConflictStatus,
    LockKind,
    Phase,
    SeverityTier,
    TargetKind,
    TransitionKind,
    sql_values,
)

logger = logging.getLogger(__name__)

# Current schema version; increment when adding tables or columns
SCHEMA_VERSION = 1

BUSY_TIMEOUT_MS = 5000

# ---------------------------------------------------------------------------
# Connection helpers
# ---------------------------------------------------------------------------


def open_db(db_path: str | Path) -> sqlite3.Connection:
    """
    Open (or create) the control plane database with required PRAGMAs.

    Sets:
    - journal_mode=WAL: concurrent reads while single writer holds lock
    - busy_timeout=5000: wait on a locked database instead of failing
    - foreign_keys=ON: enforce referential integrity
    """
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def write_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    Run the enclosed statements as one BEGIN IMMEDIATE transaction.

    Commits on normal exit. On any exception the transaction is rolled back
    and the exception re-raised, so a state change and its audit entry are
    either both written or both absent.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
        conn.execute("COMMIT")
    except Exception:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.OperationalError:
            logger.warning("ROLLBACK failed; transaction was already closed")
        raise


# ---------------------------------------------------------------------------
# DDL, ordered by dependency (no FK violations on fresh create)
# ---------------------------------------------------------------------------

_CREATE_FEATURES = f"""
CREATE TABLE IF NOT EXISTS features (
    id                  TEXT PRIMARY KEY,
    name                TEXT NOT NULL,
    complexity_level    INTEGER NOT NULL CHECK(complexity_level BETWEEN 1 AND 3),
    severity            TEXT NOT NULL DEFAULT 'ROUTINE'
                            CHECK(severity IN ({sql_values(SeverityTier)})),
    current_phase       TEXT NOT NULL DEFAULT '0'
                            CHECK(current_phase IN ({sql_values(Phase)})),
    status              TEXT NOT NULL DEFAULT 'IN_PROGRESS'
                            CHECK(status IN ({sql_values(FeatureStatus)})),
    epic_id             TEXT,
    parent_feature_id   TEXT REFERENCES features(id),
    created_at          TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at          TEXT NOT NULL DEFAULT (datetime('now')),
    completed_at        TEXT
)
"""

_CREATE_PHASE_TRANSITIONS = f"""
CREATE TABLE IF NOT EXISTS phase_transitions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    feature_id      TEXT NOT NULL REFERENCES features(id),
    from_phase      TEXT NOT NULL CHECK(from_phase IN ({sql_values(Phase)})),
    to_phase        TEXT NOT NULL CHECK(to_phase IN ({sql_values(Phase)})),
    kind            TEXT NOT NULL CHECK(kind IN ({sql_values(TransitionKind)})),
    actor           TEXT NOT NULL,
    note            TEXT,
    transitioned_at TEXT NOT NULL DEFAULT (datetime('now'))
)
"""

_CREATE_BLOCKERS = f"""
CREATE TABLE IF NOT EXISTS blockers (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    feature_id          TEXT NOT NULL REFERENCES features(id),
    phase               TEXT NOT NULL CHECK(phase IN ({sql_values(Phase)})),
    blocker_type        TEXT NOT NULL CHECK(blocker_type IN ({sql_values(BlockerType)})),
    severity            TEXT NOT NULL CHECK(severity IN ({sql_values(BlockerSeverity)})),
    status              TEXT NOT NULL DEFAULT 'OPEN'
                            CHECK(status IN ({sql_values(BlockerStatus)})),
    title               TEXT NOT NULL,
    description         TEXT,
    created_by          TEXT NOT NULL,
    resolved_by         TEXT,
    resolution_notes    TEXT,
    escalation_notes    TEXT,
    created_at          TEXT NOT NULL DEFAULT (datetime('now')),
    resolved_at         TEXT
)
"""

# attempt = phase visit number; re-entering a phase opens a new gate occasion
_CREATE_QUALITY_GATES = f"""
CREATE TABLE IF NOT EXISTS quality_gates (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    feature_id      TEXT NOT NULL REFERENCES features(id),
    gate_name       TEXT NOT NULL,
    phase           TEXT NOT NULL CHECK(phase IN ({sql_values(Phase)})),
    attempt         INTEGER NOT NULL DEFAULT 1 CHECK(attempt >= 1),
    status          TEXT NOT NULL CHECK(status IN ({sql_values(GateStatus)})),
    approver        TEXT NOT NULL,
    notes           TEXT,
    evaluated_at    TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE(feature_id, gate_name, phase, attempt)
)
"""

_CREATE_LOCKS = f"""
CREATE TABLE IF NOT EXISTS locks (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    feature_id  TEXT NOT NULL REFERENCES features(id),
    path        TEXT NOT NULL,
    kind        TEXT NOT NULL DEFAULT 'FILE' CHECK(kind IN ({sql_values(LockKind)})),
    holder      TEXT NOT NULL,
    acquired_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE(feature_id, path)
)
"""

_CREATE_FEATURE_CONFLICTS = f"""
CREATE TABLE IF NOT EXISTS feature_conflicts (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    feature_a_id    TEXT NOT NULL REFERENCES features(id),
    feature_b_id    TEXT NOT NULL REFERENCES features(id),
    paths           TEXT NOT NULL DEFAULT '[]',     -- JSON array of overlapping paths
    risk            TEXT NOT NULL CHECK(risk IN ({sql_values(ConflictRisk)})),
    detected_phase  TEXT NOT NULL CHECK(detected_phase IN ({sql_values(Phase)})),
    status          TEXT NOT NULL DEFAULT 'DETECTED'
                        CHECK(status IN ({sql_values(ConflictStatus)})),
    strategy        TEXT CHECK(strategy IS NULL OR strategy IN ({sql_values(ConflictStrategy)})),
    notes           TEXT,
    detected_at     TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at      TEXT NOT NULL DEFAULT (datetime('now')),
    CHECK(feature_a_id < feature_b_id),
    UNIQUE(feature_a_id, feature_b_id)
)
"""

_CREATE_AGENT_INVOCATIONS = f"""
CREATE TABLE IF NOT EXISTS agent_invocations (
    id          TEXT PRIMARY KEY,
    feature_id  TEXT NOT NULL REFERENCES features(id),
    phase       TEXT NOT NULL CHECK(phase IN ({sql_values(Phase)})),
    actor       TEXT NOT NULL,
    operation   TEXT NOT NULL,
    aids        TEXT NOT NULL DEFAULT '[]',         -- JSON array of opaque aid identifiers
    started_at  TEXT NOT NULL DEFAULT (datetime('now')),
    ended_at    TEXT,
    duration_ms INTEGER,
    notes       TEXT
)
"""

_CREATE_ITERATION_TRACKING = """
CREATE TABLE IF NOT EXISTS iteration_tracking (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    feature_id              TEXT NOT NULL REFERENCES features(id),
    iteration_number        INTEGER NOT NULL CHECK(iteration_number >= 1),
    spec_version            TEXT,
    issues_found            INTEGER NOT NULL DEFAULT 0,
    issues_resolved         INTEGER NOT NULL DEFAULT 0,
    change_percent          REAL,
    convergence_detected    INTEGER NOT NULL DEFAULT 0 CHECK(convergence_detected IN (0, 1)),
    thrashing_detected      INTEGER NOT NULL DEFAULT 0 CHECK(thrashing_detected IN (0, 1)),
    recorded_by             TEXT NOT NULL,
    recorded_at             TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE(feature_id, iteration_number)
)
"""

_CREATE_LEARNINGS = f"""
CREATE TABLE IF NOT EXISTS learnings (
    id                  TEXT PRIMARY KEY,
    predecessor_id      TEXT REFERENCES learnings(id),
    iteration_number    INTEGER NOT NULL DEFAULT 1 CHECK(iteration_number >= 1),
    feature_id          TEXT REFERENCES features(id),
    task_id             TEXT,
    phase               TEXT CHECK(phase IS NULL OR phase IN ({sql_values(Phase)})),
    agent               TEXT,
    category            TEXT NOT NULL CHECK(category IN ({sql_values(LearningCategory)})),
    title               TEXT NOT NULL,
    content             TEXT NOT NULL,
    delta_summary       TEXT,
    confidence          REAL NOT NULL DEFAULT 0.50
                            CHECK(confidence >= 0.0 AND confidence <= 1.0),
    validation_count    INTEGER NOT NULL DEFAULT 0,
    validated_by        TEXT NOT NULL DEFAULT '[]',     -- JSON array of actors
    last_validated_at   TEXT,
    importance          TEXT NOT NULL DEFAULT 'MEDIUM'
                            CHECK(importance IN ({sql_values(Importance)})),
    tags                TEXT NOT NULL DEFAULT '[]',     -- JSON array
    created_by          TEXT NOT NULL,
    is_superseded       INTEGER NOT NULL DEFAULT 0 CHECK(is_superseded IN (0, 1)),
    superseded_by       TEXT REFERENCES learnings(id),
    superseded_at       TEXT,
    propagated_to       TEXT NOT NULL DEFAULT '[]',     -- legacy all-or-nothing destinations
    propagated_at       TEXT,
    propagation_summary TEXT,
    created_at          TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at          TEXT NOT NULL DEFAULT (datetime('now'))
)
"""

_CREATE_LEARNING_CONFLICTS = f"""
CREATE TABLE IF NOT EXISTS learning_conflicts (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    learning_a_id       TEXT NOT NULL REFERENCES learnings(id),
    learning_b_id       TEXT NOT NULL REFERENCES learnings(id),
    kind                TEXT NOT NULL CHECK(kind IN ({sql_values(LearningConflictKind)})),
    description         TEXT,
    status              TEXT NOT NULL DEFAULT 'OPEN'
                            CHECK(status IN ({sql_values(LearningConflictStatus)})),
    detected_by         TEXT NOT NULL,
    resolution          TEXT,
    resolved_by         TEXT,
    resolved_at         TEXT,
    winning_learning_id TEXT REFERENCES learnings(id),
    detected_at         TEXT NOT NULL DEFAULT (datetime('now')),
    CHECK(learning_a_id < learning_b_id),
    UNIQUE(learning_a_id, learning_b_id)
)
"""

_PATH_RULE = "((target_kind = 'global_note' AND target_path IS NULL) OR " \
             "(target_kind != 'global_note' AND target_path IS NOT NULL AND target_path != ''))"

_CREATE_PROPAGATION_TARGETS = f"""
CREATE TABLE IF NOT EXISTS propagation_targets (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    learning_id     TEXT NOT NULL REFERENCES learnings(id),
    target_kind     TEXT NOT NULL CHECK(target_kind IN ({sql_values(TargetKind)})),
    target_path     TEXT,
    relevance       REAL NOT NULL DEFAULT 0.80 CHECK(relevance >= 0.60 AND relevance <= 1.0),
    declared_at     TEXT NOT NULL DEFAULT (datetime('now')),
    CHECK {_PATH_RULE}
)
"""

_CREATE_PROPAGATION_RECORDS = f"""
CREATE TABLE IF NOT EXISTS propagation_records (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    learning_id     TEXT NOT NULL REFERENCES learnings(id),
    target_kind     TEXT NOT NULL CHECK(target_kind IN ({sql_values(TargetKind)})),
    target_path     TEXT,
    propagated_by   TEXT NOT NULL,
    section         TEXT NOT NULL,
    propagated_at   TEXT NOT NULL DEFAULT (datetime('now')),
    CHECK {_PATH_RULE}
)
"""

_CREATE_FEATURE_EVALS = f"""
CREATE TABLE IF NOT EXISTS feature_evals (
    id                      TEXT PRIMARY KEY,
    feature_id              TEXT NOT NULL REFERENCES features(id),
    efficiency_score        REAL NOT NULL,
    quality_score           REAL NOT NULL,
    overall_score           REAL NOT NULL,
    health_status           TEXT NOT NULL CHECK(health_status IN ({sql_values(HealthStatus)})),
    efficiency_breakdown    TEXT NOT NULL,      -- JSON
    quality_breakdown       TEXT NOT NULL,      -- JSON
    learning_metrics        TEXT NOT NULL,      -- JSON
    raw_metrics             TEXT NOT NULL,      -- JSON
    computed_at             TEXT NOT NULL DEFAULT (datetime('now'))
)
"""

_CREATE_SYSTEM_HEALTH_EVALS = f"""
CREATE TABLE IF NOT EXISTS system_health_evals (
    id                  TEXT PRIMARY KEY,
    period_days         INTEGER NOT NULL CHECK(period_days IN (7, 30, 90)),
    overall_score       REAL NOT NULL,
    health_status       TEXT NOT NULL CHECK(health_status IN ({sql_values(HealthStatus)})),
    workflow_metrics    TEXT NOT NULL,          -- JSON
    quality_metrics     TEXT NOT NULL,          -- JSON
    learning_metrics    TEXT NOT NULL,          -- JSON
    alerts              TEXT NOT NULL,          -- JSON array
    computed_at         TEXT NOT NULL DEFAULT (datetime('now'))
)
"""

_CREATE_EVAL_ALERTS = f"""
CREATE TABLE IF NOT EXISTS eval_alerts (
    id                  TEXT PRIMARY KEY,
    severity            TEXT NOT NULL CHECK(severity IN ({sql_values(AlertSeverity)})),
    dimension           TEXT NOT NULL,
    message             TEXT NOT NULL,
    current_value       REAL,
    threshold           REAL,
    source_type         TEXT NOT NULL CHECK(source_type IN ('feature', 'system')),
    source_id           TEXT NOT NULL,
    feature_id          TEXT REFERENCES features(id),
    created_at          TEXT NOT NULL DEFAULT (datetime('now')),
    acknowledged_at     TEXT,
    acknowledged_by     TEXT,
    resolved_at         TEXT,
    resolved_by         TEXT,
    resolution_notes    TEXT
)
"""

_CREATE_AUDIT_LOG = """
CREATE TABLE IF NOT EXISTS audit_log (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp   TEXT NOT NULL DEFAULT (datetime('now')),
    actor       TEXT NOT NULL,                  -- human or agent name supplied by the caller
    action      TEXT NOT NULL,                  -- e.g. "transition_phase", "resolve_blocker"
    entity_type TEXT NOT NULL,                  -- "feature", "blocker", "learning", ...
    entity_id   TEXT NOT NULL,
    feature_id  TEXT,
    old_state   TEXT,
    new_state   TEXT,
    details     TEXT                            -- JSON blob with additional context
)
"""

# ---------------------------------------------------------------------------
# Indexes for common queries
# ---------------------------------------------------------------------------

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_features_status ON features(status)",
    "CREATE INDEX IF NOT EXISTS idx_transitions_feature ON phase_transitions(feature_id, id)",
    "CREATE INDEX IF NOT EXISTS idx_blockers_feature ON blockers(feature_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_gates_feature ON quality_gates(feature_id)",
    "CREATE INDEX IF NOT EXISTS idx_locks_path ON locks(path)",
    "CREATE INDEX IF NOT EXISTS idx_invocations_feature ON agent_invocations(feature_id)",
    "CREATE INDEX IF NOT EXISTS idx_learnings_category ON learnings(category, is_superseded)",
    "CREATE INDEX IF NOT EXISTS idx_learnings_predecessor ON learnings(predecessor_id)",
    "CREATE INDEX IF NOT EXISTS idx_learnings_feature ON learnings(feature_id)",
    "CREATE INDEX IF NOT EXISTS idx_alerts_active ON eval_alerts(created_at) WHERE resolved_at IS NULL",
    "CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_log(entity_type, entity_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_feature ON audit_log(feature_id)",
    # NULL-safe uniqueness: global notes carry no path, so they get their own index
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_targets_global ON propagation_targets(learning_id) "
    "WHERE target_kind = 'global_note'",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_targets_path ON propagation_targets(learning_id, target_kind, target_path) "
    "WHERE target_kind != 'global_note'",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_records_global ON propagation_records(learning_id) "
    "WHERE target_kind = 'global_note'",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_records_path ON propagation_records(learning_id, target_kind, target_path) "
    "WHERE target_kind != 'global_note'",
]

# All DDL in dependency order
SCHEMA_STATEMENTS: list[str] = [
    _CREATE_FEATURES,
    _CREATE_PHASE_TRANSITIONS,
    _CREATE_BLOCKERS,
    _CREATE_QUALITY_GATES,
    _CREATE_LOCKS,
    _CREATE_FEATURE_CONFLICTS,
    _CREATE_AGENT_INVOCATIONS,
    _CREATE_ITERATION_TRACKING,
    _CREATE_LEARNINGS,
    _CREATE_LEARNING_CONFLICTS,
    _CREATE_PROPAGATION_TARGETS,
    _CREATE_PROPAGATION_RECORDS,
    _CREATE_FEATURE_EVALS,
    _CREATE_SYSTEM_HEALTH_EVALS,
    _CREATE_EVAL_ALERTS,
    _CREATE_AUDIT_LOG,
    *_INDEXES,
]


# ---------------------------------------------------------------------------
# Migration runner
# ---------------------------------------------------------------------------


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Read the current schema version from PRAGMA user_version."""
    return conn.execute("PRAGMA user_version").fetchone()[0]


def set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    """Write schema version to PRAGMA user_version (PRAGMA takes no bound parameters)."""
    conn.execute(f"PRAGMA user_version = {version}")


def migrate(conn: sqlite3.Connection) -> None:
    """
    Apply schema migrations incrementally.

    Idempotent; safe to call on an existing database. Uses PRAGMA user_version
    to track which migrations have been applied.

    Version history:
    0 -> 1: Initial schema (all tables and indexes above)
    """
    current = get_schema_version(conn)

    if current < 1:
        logger.info("Migrating control plane schema %d -> 1", current)
        for stmt in SCHEMA_STATEMENTS:
            conn.execute(stmt)
        set_schema_version(conn, 1)
        conn.commit()


def create_db(db_path: str | Path) -> sqlite3.Connection:
    """
    Create or open a control plane database, applying all migrations.

    Returns an open connection with WAL mode, busy_timeout=5000,
    and foreign_keys=ON. The caller is responsible for closing it.
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = open_db(path)
    migrate(conn)
    return conn
