"""
Tests for engine/schema.py

Validates:
- Schema creation on a fresh database
- Migration idempotency (migrate() is safe to call repeatedly)
- All expected tables exist after migration
- PRAGMA settings (WAL, busy_timeout, foreign keys) are applied
- write_transaction commits on success and rolls back on error
- CHECK constraints mirror the closed enumerations
"""

import sqlite3
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from controlplane.engine.schema import (
    BUSY_TIMEOUT_MS,
    SCHEMA_VERSION,
    create_db,
    get_schema_version,
    migrate,
    open_db,
    write_transaction,
)


EXPECTED_TABLES = {
    "features",
    "phase_transitions",
    "blockers",
    "quality_gates",
    "locks",
    "feature_conflicts",
    "agent_invocations",
    "iteration_tracking",
    "learnings",
    "learning_conflicts",
    "propagation_targets",
    "propagation_records",
    "feature_evals",
    "system_health_evals",
    "eval_alerts",
    "audit_log",
}


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a path to a temporary database file."""
    return str(tmp_path / "test_controlplane.db")


@pytest.fixture
def db_conn(tmp_db_path):
    conn = create_db(tmp_db_path)
    yield conn
    conn.close()


# ---------------------------------------------------------------------------
# Schema creation tests
# ---------------------------------------------------------------------------


def test_create_db_creates_all_tables(db_conn):
    """create_db() should create all expected tables."""
    tables = {
        row[0]
        for row in db_conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
    }
    assert EXPECTED_TABLES.issubset(tables), f"Missing: {EXPECTED_TABLES - tables}"


def test_create_db_sets_schema_version(db_conn):
    assert get_schema_version(db_conn) == SCHEMA_VERSION


def test_create_db_makes_parent_directory(tmp_path):
    """The database directory is created on demand."""
    db_path = tmp_path / "nested" / ".controlplane" / "controlplane.db"
    conn = create_db(db_path)
    conn.close()
    assert db_path.exists()


def test_migrate_is_idempotent(db_conn):
    """Calling migrate() again on a current database changes nothing."""
    migrate(db_conn)
    migrate(db_conn)
    assert get_schema_version(db_conn) == SCHEMA_VERSION


def test_reopen_existing_database_keeps_rows(tmp_db_path):
    conn = create_db(tmp_db_path)
    conn.execute("INSERT INTO features (id, name, complexity_level) VALUES ('F001', 'Test', 1)")
    conn.commit()
    conn.close()

    conn = create_db(tmp_db_path)
    try:
        count = conn.execute("SELECT COUNT(*) FROM features").fetchone()[0]
        assert count == 1
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# PRAGMA tests
# ---------------------------------------------------------------------------


def test_open_db_enables_wal(db_conn):
    mode = db_conn.execute("PRAGMA journal_mode").fetchone()[0]
    assert mode.lower() == "wal"


def test_open_db_sets_busy_timeout(db_conn):
    timeout = db_conn.execute("PRAGMA busy_timeout").fetchone()[0]
    assert timeout == BUSY_TIMEOUT_MS


def test_open_db_enables_foreign_keys(db_conn):
    """Inserting a transition for a missing feature violates the foreign key."""
    assert db_conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
    with pytest.raises(sqlite3.IntegrityError):
        db_conn.execute(
            "INSERT INTO phase_transitions (feature_id, from_phase, to_phase, kind, actor) "
            "VALUES ('missing', '0', '1', 'FORWARD', 'tester')"
        )
    db_conn.rollback()


def test_open_db_returns_row_factory(tmp_db_path):
    create_db(tmp_db_path).close()
    conn = open_db(tmp_db_path)
    try:
        row = conn.execute("SELECT 1 AS one").fetchone()
        assert row["one"] == 1
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Constraints
# ---------------------------------------------------------------------------


def test_check_constraint_rejects_unknown_phase(db_conn):
    with pytest.raises(sqlite3.IntegrityError):
        db_conn.execute(
            "INSERT INTO features (id, name, complexity_level, current_phase) "
            "VALUES ('F001', 'Test', 1, '9')"
        )
    db_conn.rollback()


def test_check_constraint_rejects_bad_complexity(db_conn):
    with pytest.raises(sqlite3.IntegrityError):
        db_conn.execute(
            "INSERT INTO features (id, name, complexity_level) VALUES ('F001', 'Test', 4)"
        )
    db_conn.rollback()


# ---------------------------------------------------------------------------
# write_transaction
# ---------------------------------------------------------------------------


def test_write_transaction_commits(tmp_db_path, db_conn):
    with write_transaction(db_conn):
        db_conn.execute("INSERT INTO features (id, name, complexity_level) VALUES ('F001', 'A', 1)")

    other = open_db(tmp_db_path)
    try:
        assert other.execute("SELECT COUNT(*) FROM features").fetchone()[0] == 1
    finally:
        other.close()


def test_write_transaction_rolls_back_on_error(db_conn):
    """A failure inside the block leaves no partial writes behind."""
    with pytest.raises(RuntimeError):
        with write_transaction(db_conn):
            db_conn.execute(
                "INSERT INTO features (id, name, complexity_level) VALUES ('F001', 'A', 1)"
            )
            raise RuntimeError("boom")

    assert db_conn.execute("SELECT COUNT(*) FROM features").fetchone()[0] == 0
    assert not db_conn.in_transaction
