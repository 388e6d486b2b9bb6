"""
Tests for engine/knowledge.py

Validates:
- Confidence starts at 0.50 and moves up by +0.15 (validate) / +0.10 (reference)
- Confidence is capped at 1.00
- Evolution appends a successor and supersedes the predecessor atomically
- Superseded learnings reject validation, reference and evolution
- Conflict candidates come from shared tags or similar titles
- Conflicts are recorded once per unordered pair
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from controlplane.engine.errors import CollisionError, InvariantViolationError, NotFoundError
from controlplane.engine.features import create_feature
from controlplane.engine.knowledge import (
    count_open_conflicts,
    create_learning,
    detect_learning_conflicts,
    evolve_learning,
    flag_learning_conflict,
    get_learning,
    get_learning_chain,
    list_learning_conflicts,
    list_learnings,
    reference_learning,
    resolve_learning_conflict,
    validate_learning,
)
from controlplane.engine.models import (
    Importance,
    LearningCategory,
    LearningConflictKind,
    LearningConflictStatus,
    Phase,
)
from controlplane.engine.schema import create_db


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def db_conn(tmp_path):
    conn = create_db(str(tmp_path / "test.db"))
    yield conn
    conn.close()


@pytest.fixture
def learning(db_conn):
    return create_learning(
        db_conn, "PATTERN", "Use WAL mode for SQLite concurrency",
        "Enable journal_mode=WAL before concurrent writers start.", "researcher",
        tags=["sqlite", "concurrency"],
    )


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def test_create_learning_defaults(learning):
    assert learning.category is LearningCategory.PATTERN
    assert learning.confidence == pytest.approx(0.50)
    assert learning.iteration_number == 1
    assert learning.importance is Importance.MEDIUM
    assert learning.tags == ["sqlite", "concurrency"]
    assert learning.validation_count == 0
    assert learning.is_superseded is False


def test_create_learning_with_feature_and_phase(db_conn):
    create_feature(db_conn, "F001", "Search", 1, "planner")
    learning = create_learning(
        db_conn, "GOTCHA", "Index rebuild blocks writers", "Rebuild offline.", "builder",
        feature_id="F001", phase=4, agent="builder", tags=[" index ", "index", ""],
    )
    assert learning.feature_id == "F001"
    assert learning.phase is Phase.BUILDER
    assert learning.tags == ["index"]
    assert [l.id for l in list_learnings(db_conn, feature_id="F001")] == [learning.id]


@pytest.mark.parametrize("kwargs", [
    {"title": "   "},
    {"content": ""},
    {"confidence": 1.2},
    {"confidence": -0.1},
])
def test_create_learning_rejects_bad_input(db_conn, kwargs):
    args = {"title": "A title", "content": "Some content", "confidence": 0.5}
    args.update(kwargs)
    with pytest.raises(InvariantViolationError):
        create_learning(db_conn, "DECISION", args["title"], args["content"], "agent",
                        confidence=args["confidence"])


def test_create_learning_unknown_category(db_conn):
    with pytest.raises(ValueError):
        create_learning(db_conn, "FOLKLORE", "Title", "Content", "agent")


def test_create_learning_unknown_feature(db_conn):
    with pytest.raises(NotFoundError):
        create_learning(db_conn, "DECISION", "Title", "Content", "agent", feature_id="NOPE")


# ---------------------------------------------------------------------------
# Confidence
# ---------------------------------------------------------------------------


def test_validation_raises_confidence(db_conn, learning):
    first = validate_learning(db_conn, learning.id, "reviewer")
    second = validate_learning(db_conn, learning.id, "guardian")

    assert first.confidence == pytest.approx(0.65)
    assert second.confidence == pytest.approx(0.80)
    assert second.validation_count == 2
    assert second.validated_by == ["reviewer", "guardian"]
    assert second.last_validated_at is not None


def test_reference_raises_confidence(db_conn, learning):
    assert reference_learning(db_conn, learning.id, "builder") == pytest.approx(0.60)
    assert get_learning(db_conn, learning.id).confidence == pytest.approx(0.60)


def test_confidence_capped_at_one(db_conn):
    learning = create_learning(db_conn, "DECISION", "Title", "Content", "agent", confidence=0.95)
    assert reference_learning(db_conn, learning.id) == pytest.approx(1.0)
    assert validate_learning(db_conn, learning.id, "reviewer").confidence == pytest.approx(1.0)


def test_unknown_learning_rejected(db_conn):
    with pytest.raises(NotFoundError):
        validate_learning(db_conn, "missing", "reviewer")
    with pytest.raises(NotFoundError):
        reference_learning(db_conn, "missing")


# ---------------------------------------------------------------------------
# Evolution
# ---------------------------------------------------------------------------


def test_evolve_supersedes_predecessor(db_conn, learning):
    validate_learning(db_conn, learning.id, "reviewer")
    validate_learning(db_conn, learning.id, "guardian")

    successor = evolve_learning(
        db_conn, learning.id, "Use WAL mode and a busy timeout",
        "WAL plus busy_timeout=5000.", "Added busy timeout", "researcher",
    )
    predecessor = get_learning(db_conn, learning.id)

    assert successor.iteration_number == 2
    assert successor.predecessor_id == learning.id
    assert successor.confidence == pytest.approx(0.80)
    assert successor.tags == learning.tags
    assert successor.delta_summary == "Added busy timeout"
    assert predecessor.is_superseded is True
    assert predecessor.superseded_by == successor.id
    assert [l.id for l in list_learnings(db_conn)] == [successor.id]
    assert len(list_learnings(db_conn, include_superseded=True)) == 2


def test_superseded_learning_is_frozen(db_conn, learning):
    evolve_learning(db_conn, learning.id, "New title", "New content", "delta", "agent")

    with pytest.raises(InvariantViolationError, match="superseded"):
        validate_learning(db_conn, learning.id, "reviewer")
    with pytest.raises(InvariantViolationError, match="superseded"):
        reference_learning(db_conn, learning.id)
    with pytest.raises(InvariantViolationError, match="already superseded"):
        evolve_learning(db_conn, learning.id, "Other", "Other", "delta", "agent")
    assert get_learning(db_conn, learning.id).confidence == pytest.approx(0.50)


def test_learning_chain_from_any_member(db_conn, learning):
    second = evolve_learning(db_conn, learning.id, "v2", "content v2", "d1", "agent")
    third = evolve_learning(db_conn, second.id, "v3", "content v3", "d2", "agent")

    expected = [learning.id, second.id, third.id]
    assert [l.id for l in get_learning_chain(db_conn, learning.id)] == expected
    assert [l.id for l in get_learning_chain(db_conn, second.id)] == expected
    assert [l.id for l in get_learning_chain(db_conn, third.id)] == expected


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


def test_detect_candidates(db_conn, learning):
    similar = create_learning(
        db_conn, "PATTERN", "SQLite WAL mode concurrency settings", "Tune checkpoints.", "agent",
    )
    tagged = create_learning(
        db_conn, "PATTERN", "Retry on busy errors", "Back off and retry.", "agent",
        tags=["concurrency"],
    )
    create_learning(db_conn, "PATTERN", "Prefer dataclasses for rows", "Use from_row.", "agent")
    create_learning(
        db_conn, "GOTCHA", "SQLite WAL mode concurrency", "Other category.", "agent",
        tags=["sqlite"],
    )

    candidates = detect_learning_conflicts(db_conn, learning.id)

    assert [c["learning_id"] for c in candidates] == [similar.id, tagged.id]
    assert candidates[0]["similarity"] == pytest.approx(0.8)
    assert "title similarity" in candidates[0]["reason"]
    assert candidates[1]["shared_tags"] == ["concurrency"]
    assert all(c["kind"] == "SCOPE_OVERLAP" for c in candidates)
    assert list_learning_conflicts(db_conn) == []


def test_flag_conflict_stores_canonical_pair(db_conn, learning):
    other = create_learning(db_conn, "PATTERN", "Avoid WAL", "Use rollback journal.", "agent")

    conflict = flag_learning_conflict(
        db_conn, other.id, learning.id, "CONTRADICTION", "Opposite advice", "guardian",
    )

    assert (conflict.learning_a_id, conflict.learning_b_id) == tuple(sorted([learning.id, other.id]))
    assert conflict.status is LearningConflictStatus.OPEN
    assert conflict.kind is LearningConflictKind.CONTRADICTION
    assert count_open_conflicts(db_conn, learning.id) == 1

    with pytest.raises(CollisionError):
        flag_learning_conflict(db_conn, learning.id, other.id, "SCOPE_OVERLAP", None, "guardian")


def test_flag_conflict_with_itself_rejected(db_conn, learning):
    with pytest.raises(InvariantViolationError):
        flag_learning_conflict(db_conn, learning.id, learning.id, "CONTRADICTION", None, "agent")


def test_detect_skips_open_pairs(db_conn, learning):
    other = create_learning(
        db_conn, "PATTERN", "Retry busy writers", "Back off.", "agent", tags=["sqlite"],
    )
    assert len(detect_learning_conflicts(db_conn, learning.id)) == 1

    flag_learning_conflict(db_conn, learning.id, other.id, "SCOPE_OVERLAP", None, "agent")
    assert detect_learning_conflicts(db_conn, learning.id) == []


def test_resolve_conflict_lifecycle(db_conn, learning):
    other = create_learning(db_conn, "PATTERN", "Avoid WAL", "Use rollback journal.", "agent")
    conflict = flag_learning_conflict(db_conn, learning.id, other.id, "CONTRADICTION", None, "agent")

    investigating = resolve_learning_conflict(db_conn, conflict.id, "INVESTIGATING", "guardian")
    assert investigating.status is LearningConflictStatus.INVESTIGATING
    assert investigating.resolved_by is None
    assert count_open_conflicts(db_conn, learning.id) == 1

    resolved = resolve_learning_conflict(
        db_conn, conflict.id, "RESOLVED", "guardian", "WAL wins", learning.id,
    )
    assert resolved.status is LearningConflictStatus.RESOLVED
    assert resolved.winning_learning_id == learning.id
    assert resolved.resolved_by == "guardian"
    assert resolved.resolved_at is not None
    assert count_open_conflicts(db_conn, learning.id) == 0

    with pytest.raises(InvariantViolationError, match="already RESOLVED"):
        resolve_learning_conflict(db_conn, conflict.id, "DEFERRED", "guardian")


def test_resolve_conflict_rejections(db_conn, learning):
    other = create_learning(db_conn, "PATTERN", "Avoid WAL", "Use rollback journal.", "agent")
    outsider = create_learning(db_conn, "DECISION", "Unrelated", "Content", "agent")
    conflict = flag_learning_conflict(db_conn, learning.id, other.id, "CONTRADICTION", None, "agent")

    with pytest.raises(InvariantViolationError):
        resolve_learning_conflict(db_conn, conflict.id, "OPEN", "guardian")
    with pytest.raises(InvariantViolationError, match="not part of conflict"):
        resolve_learning_conflict(db_conn, conflict.id, "RESOLVED", "guardian", None, outsider.id)
    with pytest.raises(NotFoundError):
        resolve_learning_conflict(db_conn, 999, "RESOLVED", "guardian")


def test_list_conflicts_filters(db_conn, learning):
    a = create_learning(db_conn, "PATTERN", "Second", "Content", "agent")
    b = create_learning(db_conn, "PATTERN", "Third", "Content", "agent")
    first = flag_learning_conflict(db_conn, learning.id, a.id, "CONTRADICTION", None, "agent")
    flag_learning_conflict(db_conn, a.id, b.id, "VERSION_DRIFT", None, "agent")
    resolve_learning_conflict(db_conn, first.id, "DEFERRED", "guardian")

    assert len(list_learning_conflicts(db_conn)) == 2
    assert len(list_learning_conflicts(db_conn, learning_id=a.id)) == 2
    assert [c.id for c in list_learning_conflicts(db_conn, status="DEFERRED")] == [first.id]
    assert [c.id for c in list_learning_conflicts(db_conn, learning_id=learning.id)] == [first.id]
