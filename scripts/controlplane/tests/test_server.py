"""
Tests for server/server.py

Validates:
- ControlPlaneServer methods return JSON-ready dicts
- The default actor comes from .controlplane/config.yaml
- run_tool() turns engine errors into {"error", "error_type"} JSON
- detect_learning_conflicts(record=True) flags every candidate
- The dashboard summarizes features, blockers, queue and alerts
"""

import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from controlplane.server.server import ControlPlaneServer, run_tool


@pytest.fixture
def server(tmp_path):
    cs = ControlPlaneServer(str(tmp_path / "server.db"), str(tmp_path))
    yield cs
    cs.close()


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def test_create_feature_message_and_default_actor(server):
    result = server.create_feature("F001", "Search", 2)

    assert result["id"] == "F001"
    assert result["message"] == "Feature 'F001' created at phase 0 (Planning)."
    assert server.get_audit_log("F001")[0]["actor"] == "cli-user"
    json.dumps(result)


def test_configured_default_actor(tmp_path):
    config_dir = tmp_path / ".controlplane"
    config_dir.mkdir()
    (config_dir / "config.yaml").write_text("actors:\n  default: ops-bot\n")

    cs = ControlPlaneServer(str(tmp_path / "server.db"), str(tmp_path))
    try:
        cs.create_feature("F001", "Search", 1)
        assert cs.get_audit_log("F001")[0]["actor"] == "ops-bot"
    finally:
        cs.close()


def test_transition_message(server):
    server.create_feature("F001", "Search", 1)
    result = server.transition_phase("F001", "1", actor="planner")
    assert result["message"] == "Feature 'F001' moved 0 (Planning) -> 1 (Discovery) (FORWARD)."


def test_blocker_messages(server):
    server.create_feature("F001", "Search", 1)
    first = server.create_blocker("F001", "HUMAN_DECISION_REQUIRED", "HIGH", "Pick a vendor")
    second = server.create_blocker("F001", "VALIDATION_FAILED", "LOW", "Flaky test")

    assert first["message"] == f"Blocker {first['id']} opened; feature 'F001' is BLOCKED."
    assert server.resolve_blocker(first["id"])["message"] == "1 unresolved blocker(s) remain."
    last = server.resolve_blocker(second["id"], resolution_notes="Retried")
    assert last["message"] == "Last blocker resolved; feature is back IN_PROGRESS."
    assert last["feature_status"] == "IN_PROGRESS"


def test_record_learning_conflicts(server):
    base = server.create_learning("PATTERN", "Use WAL mode", "Enable WAL.", tags=["sqlite"])
    other = server.create_learning("PATTERN", "Retry busy writers", "Back off.", tags=["sqlite"])

    dry_run = server.detect_learning_conflicts(base["id"])
    assert [c["learning_id"] for c in dry_run["candidates"]] == [other["id"]]
    assert dry_run["flagged_conflict_ids"] == []

    recorded = server.detect_learning_conflicts(base["id"], record=True)
    assert len(recorded["flagged_conflict_ids"]) == 1
    assert server.detect_learning_conflicts(base["id"])["candidates"] == []


def test_record_learning_conflicts_skips_closed_pairs(server):
    base = server.create_learning("PATTERN", "Use WAL mode", "Enable WAL.", tags=["sqlite"])
    deferred = server.create_learning("PATTERN", "Retry busy writers", "Back off.", tags=["sqlite"])
    fresh = server.create_learning("PATTERN", "Vacuum nightly", "Reclaim pages.", tags=["sqlite"])
    earlier = server.flag_learning_conflict(base["id"], deferred["id"], "SCOPE_OVERLAP")
    server.resolve_learning_conflict(earlier["id"], "DEFERRED", resolution="Revisit later")

    result = server.detect_learning_conflicts(base["id"], record=True)

    assert len(result["flagged_conflict_ids"]) == 1
    assert result["skipped"] == [
        {"learning_id": deferred["id"], "conflict_id": earlier["id"], "status": "DEFERRED"}
    ]
    pairs = server.conn.execute(
        "SELECT COUNT(*) FROM learning_conflicts WHERE learning_a_id = ? OR learning_b_id = ?",
        (fresh["id"], fresh["id"]),
    ).fetchone()[0]
    assert pairs == 1


def test_record_propagation_duplicate_message(server):
    learning = server.create_learning("DECISION", "Use uuid ids", "uuid4 strings.", confidence=0.9)
    first = server.record_propagation(learning["id"], "global_note")
    second = server.record_propagation(learning["id"], "global_note")

    assert first["success"] is True
    assert first["message"] == "Propagation recorded."
    assert second["success"] is False
    assert second["message"].startswith("Already propagated at ")


def test_get_learning_includes_chain_and_propagation(server):
    learning = server.create_learning("DECISION", "v1", "content", confidence=0.9)
    successor = server.evolve_learning(learning["id"], "v2", "content 2", "clarified")

    detail = server.get_learning(successor["id"])
    assert [item["title"] for item in detail["chain"]] == ["v1", "v2"]
    assert detail["propagation"]["total"] == 0
    assert "superseded" in successor["message"]


# ---------------------------------------------------------------------------
# run_tool
# ---------------------------------------------------------------------------


def test_run_tool_success(server):
    payload = json.loads(run_tool(server.create_feature, "F001", "Search", 1))
    assert payload["current_phase"] == "0"
    assert payload["status"] == "IN_PROGRESS"


def test_run_tool_not_found(server):
    payload = json.loads(run_tool(server.get_feature_status, "NOPE"))
    assert payload == {"error": "Feature 'NOPE' not found", "error_type": "NotFoundError"}


def test_run_tool_phase_skip(server):
    server.create_feature("F001", "Search", 1)
    payload = json.loads(run_tool(server.transition_phase, "F001", "3"))
    assert payload["error_type"] == "PhaseSkipError"
    assert server.get_feature_status("F001")["current_phase"] == "0"


def test_run_tool_collision(server):
    server.create_feature("F001", "Search", 1)
    server.acquire_lock("F001", "src/app.py", holder="alice")
    payload = json.loads(run_tool(server.acquire_lock, "F001", "src/app.py", "bob"))
    assert payload["error_type"] == "CollisionError"
    assert "alice" in payload["error"]


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


def test_dashboard(server):
    server.create_feature("F001", "Search", 1)
    server.create_feature("F002", "Reports", 1)
    server.create_blocker("F002", "HUMAN_DECISION_REQUIRED", "MEDIUM", "Pick a vendor")
    server.cancel_feature("F001", reason="dropped")
    learning = server.create_learning("DECISION", "Use uuid ids", "uuid4.", confidence=0.9)
    server.declare_target(learning["id"], "global_note")

    dashboard = server.get_dashboard()

    assert dashboard["features_by_status"] == {"BLOCKED": 1, "CANCELLED": 1}
    assert dashboard["active_features_by_phase"] == {"0": 1}
    assert dashboard["open_blockers"] == 1
    assert dashboard["propagation_queue_depth"] == 1
    assert dashboard["pending_evolution_syncs"] == 0
    assert dashboard["active_alerts"] == 0
    assert dashboard["latest_health"] is None
    json.dumps(dashboard, default=str)
