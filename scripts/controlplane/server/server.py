#!/usr/bin/env python3
# Ticket: 0091_workflow_control_plane
# Design: DESIGN.md
"""
Control Plane MCP Server

FastMCP server exposing the control plane to agents via MCP tools.
Supports both stdio (local development) and SSE (Docker) transports.

Usage (stdio mode):
    python server.py <db_path> --project-root <path>

Usage (SSE mode):
    python server.py <db_path> --project-root <path> --transport sse --port 8080

Usage (CLI smoke-test):
    python server.py <db_path> --project-root <path> <command>

MCP Tools exposed:
    create_feature / get_feature_status / list_features
    transition_phase (escalation flag) / complete_feature / cancel_feature
    create_blocker / resolve_blocker / escalate_blocker / evaluate_gate
    acquire_lock / release_lock / detect_conflicts / resolve_conflict
    start_invocation / end_invocation / get_phase_durations / record_iteration
    create_learning / evolve_learning / validate_learning / reference_learning
    get_learning_chain / detect_learning_conflicts / flag_learning_conflict
    resolve_learning_conflict
    check_eligibility / declare_target / get_propagation_queue /
    record_propagation / get_propagation_status / get_pending_evolution_syncs /
    format_learning
    compute_feature_eval / compute_system_health / list_alerts /
    acknowledge_alert / resolve_alert
    get_audit_log

MCP Resources:
    controlplane://dashboard             - summary dashboard
    controlplane://feature/{feature_id}  - full feature status
    controlplane://learning/{learning_id} - learning with its evolution chain

Engine errors are returned as {"error": message, "error_type": class name}
instead of failing the tool call.
"""

import argparse
import json
import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from mcp.server.fastmcp import FastMCP

# Allow running from the scripts/controlplane directory or as a module
_HERE = Path(__file__).parent
sys.path.insert(0, str(_HERE.parent.parent))  # scripts/

from controlplane.engine import audit as audit_mod
from controlplane.engine import coordination, durations, evaluation, features, gating
from controlplane.engine import iterations, knowledge, propagation
from controlplane.engine.config import load_config
from controlplane.engine.models import to_jsonable
from controlplane.engine.schema import create_db

logger = logging.getLogger(__name__)


class ControlPlaneServer:
    """
    Control plane server wrapping the SQLite database.

    Owns the database connection and exposes all control plane operations
    as plain dicts. The FastMCP tools delegate to this class. Engine errors
    propagate from these methods; the tool layer turns them into error JSON.
    """

    def __init__(self, db_path: str, project_root: str):
        self.db_path = db_path
        self.project_root = Path(project_root)
        self.conn = create_db(db_path)
        self.config = load_config(project_root)

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()

    def _actor(self, actor: str | None) -> str:
        return actor or self.config.default_actor

    # -----------------------------------------------------------------------
    # Feature lifecycle
    # -----------------------------------------------------------------------

    def create_feature(
        self,
        feature_id: str,
        name: str,
        complexity_level: int,
        actor: str | None = None,
        severity: str = "ROUTINE",
        epic_id: str | None = None,
        parent_feature_id: str | None = None,
    ) -> dict[str, Any]:
        feature = features.create_feature(
            self.conn, feature_id, name, complexity_level, self._actor(actor),
            severity, epic_id, parent_feature_id,
        )
        result = to_jsonable(feature)
        result["message"] = f"Feature '{feature_id}' created at phase 0 (Planning)."
        return result

    def get_feature_status(self, feature_id: str) -> dict[str, Any]:
        return to_jsonable(features.get_feature_status(self.conn, feature_id))

    def list_features(self, status: str | None = None) -> list[dict[str, Any]]:
        return to_jsonable(features.list_features(self.conn, status))

    def transition_phase(
        self,
        feature_id: str,
        target_phase: str,
        actor: str | None = None,
        note: str | None = None,
        escalation: bool = False,
    ) -> dict[str, Any]:
        """Move a feature to another phase; escalation records kind ESCALATION."""
        move = features.escalate_phase if escalation else features.transition_phase
        transition = move(self.conn, feature_id, target_phase, self._actor(actor), note)
        result = to_jsonable(transition)
        result["message"] = (
            f"Feature '{feature_id}' moved {transition.from_phase.display} -> "
            f"{transition.to_phase.display} ({transition.kind.value})."
        )
        return result

    def complete_feature(self, feature_id: str, actor: str | None = None) -> dict[str, Any]:
        outcome = features.complete_feature(self.conn, feature_id, self._actor(actor))
        result = to_jsonable(outcome)
        result["message"] = (
            f"Feature '{feature_id}' completed. Evaluation {outcome['eval_id']} recorded."
        )
        return result

    def cancel_feature(
        self, feature_id: str, actor: str | None = None, reason: str | None = None,
    ) -> dict[str, Any]:
        return to_jsonable(features.cancel_feature(self.conn, feature_id, self._actor(actor), reason))

    # -----------------------------------------------------------------------
    # Gating
    # -----------------------------------------------------------------------

    def create_blocker(
        self,
        feature_id: str,
        blocker_type: str,
        severity: str,
        title: str,
        actor: str | None = None,
        description: str | None = None,
    ) -> dict[str, Any]:
        blocker = gating.create_blocker(
            self.conn, feature_id, blocker_type, severity, title, self._actor(actor), description,
        )
        result = to_jsonable(blocker)
        result["message"] = f"Blocker {blocker.id} opened; feature '{feature_id}' is BLOCKED."
        return result

    def resolve_blocker(
        self, blocker_id: int, actor: str | None = None, resolution_notes: str | None = None,
    ) -> dict[str, Any]:
        outcome = gating.resolve_blocker(self.conn, blocker_id, self._actor(actor), resolution_notes)
        result = to_jsonable(outcome)
        if outcome["remaining_open"] == 0:
            result["message"] = "Last blocker resolved; feature is back IN_PROGRESS."
        else:
            result["message"] = f"{outcome['remaining_open']} unresolved blocker(s) remain."
        return result

    def escalate_blocker(
        self, blocker_id: int, actor: str | None = None, escalation_notes: str | None = None,
    ) -> dict[str, Any]:
        return to_jsonable(
            gating.escalate_blocker(self.conn, blocker_id, self._actor(actor), escalation_notes)
        )

    def evaluate_gate(
        self,
        feature_id: str,
        gate_name: str,
        status: str,
        approver: str | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        return to_jsonable(
            gating.evaluate_gate(self.conn, feature_id, gate_name, status, self._actor(approver), notes)
        )

    # -----------------------------------------------------------------------
    # Coordination
    # -----------------------------------------------------------------------

    def acquire_lock(
        self, feature_id: str, path: str, holder: str | None = None, kind: str = "FILE",
    ) -> dict[str, Any]:
        return to_jsonable(
            coordination.acquire_lock(self.conn, feature_id, path, self._actor(holder), kind)
        )

    def release_lock(self, feature_id: str, path: str, actor: str | None = None) -> dict[str, Any]:
        released = coordination.release_lock(self.conn, feature_id, path, self._actor(actor))
        return {"released": released, "feature_id": feature_id, "path": path}

    def detect_conflicts(
        self, feature_id: str, paths: list[str], actor: str | None = None,
    ) -> dict[str, Any]:
        conflicts = coordination.detect_conflicts(self.conn, feature_id, paths, self._actor(actor))
        return {"feature_id": feature_id, "conflicts": to_jsonable(conflicts), "count": len(conflicts)}

    def resolve_conflict(
        self, conflict_id: int, strategy: str, actor: str | None = None, notes: str | None = None,
    ) -> dict[str, Any]:
        return to_jsonable(
            coordination.resolve_conflict(self.conn, conflict_id, strategy, self._actor(actor), notes)
        )

    # -----------------------------------------------------------------------
    # Durations and iterations
    # -----------------------------------------------------------------------

    def start_invocation(
        self,
        feature_id: str,
        operation: str,
        actor: str | None = None,
        phase: str | None = None,
        aids: list[str] | None = None,
    ) -> dict[str, Any]:
        invocation_id = durations.start_invocation(
            self.conn, feature_id, self._actor(actor), operation, phase, aids,
        )
        return {
            "invocation_id": invocation_id,
            "message": "Invocation started. Call end_invocation when the work is done.",
        }

    def end_invocation(self, invocation_id: str, notes: str | None = None) -> dict[str, Any]:
        duration_ms = durations.end_invocation(self.conn, invocation_id, notes)
        return {"invocation_id": invocation_id, "duration_ms": duration_ms}

    def get_phase_durations(self, feature_id: str) -> dict[str, Any]:
        return {
            "feature_id": feature_id,
            "phases": durations.get_phase_durations(self.conn, feature_id),
            "agents": durations.get_agent_durations(self.conn, feature_id),
        }

    def record_iteration(
        self,
        feature_id: str,
        actor: str | None = None,
        spec_version: str | None = None,
        issues_found: int = 0,
        issues_resolved: int = 0,
        change_percent: float | None = None,
        thrashing: bool | None = None,
    ) -> dict[str, Any]:
        record = iterations.record_iteration(
            self.conn, feature_id, self._actor(actor), spec_version, issues_found,
            issues_resolved, change_percent, thrashing,
            convergence_threshold=self.config.convergence_threshold,
            thrashing_window=self.config.thrashing_window,
        )
        return to_jsonable(record)

    # -----------------------------------------------------------------------
    # Knowledge
    # -----------------------------------------------------------------------

    def create_learning(
        self,
        category: str,
        title: str,
        content: str,
        actor: str | None = None,
        confidence: float = 0.50,
        importance: str = "MEDIUM",
        tags: list[str] | None = None,
        feature_id: str | None = None,
        phase: str | None = None,
        agent: str | None = None,
    ) -> dict[str, Any]:
        return to_jsonable(knowledge.create_learning(
            self.conn, category, title, content, self._actor(actor), confidence,
            importance, tags, feature_id, phase, agent,
        ))

    def get_learning(self, learning_id: str) -> dict[str, Any]:
        learning = to_jsonable(knowledge.get_learning(self.conn, learning_id))
        learning["chain"] = [
            {"id": item.id, "iteration_number": item.iteration_number, "title": item.title,
             "is_superseded": item.is_superseded}
            for item in knowledge.get_learning_chain(self.conn, learning_id)
        ]
        learning["propagation"] = propagation.get_propagation_status(self.conn, learning_id)
        return learning

    def evolve_learning(
        self,
        predecessor_id: str,
        title: str,
        content: str,
        delta_summary: str,
        actor: str | None = None,
    ) -> dict[str, Any]:
        learning = knowledge.evolve_learning(
            self.conn, predecessor_id, title, content, delta_summary, self._actor(actor),
        )
        result = to_jsonable(learning)
        result["message"] = (
            f"Learning evolved to iteration {learning.iteration_number}; "
            f"'{predecessor_id}' is now superseded."
        )
        return result

    def validate_learning(self, learning_id: str, actor: str | None = None) -> dict[str, Any]:
        return to_jsonable(knowledge.validate_learning(self.conn, learning_id, self._actor(actor)))

    def reference_learning(self, learning_id: str, referenced_by: str | None = None) -> dict[str, Any]:
        confidence = knowledge.reference_learning(self.conn, learning_id, self._actor(referenced_by))
        return {"learning_id": learning_id, "confidence": confidence}

    def get_learning_chain(self, learning_id: str) -> list[dict[str, Any]]:
        return to_jsonable(knowledge.get_learning_chain(self.conn, learning_id))

    def detect_learning_conflicts(
        self,
        learning_id: str,
        record: bool = False,
        actor: str | None = None,
    ) -> dict[str, Any]:
        """
        Report conflict candidates; with record=True each one is also flagged.

        A pair can hold only one conflict row, so candidates whose pair was
        already flagged (and since RESOLVED or DEFERRED) are listed under
        "skipped" instead of being flagged again.
        """
        candidates = knowledge.detect_learning_conflicts(
            self.conn, learning_id, self.config.similarity_threshold,
        )
        flagged = []
        skipped = []
        if record:
            existing = {
                c.learning_b_id if c.learning_a_id == learning_id else c.learning_a_id: c
                for c in knowledge.list_learning_conflicts(self.conn, learning_id=learning_id)
            }
            for candidate in candidates:
                prior = existing.get(candidate["learning_id"])
                if prior is not None:
                    skipped.append({
                        "learning_id": candidate["learning_id"],
                        "conflict_id": prior.id,
                        "status": prior.status.value,
                    })
                    continue
                conflict = knowledge.flag_learning_conflict(
                    self.conn, learning_id, candidate["learning_id"], candidate["kind"],
                    candidate["reason"], self._actor(actor),
                )
                flagged.append(conflict.id)
        return {
            "learning_id": learning_id,
            "candidates": candidates,
            "flagged_conflict_ids": flagged,
            "skipped": skipped,
        }

    def flag_learning_conflict(
        self,
        learning_a_id: str,
        learning_b_id: str,
        kind: str,
        description: str | None = None,
        actor: str | None = None,
    ) -> dict[str, Any]:
        return to_jsonable(knowledge.flag_learning_conflict(
            self.conn, learning_a_id, learning_b_id, kind, description, self._actor(actor),
        ))

    def resolve_learning_conflict(
        self,
        conflict_id: int,
        status: str,
        actor: str | None = None,
        resolution: str | None = None,
        winning_learning_id: str | None = None,
    ) -> dict[str, Any]:
        return to_jsonable(knowledge.resolve_learning_conflict(
            self.conn, conflict_id, status, self._actor(actor), resolution, winning_learning_id,
        ))

    # -----------------------------------------------------------------------
    # Propagation
    # -----------------------------------------------------------------------

    def check_eligibility(self, learning_id: str) -> dict[str, Any]:
        return to_jsonable(propagation.check_eligibility(self.conn, learning_id))

    def declare_target(
        self,
        learning_id: str,
        target_kind: str,
        target_path: str | None = None,
        relevance: float = propagation.DEFAULT_RELEVANCE,
        actor: str | None = None,
    ) -> dict[str, Any]:
        return to_jsonable(propagation.declare_target(
            self.conn, learning_id, target_kind, self._actor(actor), target_path, relevance,
        ))

    def get_propagation_queue(self) -> list[dict[str, Any]]:
        return propagation.get_propagation_queue(self.conn)

    def record_propagation(
        self,
        learning_id: str,
        target_kind: str,
        target_path: str | None = None,
        actor: str | None = None,
        section: str | None = None,
    ) -> dict[str, Any]:
        outcome = propagation.record_propagation(
            self.conn, learning_id, target_kind, target_path, self._actor(actor), section,
        )
        result = to_jsonable(outcome)
        result["message"] = (
            "Propagation recorded." if outcome.success
            else f"Already propagated at {outcome.record.propagated_at}."
        )
        return result

    def get_propagation_status(self, learning_id: str) -> dict[str, Any]:
        return propagation.get_propagation_status(self.conn, learning_id)

    def get_pending_evolution_syncs(self) -> list[dict[str, Any]]:
        return propagation.get_pending_evolution_syncs(self.conn)

    def format_learning(self, learning_id: str) -> dict[str, Any]:
        markdown, reason = propagation.format_learning(self.conn, learning_id)
        return {"learning_id": learning_id, "markdown": markdown, "reason": reason}

    # -----------------------------------------------------------------------
    # Evaluation
    # -----------------------------------------------------------------------

    def compute_feature_eval(self, feature_id: str, actor: str | None = None) -> dict[str, Any]:
        eval_id = evaluation.compute_feature_eval(self.conn, feature_id, self._actor(actor))
        return to_jsonable(evaluation.get_feature_eval(self.conn, eval_id))

    def compute_system_health(self, period_days: int = 7, actor: str | None = None) -> dict[str, Any]:
        eval_id = evaluation.compute_system_health(self.conn, period_days, self._actor(actor))
        return to_jsonable(evaluation.get_system_health(self.conn, eval_id))

    def list_alerts(self, active_only: bool = True, feature_id: str | None = None) -> list[dict[str, Any]]:
        return to_jsonable(evaluation.list_alerts(self.conn, active_only, feature_id))

    def acknowledge_alert(self, alert_id: str, actor: str | None = None) -> dict[str, Any]:
        changed = evaluation.acknowledge_alert(self.conn, alert_id, self._actor(actor))
        return {"alert_id": alert_id, "acknowledged": changed}

    def resolve_alert(
        self, alert_id: str, actor: str | None = None, notes: str | None = None,
    ) -> dict[str, Any]:
        changed = evaluation.resolve_alert(self.conn, alert_id, self._actor(actor), notes)
        return {"alert_id": alert_id, "resolved": changed}

    # -----------------------------------------------------------------------
    # Audit and dashboard
    # -----------------------------------------------------------------------

    def get_audit_log(self, feature_id: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        return audit_mod.query_audit(self.conn, feature_id=feature_id, limit=limit)

    def get_dashboard(self) -> dict[str, Any]:
        """Summary: feature counts by status, open blockers, queue depth, active alerts."""
        status_counts = {
            row["status"]: row["n"]
            for row in self.conn.execute(
                "SELECT status, COUNT(*) AS n FROM features GROUP BY status"
            ).fetchall()
        }
        phase_counts = {
            row["current_phase"]: row["n"]
            for row in self.conn.execute(
                """
                SELECT current_phase, COUNT(*) AS n FROM features
                WHERE status IN ('IN_PROGRESS', 'BLOCKED')
                GROUP BY current_phase
                """
            ).fetchall()
        }
        open_blockers = self.conn.execute(
            "SELECT COUNT(*) AS n FROM blockers WHERE status != 'RESOLVED'"
        ).fetchone()["n"]
        latest_health = evaluation.latest_system_health(self.conn)

        return {
            "features_by_status": status_counts,
            "active_features_by_phase": phase_counts,
            "open_blockers": open_blockers,
            "propagation_queue_depth": len(propagation.get_propagation_queue(self.conn)),
            "pending_evolution_syncs": len(propagation.get_pending_evolution_syncs(self.conn)),
            "active_alerts": len(evaluation.list_alerts(self.conn)),
            "latest_health": to_jsonable(latest_health) if latest_health else None,
        }


# ---------------------------------------------------------------------------
# FastMCP server factory
# ---------------------------------------------------------------------------


def run_tool(operation: Callable[..., Any], *args: Any, **kwargs: Any) -> str:
    """Run a server operation and encode the result (or the engine error) as JSON."""
    try:
        result = operation(*args, **kwargs)
    except ValueError as exc:
        logger.warning("%s failed: %s", operation.__name__, exc)
        return json.dumps({"error": str(exc), "error_type": type(exc).__name__}, indent=2)
    return json.dumps(result, indent=2, default=str)


def _json_list(value: str | None) -> list[str] | None:
    return json.loads(value) if value else None


def create_mcp_server(db_path: str, project_root: str) -> FastMCP:
    """Create a FastMCP server wrapping the ControlPlaneServer."""
    cs = ControlPlaneServer(db_path, project_root)
    mcp = FastMCP("controlplane")

    @mcp.tool()
    def create_feature(
        feature_id: str,
        name: str,
        complexity_level: int,
        actor: str | None = None,
        severity: str = "ROUTINE",
        epic_id: str | None = None,
        parent_feature_id: str | None = None,
    ) -> str:
        """
        Register a new feature at phase 0 (Planning).

        Args:
            feature_id: Unique feature id (e.g. '0091_workflow_control_plane')
            name: Human-readable name
            complexity_level: 1 (small), 2 (medium) or 3 (large); sets expected duration
            actor: Who is creating it
            severity: ROUTINE, EXPEDITED or CRITICAL
        """
        return run_tool(
            cs.create_feature, feature_id, name, complexity_level, actor,
            severity, epic_id, parent_feature_id,
        )

    @mcp.tool()
    def get_feature_status(feature_id: str) -> str:
        """Full feature status with blocker, gate, duration and lock counts."""
        return run_tool(cs.get_feature_status, feature_id)

    @mcp.tool()
    def list_features(status: str | None = None) -> str:
        """
        List features, optionally filtered by status.

        Args:
            status: IN_PROGRESS, BLOCKED, COMPLETED or CANCELLED
        """
        return run_tool(cs.list_features, status)

    @mcp.tool()
    def transition_phase(
        feature_id: str,
        target_phase: str,
        actor: str | None = None,
        note: str | None = None,
        escalation: bool = False,
    ) -> str:
        """
        Move a feature to another phase.

        Phases run 0 (Planning) through 8 (Complete). Moving to the next phase
        or staying put is FORWARD, moving to any earlier phase is rework
        (BACKWARD). Skipping ahead is rejected: complexity changes the depth of
        each phase, never which phases run.

        Args:
            feature_id: Feature to move
            target_phase: "0".."8"
            escalation: Record the move as a human ESCALATION
        """
        return run_tool(cs.transition_phase, feature_id, target_phase, actor, note, escalation)

    @mcp.tool()
    def complete_feature(feature_id: str, actor: str | None = None) -> str:
        """
        Complete a feature: forces phase 8, releases locks, computes its evaluation.

        Fails while any blocker is unresolved.
        """
        return run_tool(cs.complete_feature, feature_id, actor)

    @mcp.tool()
    def cancel_feature(feature_id: str, actor: str | None = None, reason: str | None = None) -> str:
        """Cancel a feature and release its locks. History is kept."""
        return run_tool(cs.cancel_feature, feature_id, actor, reason)

    @mcp.tool()
    def create_blocker(
        feature_id: str,
        blocker_type: str,
        severity: str,
        title: str,
        actor: str | None = None,
        description: str | None = None,
    ) -> str:
        """
        Open a blocker; the feature becomes BLOCKED until every blocker is resolved.

        Args:
            blocker_type: e.g. SPEC_THRASHING, VALIDATION_FAILED, HUMAN_DECISION_REQUIRED
            severity: LOW, MEDIUM, HIGH or CRITICAL
        """
        return run_tool(cs.create_blocker, feature_id, blocker_type, severity, title, actor, description)

    @mcp.tool()
    def resolve_blocker(blocker_id: int, actor: str | None = None, resolution_notes: str | None = None) -> str:
        """Resolve a blocker. The feature returns to IN_PROGRESS when none remain."""
        return run_tool(cs.resolve_blocker, blocker_id, actor, resolution_notes)

    @mcp.tool()
    def escalate_blocker(blocker_id: int, actor: str | None = None, escalation_notes: str | None = None) -> str:
        """Hand a blocker to a human. The feature stays BLOCKED."""
        return run_tool(cs.escalate_blocker, blocker_id, actor, escalation_notes)

    @mcp.tool()
    def evaluate_gate(
        feature_id: str,
        gate_name: str,
        status: str,
        approver: str | None = None,
        notes: str | None = None,
    ) -> str:
        """
        Approve or reject a named quality gate for the feature's current phase visit.

        Args:
            status: APPROVED or REJECTED
        """
        return run_tool(cs.evaluate_gate, feature_id, gate_name, status, approver, notes)

    @mcp.tool()
    def acquire_lock(feature_id: str, path: str, holder: str | None = None, kind: str = "FILE") -> str:
        """Lock a path for a feature. Fails naming the current holder if already held."""
        return run_tool(cs.acquire_lock, feature_id, path, holder, kind)

    @mcp.tool()
    def release_lock(feature_id: str, path: str, actor: str | None = None) -> str:
        """Release a feature's lock on a path."""
        return run_tool(cs.release_lock, feature_id, path, actor)

    @mcp.tool()
    def detect_conflicts(feature_id: str, paths: str, actor: str | None = None) -> str:
        """
        Record conflicts between the paths this feature will touch and other features' locks.

        Args:
            paths: JSON array of paths (e.g. '["src/a.py", "src/b.py"]')
        """
        return run_tool(cs.detect_conflicts, feature_id, _json_list(paths) or [], actor)

    @mcp.tool()
    def resolve_conflict(conflict_id: int, strategy: str, actor: str | None = None, notes: str | None = None) -> str:
        """
        Pick a strategy for a feature conflict.

        Args:
            strategy: SERIALIZE, COORDINATE or ALLOW_PARALLEL
        """
        return run_tool(cs.resolve_conflict, conflict_id, strategy, actor, notes)

    @mcp.tool()
    def start_invocation(
        feature_id: str,
        operation: str,
        actor: str | None = None,
        phase: str | None = None,
        aids: str | None = None,
    ) -> str:
        """
        Start timing a unit of work. Returns an invocation_id for end_invocation.

        Args:
            phase: Defaults to the feature's current phase
            aids: Optional JSON array of opaque identifiers stored with the invocation
        """
        return run_tool(cs.start_invocation, feature_id, operation, actor, phase, _json_list(aids))

    @mcp.tool()
    def end_invocation(invocation_id: str, notes: str | None = None) -> str:
        """Stop timing an invocation. Each invocation can be ended once."""
        return run_tool(cs.end_invocation, invocation_id, notes)

    @mcp.tool()
    def get_phase_durations(feature_id: str) -> str:
        """Per-phase wall clock and agent time for a feature."""
        return run_tool(cs.get_phase_durations, feature_id)

    @mcp.tool()
    def record_iteration(
        feature_id: str,
        actor: str | None = None,
        spec_version: str | None = None,
        issues_found: int = 0,
        issues_resolved: int = 0,
        change_percent: float | None = None,
        thrashing: bool | None = None,
    ) -> str:
        """Record a review/rework iteration; convergence and thrashing are derived unless given."""
        return run_tool(
            cs.record_iteration, feature_id, actor, spec_version, issues_found,
            issues_resolved, change_percent, thrashing,
        )

    @mcp.tool()
    def create_learning(
        category: str,
        title: str,
        content: str,
        actor: str | None = None,
        confidence: float = 0.50,
        importance: str = "MEDIUM",
        tags: str | None = None,
        feature_id: str | None = None,
        phase: str | None = None,
        agent: str | None = None,
    ) -> str:
        """
        Record a new learning (iteration 1).

        Args:
            category: DECISION, PATTERN, GOTCHA, CONVENTION, ARCHITECTURE,
                      RATIONALE, OPTIMIZATION or INTEGRATION
            tags: Optional JSON array of tags
        """
        return run_tool(
            cs.create_learning, category, title, content, actor, confidence,
            importance, _json_list(tags), feature_id, phase, agent,
        )

    @mcp.tool()
    def evolve_learning(
        predecessor_id: str,
        title: str,
        content: str,
        delta_summary: str,
        actor: str | None = None,
    ) -> str:
        """Append the next iteration of a learning; the predecessor becomes superseded."""
        return run_tool(cs.evolve_learning, predecessor_id, title, content, delta_summary, actor)

    @mcp.tool()
    def validate_learning(learning_id: str, actor: str | None = None) -> str:
        """Confirm a learning independently: confidence +0.15 (max 1.00)."""
        return run_tool(cs.validate_learning, learning_id, actor)

    @mcp.tool()
    def reference_learning(learning_id: str, referenced_by: str | None = None) -> str:
        """Record that a learning was applied: confidence +0.10 (max 1.00)."""
        return run_tool(cs.reference_learning, learning_id, referenced_by)

    @mcp.tool()
    def get_learning_chain(learning_id: str) -> str:
        """Every iteration of the learning's evolution chain, oldest first."""
        return run_tool(cs.get_learning_chain, learning_id)

    @mcp.tool()
    def detect_learning_conflicts(learning_id: str, record: bool = False, actor: str | None = None) -> str:
        """
        Find current learnings of the same category with shared tags or similar titles.

        Args:
            record: Also flag each candidate; pairs that already have a
                conflict row are reported under "skipped"
        """
        return run_tool(cs.detect_learning_conflicts, learning_id, record, actor)

    @mcp.tool()
    def flag_learning_conflict(
        learning_a_id: str,
        learning_b_id: str,
        kind: str,
        description: str | None = None,
        actor: str | None = None,
    ) -> str:
        """
        Record a conflict between two learnings.

        Args:
            kind: CONTRADICTION, SCOPE_OVERLAP or VERSION_DRIFT
        """
        return run_tool(cs.flag_learning_conflict, learning_a_id, learning_b_id, kind, description, actor)

    @mcp.tool()
    def resolve_learning_conflict(
        conflict_id: int,
        status: str,
        actor: str | None = None,
        resolution: str | None = None,
        winning_learning_id: str | None = None,
    ) -> str:
        """
        Move a learning conflict to INVESTIGATING, RESOLVED or DEFERRED.
        """
        return run_tool(
            cs.resolve_learning_conflict, conflict_id, status, actor, resolution, winning_learning_id,
        )

    @mcp.tool()
    def check_eligibility(learning_id: str) -> str:
        """Whether a learning may be propagated, with the reason."""
        return run_tool(cs.check_eligibility, learning_id)

    @mcp.tool()
    def declare_target(
        learning_id: str,
        target_kind: str,
        target_path: str | None = None,
        relevance: float = 0.80,
        actor: str | None = None,
    ) -> str:
        """
        Declare where a learning should be propagated. Idempotent.

        Args:
            target_kind: global_note (no path), skill or agent_definition (path required)
            relevance: 0.60 to 1.00
        """
        return run_tool(cs.declare_target, learning_id, target_kind, target_path, relevance, actor)

    @mcp.tool()
    def get_propagation_queue() -> str:
        """Declared targets ready to receive their learning, most confident first."""
        return run_tool(cs.get_propagation_queue)

    @mcp.tool()
    def record_propagation(
        learning_id: str,
        target_kind: str,
        target_path: str | None = None,
        actor: str | None = None,
        section: str | None = None,
    ) -> str:
        """Record that a learning was written into a destination. Repeats report success=false."""
        return run_tool(cs.record_propagation, learning_id, target_kind, target_path, actor, section)

    @mcp.tool()
    def get_propagation_status(learning_id: str) -> str:
        """Declared targets of a learning and which ones have been delivered."""
        return run_tool(cs.get_propagation_status, learning_id)

    @mcp.tool()
    def get_pending_evolution_syncs() -> str:
        """Destinations still holding a superseded learning whose successor has not reached them."""
        return run_tool(cs.get_pending_evolution_syncs)

    @mcp.tool()
    def format_learning(learning_id: str) -> str:
        """Markdown block for an eligible learning (markdown is null when ineligible)."""
        return run_tool(cs.format_learning, learning_id)

    @mcp.tool()
    def compute_feature_eval(feature_id: str, actor: str | None = None) -> str:
        """Compute a fresh efficiency/quality evaluation for a feature."""
        return run_tool(cs.compute_feature_eval, feature_id, actor)

    @mcp.tool()
    def compute_system_health(period_days: int = 7, actor: str | None = None) -> str:
        """
        Compute system health over the last 7, 30 or 90 days.
        """
        return run_tool(cs.compute_system_health, period_days, actor)

    @mcp.tool()
    def list_alerts(active_only: bool = True, feature_id: str | None = None) -> str:
        """List evaluation alerts, newest first."""
        return run_tool(cs.list_alerts, active_only, feature_id)

    @mcp.tool()
    def acknowledge_alert(alert_id: str, actor: str | None = None) -> str:
        """Acknowledge an alert. acknowledged=false means it already was."""
        return run_tool(cs.acknowledge_alert, alert_id, actor)

    @mcp.tool()
    def resolve_alert(alert_id: str, actor: str | None = None, notes: str | None = None) -> str:
        """Resolve an alert. resolved=false means it already was."""
        return run_tool(cs.resolve_alert, alert_id, actor, notes)

    @mcp.tool()
    def get_audit_log(feature_id: str | None = None, limit: int = 50) -> str:
        """
        Query the audit trail, newest first.

        Args:
            feature_id: Optional, filter to one feature
            limit: Maximum entries (default: 50)
        """
        return run_tool(cs.get_audit_log, feature_id, limit)

    # MCP Resources
    @mcp.resource("controlplane://dashboard")
    def dashboard() -> str:
        """Summary dashboard: features by status and phase, blockers, queue depth, alerts."""
        return run_tool(cs.get_dashboard)

    @mcp.resource("controlplane://feature/{feature_id}")
    def feature_resource(feature_id: str) -> str:
        """Full feature status."""
        return run_tool(cs.get_feature_status, feature_id)

    @mcp.resource("controlplane://learning/{learning_id}")
    def learning_resource(learning_id: str) -> str:
        """Learning with its evolution chain and propagation status."""
        return run_tool(cs.get_learning, learning_id)

    return mcp


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Control Plane MCP Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # MCP server mode
    python server.py .controlplane/controlplane.db --project-root .

    # SSE mode (Docker)
    python server.py controlplane.db --project-root /app/project --transport sse --port 8080

    # CLI smoke tests
    python server.py .controlplane/controlplane.db --project-root . dashboard
    python server.py .controlplane/controlplane.db --project-root . propagation_queue
        """,
    )
    parser.add_argument("database", help="Path to the control plane SQLite database")
    parser.add_argument("--project-root", default=".", help="Path to consuming repo root")
    parser.add_argument("--transport", choices=["stdio", "sse"], default="stdio")
    parser.add_argument("--port", type=int, default=8080, help="Port for SSE mode")
    parser.add_argument("--log-level", default=None, help="Logging level (default: from config)")
    parser.add_argument(
        "command",
        nargs="?",
        help="CLI command (omit for MCP server mode)",
    )

    args = parser.parse_args()

    db_path = Path(args.database)
    project_root = Path(args.project_root)
    log_level = args.log_level or load_config(project_root).log_level
    # stdio transport owns stdout; logs go to stderr
    logging.basicConfig(
        level=log_level.upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        mcp_server = create_mcp_server(str(db_path), str(project_root))
        if args.transport == "sse":
            mcp_server.settings.port = args.port
            mcp_server.run(transport="sse")
        else:
            mcp_server.run(transport="stdio")
        return

    # CLI mode: create server and run command
    cs = ControlPlaneServer(str(db_path), str(project_root))
    try:
        if args.command == "dashboard":
            result = cs.get_dashboard()
        elif args.command == "propagation_queue":
            result = cs.get_propagation_queue()
        elif args.command == "evolution_syncs":
            result = cs.get_pending_evolution_syncs()
        elif args.command == "alerts":
            result = cs.list_alerts()
        elif args.command == "features":
            result = cs.list_features()
        else:
            print(f"Unknown command: {args.command}", file=sys.stderr)
            sys.exit(1)

        print(json.dumps(result, indent=2, default=str))
    finally:
        cs.close()


if __name__ == "__main__":
    main()
