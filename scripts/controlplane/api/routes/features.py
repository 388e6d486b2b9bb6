"""
Feature lifecycle endpoints: phases, blockers, gates, locks, durations

Ticket: 0091_workflow_control_plane
"""

import sqlite3
from typing import Any

from fastapi import APIRouter, Depends, Query, status

from ...engine import audit, coordination, durations, features, gating, iterations
from ...engine.errors import NotFoundError
from ...engine.models import ControlPlaneConfig, FeatureStatus, to_jsonable
from ..deps import get_conn, get_settings
from ..models import (
    ActorRequest,
    BlockerCreate,
    BlockerResolve,
    BlockerResponse,
    CancelRequest,
    ConflictResolve,
    FeatureCreate,
    FeatureResponse,
    GateEvaluation,
    InvocationEnd,
    InvocationStart,
    IterationCreate,
    LockRequest,
    PathsRequest,
    TransitionRequest,
    TransitionResponse,
)

router = APIRouter(prefix="/features", tags=["features"])


@router.get("", response_model=list[FeatureResponse])
def list_features(
    status_filter: FeatureStatus | None = Query(default=None, alias="status"),
    conn: sqlite3.Connection = Depends(get_conn),
):
    """List features, newest first."""
    return to_jsonable(features.list_features(conn, status_filter))


@router.post("", response_model=FeatureResponse, status_code=status.HTTP_201_CREATED)
def create_feature(
    body: FeatureCreate,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
):
    """Register a new feature at phase 0."""
    feature = features.create_feature(
        conn, body.id, body.name, body.complexity_level, body.actor or settings.default_actor,
        body.severity, body.epic_id, body.parent_feature_id,
    )
    return to_jsonable(feature)


@router.get("/{feature_id}")
def get_feature_status(feature_id: str, conn: sqlite3.Connection = Depends(get_conn)) -> dict[str, Any]:
    """Feature fields plus aggregated blocker, gate, duration and lock counts."""
    return to_jsonable(features.get_feature_status(conn, feature_id))


@router.get("/{feature_id}/transitions", response_model=list[TransitionResponse])
def list_transitions(feature_id: str, conn: sqlite3.Connection = Depends(get_conn)):
    return to_jsonable(features.get_transitions(conn, feature_id))


@router.post(
    "/{feature_id}/transitions",
    response_model=TransitionResponse,
    status_code=status.HTTP_201_CREATED,
)
def transition_phase(
    feature_id: str,
    body: TransitionRequest,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
):
    """Move a feature to another phase (skipping ahead is rejected with 422)."""
    move = features.escalate_phase if body.escalation else features.transition_phase
    transition = move(conn, feature_id, body.target_phase, body.actor or settings.default_actor, body.note)
    return to_jsonable(transition)


@router.post("/{feature_id}/complete")
def complete_feature(
    feature_id: str,
    body: ActorRequest,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
) -> dict[str, Any]:
    """Complete a feature; 422 while any blocker is unresolved."""
    return to_jsonable(features.complete_feature(conn, feature_id, body.actor or settings.default_actor))


@router.post("/{feature_id}/cancel", response_model=FeatureResponse)
def cancel_feature(
    feature_id: str,
    body: CancelRequest,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
):
    return to_jsonable(
        features.cancel_feature(conn, feature_id, body.actor or settings.default_actor, body.reason)
    )


# ---------------------------------------------------------------------------
# Blockers and gates
# ---------------------------------------------------------------------------


@router.get("/{feature_id}/blockers", response_model=list[BlockerResponse])
def list_blockers(
    feature_id: str,
    unresolved_only: bool = False,
    conn: sqlite3.Connection = Depends(get_conn),
):
    features.get_feature(conn, feature_id)
    return to_jsonable(gating.list_blockers(conn, feature_id, unresolved_only=unresolved_only))


@router.post(
    "/{feature_id}/blockers",
    response_model=BlockerResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_blocker(
    feature_id: str,
    body: BlockerCreate,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
):
    """Open a blocker; the feature becomes BLOCKED."""
    blocker = gating.create_blocker(
        conn, feature_id, body.blocker_type, body.severity, body.title,
        body.actor or settings.default_actor, body.description,
    )
    return to_jsonable(blocker)


@router.post("/{feature_id}/blockers/{blocker_id}/resolve")
def resolve_blocker(
    feature_id: str,
    blocker_id: int,
    body: BlockerResolve,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
) -> dict[str, Any]:
    """Resolve a blocker; the feature is unblocked when none remain."""
    if gating.get_blocker(conn, blocker_id).feature_id != feature_id:
        raise NotFoundError("blocker", blocker_id)
    outcome = gating.resolve_blocker(
        conn, blocker_id, body.actor or settings.default_actor, body.resolution_notes,
    )
    return to_jsonable(outcome)


@router.get("/{feature_id}/gates")
def list_gates(feature_id: str, conn: sqlite3.Connection = Depends(get_conn)) -> list[dict[str, Any]]:
    return to_jsonable(gating.list_gates(conn, feature_id))


@router.post("/{feature_id}/gates", status_code=status.HTTP_201_CREATED)
def evaluate_gate(
    feature_id: str,
    body: GateEvaluation,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
) -> dict[str, Any]:
    """Approve or reject a named gate; 409 if already evaluated in this phase visit."""
    gate = gating.evaluate_gate(
        conn, feature_id, body.gate_name, body.status,
        body.approver or settings.default_actor, body.notes,
    )
    return to_jsonable(gate)


# ---------------------------------------------------------------------------
# Locks and conflicts
# ---------------------------------------------------------------------------


@router.get("/{feature_id}/locks")
def list_locks(feature_id: str, conn: sqlite3.Connection = Depends(get_conn)) -> list[dict[str, Any]]:
    return to_jsonable(coordination.list_locks(conn, feature_id))


@router.post("/{feature_id}/locks", status_code=status.HTTP_201_CREATED)
def acquire_lock(
    feature_id: str,
    body: LockRequest,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
) -> dict[str, Any]:
    """Acquire a path lock; 409 naming the holder if it is taken."""
    lock = coordination.acquire_lock(
        conn, feature_id, body.path, body.holder or settings.default_actor, body.kind,
    )
    return to_jsonable(lock)


@router.delete("/{feature_id}/locks")
def release_lock(
    feature_id: str,
    path: str,
    actor: str | None = None,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
) -> dict[str, Any]:
    released = coordination.release_lock(conn, feature_id, path, actor or settings.default_actor)
    return {"released": released, "feature_id": feature_id, "path": path}


@router.post("/{feature_id}/conflicts")
def detect_conflicts(
    feature_id: str,
    body: PathsRequest,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
) -> list[dict[str, Any]]:
    """Record conflicts between the proposed paths and other features' locks."""
    conflicts = coordination.detect_conflicts(
        conn, feature_id, body.paths, body.actor or settings.default_actor,
    )
    return to_jsonable(conflicts)


@router.get("/{feature_id}/conflicts")
def list_conflicts(
    feature_id: str,
    unresolved_only: bool = False,
    conn: sqlite3.Connection = Depends(get_conn),
) -> list[dict[str, Any]]:
    features.get_feature(conn, feature_id)
    return to_jsonable(
        coordination.list_conflicts(conn, feature_id, unresolved_only=unresolved_only)
    )


@router.post("/{feature_id}/conflicts/{conflict_id}/resolve")
def resolve_conflict(
    feature_id: str,
    conflict_id: int,
    body: ConflictResolve,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
) -> dict[str, Any]:
    conflict = coordination.get_conflict(conn, conflict_id)
    if feature_id not in (conflict.feature_a_id, conflict.feature_b_id):
        raise NotFoundError("conflict", conflict_id)
    return to_jsonable(coordination.resolve_conflict(
        conn, conflict_id, body.strategy, body.actor or settings.default_actor, body.notes,
    ))


# ---------------------------------------------------------------------------
# Durations and iterations
# ---------------------------------------------------------------------------


@router.post("/{feature_id}/invocations", status_code=status.HTTP_201_CREATED)
def start_invocation(
    feature_id: str,
    body: InvocationStart,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
) -> dict[str, Any]:
    invocation_id = durations.start_invocation(
        conn, feature_id, body.actor or settings.default_actor, body.operation, body.phase, body.aids,
    )
    return {"invocation_id": invocation_id}


@router.post("/{feature_id}/invocations/{invocation_id}/end")
def end_invocation(
    feature_id: str,
    invocation_id: str,
    body: InvocationEnd,
    conn: sqlite3.Connection = Depends(get_conn),
) -> dict[str, Any]:
    """Stop timing an invocation; 422 if it already ended."""
    if durations.get_invocation(conn, invocation_id).feature_id != feature_id:
        raise NotFoundError("invocation", invocation_id)
    duration_ms = durations.end_invocation(conn, invocation_id, body.notes)
    return {"invocation_id": invocation_id, "duration_ms": duration_ms}


@router.get("/{feature_id}/durations")
def get_durations(feature_id: str, conn: sqlite3.Connection = Depends(get_conn)) -> dict[str, Any]:
    return {
        "feature_id": feature_id,
        "phases": durations.get_phase_durations(conn, feature_id),
        "agents": durations.get_agent_durations(conn, feature_id),
    }


@router.get("/{feature_id}/iterations")
def list_iterations(feature_id: str, conn: sqlite3.Connection = Depends(get_conn)) -> list[dict[str, Any]]:
    return to_jsonable(iterations.list_iterations(conn, feature_id))


@router.post("/{feature_id}/iterations", status_code=status.HTTP_201_CREATED)
def record_iteration(
    feature_id: str,
    body: IterationCreate,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
) -> dict[str, Any]:
    record = iterations.record_iteration(
        conn, feature_id, body.actor or settings.default_actor, body.spec_version,
        body.issues_found, body.issues_resolved, body.change_percent, body.thrashing,
        convergence_threshold=settings.convergence_threshold,
        thrashing_window=settings.thrashing_window,
    )
    return to_jsonable(record)


@router.get("/{feature_id}/audit")
def get_audit(
    feature_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    conn: sqlite3.Connection = Depends(get_conn),
) -> list[dict[str, Any]]:
    features.get_feature(conn, feature_id)
    return audit.query_audit(conn, feature_id=feature_id, limit=limit)
