"""
Learning and propagation endpoints

Ticket: 0091_workflow_control_plane
"""

import sqlite3
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import PlainTextResponse

from ...engine import knowledge, propagation
from ...engine.errors import InvariantViolationError
from ...engine.models import (
    ControlPlaneConfig,
    LearningCategory,
    LearningConflictStatus,
    to_jsonable,
)
from ..deps import get_conn, get_settings
from ..models import (
    ActorRequest,
    EligibilityResponse,
    LearningConflictCreate,
    LearningConflictResolve,
    LearningCreate,
    LearningEvolve,
    LearningResponse,
    PropagationCreate,
    TargetDeclare,
)

router = APIRouter(prefix="/learnings", tags=["learnings"])
propagation_router = APIRouter(prefix="/propagation", tags=["propagation"])


@router.get("", response_model=list[LearningResponse])
def list_learnings(
    feature_id: str | None = None,
    category: LearningCategory | None = None,
    include_superseded: bool = False,
    conn: sqlite3.Connection = Depends(get_conn),
):
    """List learnings, highest confidence first."""
    return to_jsonable(knowledge.list_learnings(conn, feature_id, include_superseded, category))


@router.post("", response_model=LearningResponse, status_code=status.HTTP_201_CREATED)
def create_learning(
    body: LearningCreate,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
):
    learning = knowledge.create_learning(
        conn, body.category, body.title, body.content, body.actor or settings.default_actor,
        body.confidence, body.importance, body.tags, body.feature_id, body.phase,
        body.agent, body.task_id,
    )
    return to_jsonable(learning)


# ---------------------------------------------------------------------------
# Learning conflicts (declared before /{learning_id} so the path is not shadowed)
# ---------------------------------------------------------------------------


@router.get("/conflicts")
def list_learning_conflicts(
    status_filter: LearningConflictStatus | None = Query(default=None, alias="status"),
    learning_id: str | None = None,
    conn: sqlite3.Connection = Depends(get_conn),
) -> list[dict[str, Any]]:
    return to_jsonable(knowledge.list_learning_conflicts(conn, status_filter, learning_id))


@router.post("/conflicts", status_code=status.HTTP_201_CREATED)
def flag_learning_conflict(
    body: LearningConflictCreate,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
) -> dict[str, Any]:
    """Flag two learnings as conflicting; 409 if the pair is already open."""
    conflict = knowledge.flag_learning_conflict(
        conn, body.learning_a_id, body.learning_b_id, body.kind, body.description,
        body.actor or settings.default_actor,
    )
    return to_jsonable(conflict)


@router.post("/conflicts/{conflict_id}/resolve")
def resolve_learning_conflict(
    conflict_id: int,
    body: LearningConflictResolve,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
) -> dict[str, Any]:
    conflict = knowledge.resolve_learning_conflict(
        conn, conflict_id, body.status, body.actor or settings.default_actor,
        body.resolution, body.winning_learning_id,
    )
    return to_jsonable(conflict)


# ---------------------------------------------------------------------------
# Single learning
# ---------------------------------------------------------------------------


@router.get("/{learning_id}", response_model=LearningResponse)
def get_learning(learning_id: str, conn: sqlite3.Connection = Depends(get_conn)):
    return to_jsonable(knowledge.get_learning(conn, learning_id))


@router.get("/{learning_id}/chain", response_model=list[LearningResponse])
def get_learning_chain(learning_id: str, conn: sqlite3.Connection = Depends(get_conn)):
    """Every version of the learning, oldest first."""
    return to_jsonable(knowledge.get_learning_chain(conn, learning_id))


@router.post(
    "/{learning_id}/evolve",
    response_model=LearningResponse,
    status_code=status.HTTP_201_CREATED,
)
def evolve_learning(
    learning_id: str,
    body: LearningEvolve,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
):
    """Create the next version; the current one becomes superseded."""
    learning = knowledge.evolve_learning(
        conn, learning_id, body.title, body.content, body.delta_summary,
        body.actor or settings.default_actor,
    )
    return to_jsonable(learning)


@router.post("/{learning_id}/validate", response_model=LearningResponse)
def validate_learning(
    learning_id: str,
    body: ActorRequest,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
):
    return to_jsonable(
        knowledge.validate_learning(conn, learning_id, body.actor or settings.default_actor)
    )


@router.post("/{learning_id}/reference")
def reference_learning(
    learning_id: str,
    body: ActorRequest,
    conn: sqlite3.Connection = Depends(get_conn),
) -> dict[str, Any]:
    confidence = knowledge.reference_learning(conn, learning_id, body.actor)
    return {"learning_id": learning_id, "confidence": confidence}


@router.post("/{learning_id}/conflicts/detect")
def detect_learning_conflicts(
    learning_id: str,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
) -> list[dict[str, Any]]:
    """Candidate conflicts by shared tags or similar titles. Nothing is recorded."""
    return knowledge.detect_learning_conflicts(conn, learning_id, settings.similarity_threshold)


# ---------------------------------------------------------------------------
# Propagation for a single learning
# ---------------------------------------------------------------------------


@router.get("/{learning_id}/eligibility", response_model=EligibilityResponse)
def check_eligibility(learning_id: str, conn: sqlite3.Connection = Depends(get_conn)):
    return to_jsonable(propagation.check_eligibility(conn, learning_id))


@router.post("/{learning_id}/targets", status_code=status.HTTP_201_CREATED)
def declare_target(
    learning_id: str,
    body: TargetDeclare,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
) -> dict[str, Any]:
    target = propagation.declare_target(
        conn, learning_id, body.target_kind, body.actor or settings.default_actor,
        body.target_path, body.relevance,
    )
    return to_jsonable(target)


@router.get("/{learning_id}/propagations")
def get_propagation_status(learning_id: str, conn: sqlite3.Connection = Depends(get_conn)) -> dict[str, Any]:
    return propagation.get_propagation_status(conn, learning_id)


@router.post("/{learning_id}/propagations", status_code=status.HTTP_201_CREATED)
def record_propagation(
    learning_id: str,
    body: PropagationCreate,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
) -> dict[str, Any]:
    """Record a delivery; a repeat delivery reports success false."""
    outcome = propagation.record_propagation(
        conn, learning_id, body.target_kind, body.target_path,
        body.actor or settings.default_actor, body.section,
    )
    return to_jsonable(outcome)


@router.get("/{learning_id}/markdown", response_class=PlainTextResponse)
def format_learning(learning_id: str, conn: sqlite3.Connection = Depends(get_conn)):
    """The learning as a markdown block; 422 if it is not eligible."""
    knowledge.get_learning(conn, learning_id)
    markdown, reason = propagation.format_learning(conn, learning_id)
    if markdown is None:
        raise InvariantViolationError(reason)
    return markdown


# ---------------------------------------------------------------------------
# Propagation queue
# ---------------------------------------------------------------------------


@propagation_router.get("/queue")
def get_propagation_queue(conn: sqlite3.Connection = Depends(get_conn)) -> list[dict[str, Any]]:
    """Eligible learnings with undelivered targets."""
    return propagation.get_propagation_queue(conn)


@propagation_router.get("/syncs")
def get_pending_evolution_syncs(conn: sqlite3.Connection = Depends(get_conn)) -> list[dict[str, Any]]:
    return propagation.get_pending_evolution_syncs(conn)


@propagation_router.get("/targets")
def get_propagations_for_target(
    target_path: str,
    conn: sqlite3.Connection = Depends(get_conn),
) -> list[dict[str, Any]]:
    return propagation.get_propagations_for_target(conn, target_path)


@propagation_router.get("/history")
def get_propagation_history(
    limit: int = Query(default=50, ge=1, le=500),
    conn: sqlite3.Connection = Depends(get_conn),
) -> list[dict[str, Any]]:
    return propagation.get_propagation_history(conn, limit)
