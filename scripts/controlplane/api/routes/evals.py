"""
Evaluation endpoints: feature scores, system health, alerts

Ticket: 0091_workflow_control_plane
"""

import sqlite3
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from ...engine import evaluation, features
from ...engine.models import ControlPlaneConfig, to_jsonable
from ..deps import get_conn, get_settings
from ..models import (
    ActorRequest,
    AlertResolve,
    AlertResponse,
    FeatureEvalResponse,
    SystemHealthRequest,
    SystemHealthResponse,
)

router = APIRouter(prefix="/evals", tags=["evals"])


@router.post(
    "/features/{feature_id}",
    response_model=FeatureEvalResponse,
    status_code=status.HTTP_201_CREATED,
)
def compute_feature_eval(
    feature_id: str,
    body: ActorRequest,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
):
    """Score a feature's efficiency and quality now."""
    eval_id = evaluation.compute_feature_eval(conn, feature_id, body.actor or settings.default_actor)
    return to_jsonable(evaluation.get_feature_eval(conn, eval_id))


@router.get("/features/{feature_id}", response_model=FeatureEvalResponse)
def latest_feature_eval(feature_id: str, conn: sqlite3.Connection = Depends(get_conn)):
    features.get_feature(conn, feature_id)
    latest = evaluation.latest_feature_eval(conn, feature_id)
    if latest is None:
        raise HTTPException(status_code=404, detail=f"No evaluation recorded for '{feature_id}'")
    return to_jsonable(latest)


@router.post("/system", response_model=SystemHealthResponse, status_code=status.HTTP_201_CREATED)
def compute_system_health(
    body: SystemHealthRequest,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
):
    """Aggregate health over the last 7, 30 or 90 days."""
    eval_id = evaluation.compute_system_health(
        conn, body.period_days, body.actor or settings.default_actor,
    )
    return to_jsonable(evaluation.get_system_health(conn, eval_id))


@router.get("/system", response_model=SystemHealthResponse)
def latest_system_health(
    period_days: int | None = None,
    conn: sqlite3.Connection = Depends(get_conn),
):
    latest = evaluation.latest_system_health(conn, period_days)
    if latest is None:
        raise HTTPException(status_code=404, detail="No system health evaluation recorded")
    return to_jsonable(latest)


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


@router.get("/alerts", response_model=list[AlertResponse])
def list_alerts(
    active_only: bool = True,
    feature_id: str | None = None,
    conn: sqlite3.Connection = Depends(get_conn),
):
    return to_jsonable(evaluation.list_alerts(conn, active_only, feature_id))


@router.post("/alerts/{alert_id}/acknowledge")
def acknowledge_alert(
    alert_id: str,
    body: ActorRequest,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
) -> dict[str, Any]:
    changed = evaluation.acknowledge_alert(conn, alert_id, body.actor or settings.default_actor)
    return {"alert_id": alert_id, "acknowledged": changed}


@router.post("/alerts/{alert_id}/resolve")
def resolve_alert(
    alert_id: str,
    body: AlertResolve,
    conn: sqlite3.Connection = Depends(get_conn),
    settings: ControlPlaneConfig = Depends(get_settings),
) -> dict[str, Any]:
    changed = evaluation.resolve_alert(
        conn, alert_id, body.actor or settings.default_actor, body.notes,
    )
    return {"alert_id": alert_id, "resolved": changed}
