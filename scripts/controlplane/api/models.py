"""
Pydantic request and response models for the control plane API

Ticket: 0091_workflow_control_plane
"""

from pydantic import BaseModel, Field

from ..engine.models import (
    AlertSeverity,
    BlockerSeverity,
    BlockerStatus,
    BlockerType,
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
)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class ActorRequest(BaseModel):
    """Body for actions that only need to know who is acting."""

    actor: str | None = None


class FeatureCreate(BaseModel):
    id: str = Field(min_length=1)
    name: str
    complexity_level: int = Field(ge=1, le=3)
    severity: SeverityTier = SeverityTier.ROUTINE
    epic_id: str | None = None
    parent_feature_id: str | None = None
    actor: str | None = None


class TransitionRequest(BaseModel):
    target_phase: Phase
    actor: str | None = None
    note: str | None = None
    escalation: bool = False


class CancelRequest(BaseModel):
    actor: str | None = None
    reason: str | None = None


class BlockerCreate(BaseModel):
    blocker_type: BlockerType
    severity: BlockerSeverity
    title: str
    description: str | None = None
    actor: str | None = None


class BlockerResolve(BaseModel):
    actor: str | None = None
    resolution_notes: str | None = None


class GateEvaluation(BaseModel):
    gate_name: str
    status: GateStatus
    approver: str | None = None
    notes: str | None = None


class LockRequest(BaseModel):
    path: str = Field(min_length=1)
    holder: str | None = None
    kind: LockKind = LockKind.FILE


class PathsRequest(BaseModel):
    paths: list[str]
    actor: str | None = None


class ConflictResolve(BaseModel):
    strategy: ConflictStrategy
    actor: str | None = None
    notes: str | None = None


class InvocationStart(BaseModel):
    operation: str
    actor: str | None = None
    phase: Phase | None = None
    aids: list[str] = Field(default_factory=list)


class InvocationEnd(BaseModel):
    notes: str | None = None


class IterationCreate(BaseModel):
    spec_version: str | None = None
    issues_found: int = Field(default=0, ge=0)
    issues_resolved: int = Field(default=0, ge=0)
    change_percent: float | None = Field(default=None, ge=0, le=100)
    thrashing: bool | None = None
    actor: str | None = None


class LearningCreate(BaseModel):
    category: LearningCategory
    title: str
    content: str
    confidence: float = Field(default=0.50, ge=0.0, le=1.0)
    importance: Importance = Importance.MEDIUM
    tags: list[str] = Field(default_factory=list)
    feature_id: str | None = None
    phase: Phase | None = None
    agent: str | None = None
    task_id: str | None = None
    actor: str | None = None


class LearningEvolve(BaseModel):
    title: str
    content: str
    delta_summary: str
    actor: str | None = None


class LearningConflictCreate(BaseModel):
    learning_a_id: str
    learning_b_id: str
    kind: LearningConflictKind
    description: str | None = None
    actor: str | None = None


class LearningConflictResolve(BaseModel):
    status: LearningConflictStatus
    resolution: str | None = None
    winning_learning_id: str | None = None
    actor: str | None = None


class TargetDeclare(BaseModel):
    target_kind: TargetKind
    target_path: str | None = None
    relevance: float = 0.80
    actor: str | None = None


class PropagationCreate(BaseModel):
    target_kind: TargetKind
    target_path: str | None = None
    section: str | None = None
    actor: str | None = None


class SystemHealthRequest(BaseModel):
    period_days: int = 7
    actor: str | None = None


class AlertResolve(BaseModel):
    actor: str | None = None
    notes: str | None = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class FeatureResponse(BaseModel):
    id: str
    name: str
    complexity_level: int
    severity: SeverityTier
    current_phase: Phase
    status: FeatureStatus
    epic_id: str | None = None
    parent_feature_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    completed_at: str | None = None


class TransitionResponse(BaseModel):
    id: int
    feature_id: str
    from_phase: Phase
    to_phase: Phase
    kind: TransitionKind
    actor: str
    note: str | None = None
    transitioned_at: str | None = None


class BlockerResponse(BaseModel):
    id: int
    feature_id: str
    phase: Phase
    blocker_type: BlockerType
    severity: BlockerSeverity
    status: BlockerStatus
    title: str
    created_by: str
    description: str | None = None
    resolved_by: str | None = None
    resolution_notes: str | None = None
    created_at: str | None = None
    resolved_at: str | None = None


class LearningResponse(BaseModel):
    id: str
    category: LearningCategory
    title: str
    content: str
    created_by: str
    iteration_number: int
    predecessor_id: str | None = None
    feature_id: str | None = None
    phase: Phase | None = None
    agent: str | None = None
    delta_summary: str | None = None
    confidence: float
    validation_count: int
    validated_by: list[str]
    importance: Importance
    tags: list[str]
    is_superseded: bool
    superseded_by: str | None = None
    created_at: str | None = None


class EligibilityResponse(BaseModel):
    eligible: bool
    reason: str
    title: str | None = None
    confidence: float | None = None


class FeatureEvalResponse(BaseModel):
    id: str
    feature_id: str
    efficiency_score: float
    quality_score: float
    overall_score: float
    health_status: HealthStatus
    efficiency_breakdown: dict
    quality_breakdown: dict
    learning_metrics: dict
    raw_metrics: dict
    computed_at: str | None = None


class SystemHealthResponse(BaseModel):
    id: str
    period_days: int
    overall_score: float
    health_status: HealthStatus
    workflow_metrics: dict
    quality_metrics: dict
    learning_metrics: dict
    alerts: list[dict]
    computed_at: str | None = None


class AlertResponse(BaseModel):
    id: str
    severity: AlertSeverity
    dimension: str
    message: str
    source_type: str
    source_id: str
    current_value: float | None = None
    threshold: float | None = None
    feature_id: str | None = None
    created_at: str | None = None
    acknowledged_at: str | None = None
    acknowledged_by: str | None = None
    resolved_at: str | None = None
    resolved_by: str | None = None
