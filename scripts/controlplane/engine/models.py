#!/usr/bin/env python3
# Ticket: 0091_workflow_control_plane
# Design: DESIGN.md
"""
Control Plane Data Models

Closed enumerations for every fixed taxonomy (phases, statuses, kinds) and
typed dataclasses for the rows stored in the control plane database.

Enumerations subclass ``str`` so members compare equal to their stored SQL
value and serialize to JSON unchanged. Constructing a member from an unknown
value raises ``ValueError``; the DDL mirrors each enumeration with a CHECK
constraint.

All row dataclasses provide ``from_row`` accepting a sqlite3.Row or dict.
JSON-encoded list columns (tags, validators, aids, paths) are decoded there.
"""

import json
from dataclasses import asdict, dataclass, field, is_dataclass
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------


class Phase(str, Enum):
    PLANNING = "0"
    DISCOVERY = "1"
    ARCHITECT = "2"
    GUARDIAN = "3"
    BUILDER = "4"
    INTEGRATOR = "5"
    DOCUMENTER = "6"
    RELEASE = "7"
    COMPLETE = "8"

    @property
    def number(self) -> int:
        return int(self.value)

    @property
    def label(self) -> str:
        """Human-readable phase name, e.g. 'Architect'."""
        return self.name.title()

    @classmethod
    def parse(cls, value: "str | int | Phase") -> "Phase":
        """Accept a Phase, a phase token ("3") or a phase integer (3)."""
        if isinstance(value, cls):
            return value
        return cls(str(value))

    @property
    def display(self) -> str:
        """Phase number and name, e.g. '2 (Architect)'."""
        return f"{self.value} ({self.label})"


TERMINAL_PHASE = Phase.COMPLETE


# ---------------------------------------------------------------------------
# Status and taxonomy enumerations
# ---------------------------------------------------------------------------


class FeatureStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    BLOCKED = "BLOCKED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TERMINAL_FEATURE_STATUSES = frozenset([FeatureStatus.COMPLETED, FeatureStatus.CANCELLED])


class SeverityTier(str, Enum):
    ROUTINE = "ROUTINE"
    EXPEDITED = "EXPEDITED"
    CRITICAL = "CRITICAL"


class TransitionKind(str, Enum):
    FORWARD = "FORWARD"
    BACKWARD = "BACKWARD"
    ESCALATION = "ESCALATION"


class BlockerType(str, Enum):
    SPEC_THRASHING = "SPEC_THRASHING"
    MAX_ITERATIONS_REACHED = "MAX_ITERATIONS_REACHED"
    TOKEN_BUDGET_EXCEEDED = "TOKEN_BUDGET_EXCEEDED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    IMPLEMENTATION_IMPOSSIBLE = "IMPLEMENTATION_IMPOSSIBLE"
    TECHNICAL_IMPOSSIBILITY = "TECHNICAL_IMPOSSIBILITY"
    BREAKING_CHANGE_DETECTED = "BREAKING_CHANGE_DETECTED"
    HUMAN_DECISION_REQUIRED = "HUMAN_DECISION_REQUIRED"


class BlockerSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class BlockerStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    ESCALATED = "ESCALATED"


# Everything except RESOLVED keeps the owning feature BLOCKED
UNRESOLVED_BLOCKER_STATUSES = frozenset([
    BlockerStatus.OPEN, BlockerStatus.IN_PROGRESS, BlockerStatus.ESCALATED,
])


class GateStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class LockKind(str, Enum):
    FEATURE = "FEATURE"
    FILE = "FILE"


class ConflictRisk(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @property
    def rank(self) -> int:
        return ["LOW", "MEDIUM", "HIGH"].index(self.value)


class ConflictStatus(str, Enum):
    DETECTED = "DETECTED"
    COORDINATED = "COORDINATED"
    SERIALIZED = "SERIALIZED"
    RESOLVED = "RESOLVED"


class ConflictStrategy(str, Enum):
    SERIALIZE = "SERIALIZE"
    COORDINATE = "COORDINATE"
    ALLOW_PARALLEL = "ALLOW_PARALLEL"


class LearningCategory(str, Enum):
    DECISION = "DECISION"
    PATTERN = "PATTERN"
    GOTCHA = "GOTCHA"
    CONVENTION = "CONVENTION"
    ARCHITECTURE = "ARCHITECTURE"
    RATIONALE = "RATIONALE"
    OPTIMIZATION = "OPTIMIZATION"
    INTEGRATION = "INTEGRATION"


class Importance(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class LearningConflictKind(str, Enum):
    CONTRADICTION = "CONTRADICTION"
    SCOPE_OVERLAP = "SCOPE_OVERLAP"
    VERSION_DRIFT = "VERSION_DRIFT"


class LearningConflictStatus(str, Enum):
    OPEN = "OPEN"
    INVESTIGATING = "INVESTIGATING"
    RESOLVED = "RESOLVED"
    DEFERRED = "DEFERRED"


OPEN_LEARNING_CONFLICT_STATUSES = frozenset([
    LearningConflictStatus.OPEN, LearningConflictStatus.INVESTIGATING,
])


class TargetKind(str, Enum):
    GLOBAL_NOTE = "global_note"
    SKILL = "skill"
    AGENT_DEFINITION = "agent_definition"

    @property
    def requires_path(self) -> bool:
        return self is not TargetKind.GLOBAL_NOTE


class HealthStatus(str, Enum):
    HEALTHY = "HEALTHY"
    CONCERNING = "CONCERNING"
    CRITICAL = "CRITICAL"

    @classmethod
    def classify(cls, score: float) -> "HealthStatus":
        if score >= 70:
            return cls.HEALTHY
        if score >= 50:
            return cls.CONCERNING
        return cls.CRITICAL


class AlertSeverity(str, Enum):
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


def sql_values(enum_cls: type[Enum]) -> str:
    """Render an enumeration as a SQL ``IN (...)`` list body for CHECK constraints."""
    return ", ".join(f"'{member.value}'" for member in enum_cls)


def _json_list(value: Any) -> list:
    if not value:
        return []
    if isinstance(value, list):
        return value
    return json.loads(value)


def _json_dict(value: Any) -> dict[str, Any]:
    if not value:
        return {}
    if isinstance(value, dict):
        return value
    return json.loads(value)


# ---------------------------------------------------------------------------
# Feature registry rows
# ---------------------------------------------------------------------------


@dataclass
class Feature:
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

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_FEATURE_STATUSES

    @classmethod
    def from_row(cls, row: Any) -> "Feature":
        d = dict(row)
        return cls(
            id=d["id"],
            name=d["name"],
            complexity_level=d["complexity_level"],
            severity=SeverityTier(d["severity"]),
            current_phase=Phase(d["current_phase"]),
            status=FeatureStatus(d["status"]),
            epic_id=d.get("epic_id"),
            parent_feature_id=d.get("parent_feature_id"),
            created_at=d.get("created_at"),
            updated_at=d.get("updated_at"),
            completed_at=d.get("completed_at"),
        )


@dataclass
class PhaseTransition:
    id: int
    feature_id: str
    from_phase: Phase
    to_phase: Phase
    kind: TransitionKind
    actor: str
    note: str | None = None
    transitioned_at: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "PhaseTransition":
        d = dict(row)
        return cls(
            id=d["id"],
            feature_id=d["feature_id"],
            from_phase=Phase(d["from_phase"]),
            to_phase=Phase(d["to_phase"]),
            kind=TransitionKind(d["kind"]),
            actor=d["actor"],
            note=d.get("note"),
            transitioned_at=d.get("transitioned_at"),
        )


# ---------------------------------------------------------------------------
# Gating rows
# ---------------------------------------------------------------------------


@dataclass
class Blocker:
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
    escalation_notes: str | None = None
    created_at: str | None = None
    resolved_at: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "Blocker":
        d = dict(row)
        return cls(
            id=d["id"],
            feature_id=d["feature_id"],
            phase=Phase(d["phase"]),
            blocker_type=BlockerType(d["blocker_type"]),
            severity=BlockerSeverity(d["severity"]),
            status=BlockerStatus(d["status"]),
            title=d["title"],
            created_by=d["created_by"],
            description=d.get("description"),
            resolved_by=d.get("resolved_by"),
            resolution_notes=d.get("resolution_notes"),
            escalation_notes=d.get("escalation_notes"),
            created_at=d.get("created_at"),
            resolved_at=d.get("resolved_at"),
        )


@dataclass
class QualityGate:
    id: int
    feature_id: str
    gate_name: str
    phase: Phase
    attempt: int
    status: GateStatus
    approver: str
    notes: str | None = None
    evaluated_at: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "QualityGate":
        d = dict(row)
        return cls(
            id=d["id"],
            feature_id=d["feature_id"],
            gate_name=d["gate_name"],
            phase=Phase(d["phase"]),
            attempt=d["attempt"],
            status=GateStatus(d["status"]),
            approver=d["approver"],
            notes=d.get("notes"),
            evaluated_at=d.get("evaluated_at"),
        )


# ---------------------------------------------------------------------------
# Concurrency rows
# ---------------------------------------------------------------------------


@dataclass
class Lock:
    id: int
    feature_id: str
    path: str
    kind: LockKind
    holder: str
    acquired_at: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "Lock":
        d = dict(row)
        return cls(
            id=d["id"],
            feature_id=d["feature_id"],
            path=d["path"],
            kind=LockKind(d["kind"]),
            holder=d["holder"],
            acquired_at=d.get("acquired_at"),
        )


@dataclass
class Conflict:
    id: int
    feature_a_id: str
    feature_b_id: str
    paths: list[str]
    risk: ConflictRisk
    detected_phase: Phase
    status: ConflictStatus
    strategy: ConflictStrategy | None = None
    notes: str | None = None
    detected_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "Conflict":
        d = dict(row)
        return cls(
            id=d["id"],
            feature_a_id=d["feature_a_id"],
            feature_b_id=d["feature_b_id"],
            paths=_json_list(d.get("paths")),
            risk=ConflictRisk(d["risk"]),
            detected_phase=Phase(d["detected_phase"]),
            status=ConflictStatus(d["status"]),
            strategy=ConflictStrategy(d["strategy"]) if d.get("strategy") else None,
            notes=d.get("notes"),
            detected_at=d.get("detected_at"),
            updated_at=d.get("updated_at"),
        )


# ---------------------------------------------------------------------------
# Duration and iteration rows
# ---------------------------------------------------------------------------


@dataclass
class AgentInvocation:
    id: str
    feature_id: str
    phase: Phase
    actor: str
    operation: str
    aids: list[str] = field(default_factory=list)
    started_at: str | None = None
    ended_at: str | None = None
    duration_ms: int | None = None
    notes: str | None = None

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    @classmethod
    def from_row(cls, row: Any) -> "AgentInvocation":
        d = dict(row)
        return cls(
            id=d["id"],
            feature_id=d["feature_id"],
            phase=Phase(d["phase"]),
            actor=d["actor"],
            operation=d["operation"],
            aids=_json_list(d.get("aids")),
            started_at=d.get("started_at"),
            ended_at=d.get("ended_at"),
            duration_ms=d.get("duration_ms"),
            notes=d.get("notes"),
        )


@dataclass
class IterationRecord:
    id: int
    feature_id: str
    iteration_number: int
    recorded_by: str
    spec_version: str | None = None
    issues_found: int = 0
    issues_resolved: int = 0
    change_percent: float | None = None
    convergence_detected: bool = False
    thrashing_detected: bool = False
    recorded_at: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "IterationRecord":
        d = dict(row)
        return cls(
            id=d["id"],
            feature_id=d["feature_id"],
            iteration_number=d["iteration_number"],
            recorded_by=d["recorded_by"],
            spec_version=d.get("spec_version"),
            issues_found=d.get("issues_found") or 0,
            issues_resolved=d.get("issues_resolved") or 0,
            change_percent=d.get("change_percent"),
            convergence_detected=bool(d.get("convergence_detected")),
            thrashing_detected=bool(d.get("thrashing_detected")),
            recorded_at=d.get("recorded_at"),
        )


# ---------------------------------------------------------------------------
# Knowledge rows
# ---------------------------------------------------------------------------


@dataclass
class Learning:
    id: str
    category: LearningCategory
    title: str
    content: str
    created_by: str
    iteration_number: int = 1
    predecessor_id: str | None = None
    feature_id: str | None = None
    task_id: str | None = None
    phase: Phase | None = None
    agent: str | None = None
    delta_summary: str | None = None
    confidence: float = 0.50
    validation_count: int = 0
    validated_by: list[str] = field(default_factory=list)
    last_validated_at: str | None = None
    importance: Importance = Importance.MEDIUM
    tags: list[str] = field(default_factory=list)
    is_superseded: bool = False
    superseded_by: str | None = None
    superseded_at: str | None = None
    propagated_to: list[str] = field(default_factory=list)
    propagated_at: str | None = None
    propagation_summary: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "Learning":
        d = dict(row)
        return cls(
            id=d["id"],
            category=LearningCategory(d["category"]),
            title=d["title"],
            content=d["content"],
            created_by=d["created_by"],
            iteration_number=d["iteration_number"],
            predecessor_id=d.get("predecessor_id"),
            feature_id=d.get("feature_id"),
            task_id=d.get("task_id"),
            phase=Phase(d["phase"]) if d.get("phase") is not None else None,
            agent=d.get("agent"),
            delta_summary=d.get("delta_summary"),
            confidence=d["confidence"],
            validation_count=d["validation_count"],
            validated_by=_json_list(d.get("validated_by")),
            last_validated_at=d.get("last_validated_at"),
            importance=Importance(d["importance"]),
            tags=_json_list(d.get("tags")),
            is_superseded=bool(d["is_superseded"]),
            superseded_by=d.get("superseded_by"),
            superseded_at=d.get("superseded_at"),
            propagated_to=_json_list(d.get("propagated_to")),
            propagated_at=d.get("propagated_at"),
            propagation_summary=d.get("propagation_summary"),
            created_at=d.get("created_at"),
            updated_at=d.get("updated_at"),
        )


@dataclass
class LearningConflict:
    id: int
    learning_a_id: str
    learning_b_id: str
    kind: LearningConflictKind
    status: LearningConflictStatus
    detected_by: str
    description: str | None = None
    resolution: str | None = None
    resolved_by: str | None = None
    resolved_at: str | None = None
    winning_learning_id: str | None = None
    detected_at: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_LEARNING_CONFLICT_STATUSES

    @classmethod
    def from_row(cls, row: Any) -> "LearningConflict":
        d = dict(row)
        return cls(
            id=d["id"],
            learning_a_id=d["learning_a_id"],
            learning_b_id=d["learning_b_id"],
            kind=LearningConflictKind(d["kind"]),
            status=LearningConflictStatus(d["status"]),
            detected_by=d["detected_by"],
            description=d.get("description"),
            resolution=d.get("resolution"),
            resolved_by=d.get("resolved_by"),
            resolved_at=d.get("resolved_at"),
            winning_learning_id=d.get("winning_learning_id"),
            detected_at=d.get("detected_at"),
        )


@dataclass
class PropagationTarget:
    id: int
    learning_id: str
    target_kind: TargetKind
    target_path: str | None
    relevance: float
    declared_at: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "PropagationTarget":
        d = dict(row)
        return cls(
            id=d["id"],
            learning_id=d["learning_id"],
            target_kind=TargetKind(d["target_kind"]),
            target_path=d.get("target_path"),
            relevance=d["relevance"],
            declared_at=d.get("declared_at"),
        )


@dataclass
class PropagationRecord:
    id: int
    learning_id: str
    target_kind: TargetKind
    target_path: str | None
    propagated_by: str
    section: str
    propagated_at: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "PropagationRecord":
        d = dict(row)
        return cls(
            id=d["id"],
            learning_id=d["learning_id"],
            target_kind=TargetKind(d["target_kind"]),
            target_path=d.get("target_path"),
            propagated_by=d["propagated_by"],
            section=d["section"],
            propagated_at=d.get("propagated_at"),
        )


# ---------------------------------------------------------------------------
# Evaluation rows
# ---------------------------------------------------------------------------


@dataclass
class FeatureEval:
    id: str
    feature_id: str
    efficiency_score: float
    quality_score: float
    overall_score: float
    health_status: HealthStatus
    efficiency_breakdown: dict[str, Any] = field(default_factory=dict)
    quality_breakdown: dict[str, Any] = field(default_factory=dict)
    learning_metrics: dict[str, Any] = field(default_factory=dict)
    raw_metrics: dict[str, Any] = field(default_factory=dict)
    computed_at: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "FeatureEval":
        d = dict(row)
        return cls(
            id=d["id"],
            feature_id=d["feature_id"],
            efficiency_score=d["efficiency_score"],
            quality_score=d["quality_score"],
            overall_score=d["overall_score"],
            health_status=HealthStatus(d["health_status"]),
            efficiency_breakdown=_json_dict(d.get("efficiency_breakdown")),
            quality_breakdown=_json_dict(d.get("quality_breakdown")),
            learning_metrics=_json_dict(d.get("learning_metrics")),
            raw_metrics=_json_dict(d.get("raw_metrics")),
            computed_at=d.get("computed_at"),
        )


@dataclass
class SystemHealthEval:
    id: str
    period_days: int
    overall_score: float
    health_status: HealthStatus
    workflow_metrics: dict[str, Any] = field(default_factory=dict)
    quality_metrics: dict[str, Any] = field(default_factory=dict)
    learning_metrics: dict[str, Any] = field(default_factory=dict)
    alerts: list[dict[str, Any]] = field(default_factory=list)
    computed_at: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "SystemHealthEval":
        d = dict(row)
        return cls(
            id=d["id"],
            period_days=d["period_days"],
            overall_score=d["overall_score"],
            health_status=HealthStatus(d["health_status"]),
            workflow_metrics=_json_dict(d.get("workflow_metrics")),
            quality_metrics=_json_dict(d.get("quality_metrics")),
            learning_metrics=_json_dict(d.get("learning_metrics")),
            alerts=_json_list(d.get("alerts")),
            computed_at=d.get("computed_at"),
        )


@dataclass
class Alert:
    id: str
    severity: AlertSeverity
    dimension: str
    message: str
    source_type: str                # "feature" or "system"
    source_id: str
    current_value: float | None = None
    threshold: float | None = None
    feature_id: str | None = None
    created_at: str | None = None
    acknowledged_at: str | None = None
    acknowledged_by: str | None = None
    resolved_at: str | None = None
    resolved_by: str | None = None
    resolution_notes: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "Alert":
        d = dict(row)
        return cls(
            id=d["id"],
            severity=AlertSeverity(d["severity"]),
            dimension=d["dimension"],
            message=d["message"],
            source_type=d["source_type"],
            source_id=d["source_id"],
            current_value=d.get("current_value"),
            threshold=d.get("threshold"),
            feature_id=d.get("feature_id"),
            created_at=d.get("created_at"),
            acknowledged_at=d.get("acknowledged_at"),
            acknowledged_by=d.get("acknowledged_by"),
            resolved_at=d.get("resolved_at"),
            resolved_by=d.get("resolved_by"),
            resolution_notes=d.get("resolution_notes"),
        )


# ---------------------------------------------------------------------------
# Audit rows
# ---------------------------------------------------------------------------


@dataclass
class AuditEntry:
    id: int
    timestamp: str
    actor: str
    action: str
    entity_type: str
    entity_id: str
    feature_id: str | None = None
    old_state: str | None = None
    new_state: str | None = None
    details: dict[str, Any] | None = None

    @classmethod
    def from_row(cls, row: Any) -> "AuditEntry":
        d = dict(row)
        return cls(
            id=d["id"],
            timestamp=d["timestamp"],
            actor=d["actor"],
            action=d["action"],
            entity_type=d["entity_type"],
            entity_id=d["entity_id"],
            feature_id=d.get("feature_id"),
            old_state=d.get("old_state"),
            new_state=d.get("new_state"),
            details=_json_dict(d.get("details")) or None,
        )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class ControlPlaneConfig:
    """Resolved settings from .controlplane/config.yaml (defaults applied)."""
    db_path: str = ".controlplane/controlplane.db"
    similarity_threshold: float = 0.3
    convergence_threshold: float = 5.0
    thrashing_window: int = 3
    default_actor: str = "cli-user"
    log_level: str = "INFO"


def to_jsonable(value: Any) -> Any:
    """Convert row dataclasses (and lists/dicts of them) to plain JSON types."""
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, list):
        return [to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    return value
