#!/usr/bin/env python3
# Ticket: 0091_workflow_control_plane
# Design: DESIGN.md
"""
Control Plane Phase State Machine

Pure rules for moving a feature between the nine fixed phases, plus the
blocker status lifecycle. Nothing here touches the database; features.py and
gating.py call these functions inside their write transactions.

Phase rules, with c = current phase and t = target phase:
    t == c      → FORWARD   (re-entry, re-runs the phase's work)
    t == c + 1  → FORWARD   (ordinary advance)
    t >  c + 1  → rejected  (phases cannot be skipped)
    t <  c      → BACKWARD  (rework, any earlier phase)

Blocker lifecycle:
    OPEN        → IN_PROGRESS | RESOLVED | ESCALATED
    IN_PROGRESS → RESOLVED | ESCALATED
    ESCALATED   → RESOLVED
    RESOLVED    → (terminal)
"""

from .errors import InvariantViolationError
from .models import BlockerStatus, Phase, TransitionKind


# ---------------------------------------------------------------------------
# Error types
# ---------------------------------------------------------------------------


class PhaseSkipError(InvariantViolationError):
    """Raised when a transition would skip one or more phases."""

    def __init__(self, current: Phase, target: Phase, feature_id: str | None = None):
        self.current = current
        self.target = target
        self.feature_id = feature_id
        skipped = ", ".join(
            Phase.parse(n).display for n in range(current.number + 1, target.number)
        )
        feature_info = f" for feature '{feature_id}'" if feature_id else ""
        super().__init__(
            f"Cannot skip phases{feature_info}: phase {current.display} → "
            f"phase {target.display} would skip {skipped}. All phases must execute; "
            f"complexity level affects the depth of work within a phase, never "
            f"which phases run. Next allowed phase is "
            f"{Phase.parse(current.number + 1).display}."
        )


class UnknownPhaseError(InvariantViolationError):
    """Raised when a phase token is not one of "0".."8"."""

    def __init__(self, value: object):
        self.value = value
        super().__init__(
            f"Unknown phase: {value!r}. Valid phases: "
            + ", ".join(p.display for p in Phase)
        )


class InvalidBlockerTransitionError(InvariantViolationError):
    """Raised when a blocker status change is not allowed."""

    def __init__(self, from_status: BlockerStatus, to_status: BlockerStatus, blocker_id: int | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.blocker_id = blocker_id
        blocker_info = f" (blocker_id={blocker_id})" if blocker_id is not None else ""
        allowed = sorted(s.value for s in VALID_BLOCKER_TRANSITIONS[from_status])
        super().__init__(
            f"Invalid blocker transition{blocker_info}: "
            f"'{from_status.value}' → '{to_status.value}'. "
            f"Valid transitions from '{from_status.value}': {allowed}"
        )


# ---------------------------------------------------------------------------
# Blocker transitions: {from_status: set(to_statuses)}
# ---------------------------------------------------------------------------

VALID_BLOCKER_TRANSITIONS: dict[BlockerStatus, frozenset[BlockerStatus]] = {
    BlockerStatus.OPEN: frozenset([
        BlockerStatus.IN_PROGRESS,
        BlockerStatus.RESOLVED,
        BlockerStatus.ESCALATED,
    ]),
    BlockerStatus.IN_PROGRESS: frozenset([
        BlockerStatus.RESOLVED,
        BlockerStatus.ESCALATED,
    ]),
    BlockerStatus.ESCALATED: frozenset([
        BlockerStatus.RESOLVED,     # a human decision closes an escalation
    ]),
    BlockerStatus.RESOLVED: frozenset(),
}


# ---------------------------------------------------------------------------
# Phase rules
# ---------------------------------------------------------------------------


def parse_phase(value: "str | int | Phase") -> Phase:
    """Parse a phase token or integer, raising UnknownPhaseError on bad input."""
    try:
        return Phase.parse(value)
    except ValueError:
        raise UnknownPhaseError(value) from None


def classify_transition(
    current: "str | int | Phase",
    target: "str | int | Phase",
    feature_id: str | None = None,
) -> TransitionKind:
    """
    Return the kind of a phase transition, or raise if it is not allowed.

    Raises:
        UnknownPhaseError: if either phase is not a valid token
        PhaseSkipError: if target is more than one phase ahead of current
    """
    c = parse_phase(current)
    t = parse_phase(target)

    if t.number > c.number + 1:
        raise PhaseSkipError(c, t, feature_id)
    if t.number < c.number:
        return TransitionKind.BACKWARD
    return TransitionKind.FORWARD


def can_transition(current: "str | int | Phase", target: "str | int | Phase") -> bool:
    """Return True if current → target is an allowed phase transition."""
    return parse_phase(target).number <= parse_phase(current).number + 1


def allowed_targets(current: "str | int | Phase") -> list[Phase]:
    """Return every phase reachable from current, in phase order."""
    c = parse_phase(current)
    return [p for p in Phase if p.number <= c.number + 1]


def is_terminal_phase(phase: "str | int | Phase") -> bool:
    return parse_phase(phase) is Phase.COMPLETE


# ---------------------------------------------------------------------------
# Blocker rules
# ---------------------------------------------------------------------------


def validate_blocker_transition(
    from_status: "str | BlockerStatus",
    to_status: "str | BlockerStatus",
    blocker_id: int | None = None,
) -> None:
    """
    Validate that a blocker status change is allowed.

    Raises:
        InvalidBlockerTransitionError: if the change is not in VALID_BLOCKER_TRANSITIONS
    """
    from_status = BlockerStatus(from_status)
    to_status = BlockerStatus(to_status)
    if to_status not in VALID_BLOCKER_TRANSITIONS[from_status]:
        raise InvalidBlockerTransitionError(from_status, to_status, blocker_id)
