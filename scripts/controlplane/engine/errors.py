#!/usr/bin/env python3
# Ticket: 0091_workflow_control_plane
# Design: DESIGN.md
"""
Control Plane Error Taxonomy

All engine errors subclass ValueError so existing callers that catch
ValueError (CLI commands, MCP tool wrappers) keep working.

- NotFoundError: a referenced feature, learning, blocker, gate, invocation
  or alert does not exist. Never retried automatically.
- InvariantViolationError: the request breaks a rule (phase skip, completing
  with open blockers, validating a superseded learning, double-ending an
  invocation). The message names the rule.
- CollisionError: the thing being created already exists (lock held,
  duplicate gate key, duplicate conflict pair, duplicate feature id).

Threshold-not-met is deliberately absent: propagation eligibility is
reported as a normal result, not raised.
"""


class ControlPlaneError(ValueError):
    """Base class for all control plane errors."""


class NotFoundError(ControlPlaneError):
    def __init__(self, entity_type: str, entity_id: str | int):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.capitalize()} '{entity_id}' not found")


class InvariantViolationError(ControlPlaneError):
    """Raised when an operation would break a control plane rule."""


class CollisionError(ControlPlaneError):
    """Raised when the entity being created already exists."""

    def __init__(self, message: str, holder: str | None = None):
        self.holder = holder
        super().__init__(message)
