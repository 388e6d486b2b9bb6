"""
API routes for the workflow control plane

Ticket: 0091_workflow_control_plane
"""

from .features import router as features_router
from .knowledge import router as knowledge_router
from .knowledge import propagation_router
from .evals import router as evals_router

__all__ = ["features_router", "knowledge_router", "propagation_router", "evals_router"]
