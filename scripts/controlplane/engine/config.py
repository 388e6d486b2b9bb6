#!/usr/bin/env python3
# Ticket: 0091_workflow_control_plane
# Design: DESIGN.md
"""
Control Plane Configuration Reader

Reads project-specific configuration from the consuming repository's
.controlplane/config.yaml. The file is optional and every key has a default:

    database:
      path: .controlplane/controlplane.db
    knowledge:
      similarity_threshold: 0.3
    iterations:
      convergence_threshold: 5.0
      thrashing_window: 3
    actors:
      default: cli-user
    logging:
      level: INFO

Scoring and eligibility formulas are fixed in code and are deliberately not
configurable here.
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from .models import ControlPlaneConfig

logger = logging.getLogger(__name__)

CONFIG_DIRNAME = ".controlplane"
CONFIG_FILENAME = "config.yaml"


def find_project_root(start: Path | None = None) -> Path:
    """Walk up from start directory to find a .controlplane/ directory."""
    current = start or Path.cwd()
    for candidate in [current] + list(current.parents):
        if (candidate / CONFIG_DIRNAME).exists():
            return candidate
    return current  # fallback to cwd


def load_config(
    project_root: str | Path,
    config_yaml_path: str | Path | None = None,
) -> ControlPlaneConfig:
    """
    Load ControlPlaneConfig from .controlplane/config.yaml.

    Args:
        project_root: Root of the consuming repository.
        config_yaml_path: Override path for config.yaml.

    Returns:
        ControlPlaneConfig with all settings resolved (defaults applied where
        missing, database path made absolute against project_root).
    """
    project_root = Path(project_root)
    config_path = (
        Path(config_yaml_path) if config_yaml_path
        else project_root / CONFIG_DIRNAME / CONFIG_FILENAME
    )
    defaults = ControlPlaneConfig()

    config_doc: dict[str, Any] = {}
    if config_path.exists():
        config_doc = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        logger.debug("Loaded control plane config from %s", config_path)

    db_section = config_doc.get("database") or {}
    db_path = db_section.get("path", defaults.db_path)
    if not Path(db_path).is_absolute():
        db_path = str(project_root / db_path)

    knowledge_section = config_doc.get("knowledge") or {}
    similarity_threshold = float(
        knowledge_section.get("similarity_threshold", defaults.similarity_threshold)
    )
    if not 0.0 <= similarity_threshold <= 1.0:
        raise ValueError(
            f"knowledge.similarity_threshold must be within [0, 1], got {similarity_threshold}"
        )

    iterations_section = config_doc.get("iterations") or {}
    convergence_threshold = float(
        iterations_section.get("convergence_threshold", defaults.convergence_threshold)
    )
    thrashing_window = int(iterations_section.get("thrashing_window", defaults.thrashing_window))
    if thrashing_window < 2:
        raise ValueError(f"iterations.thrashing_window must be at least 2, got {thrashing_window}")

    actors_section = config_doc.get("actors") or {}
    default_actor = str(actors_section.get("default", defaults.default_actor))

    logging_section = config_doc.get("logging") or {}
    log_level = str(logging_section.get("level", defaults.log_level)).upper()

    return ControlPlaneConfig(
        db_path=db_path,
        similarity_threshold=similarity_threshold,
        convergence_threshold=convergence_threshold,
        thrashing_window=thrashing_window,
        default_actor=default_actor,
        log_level=log_level,
    )
