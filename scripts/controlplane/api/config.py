"""
Configuration for the control plane REST API

Ticket: 0091_workflow_control_plane
"""

import os
from pathlib import Path

from ..engine.config import find_project_root, load_config
from ..engine.models import ControlPlaneConfig


class ApiConfig:
    """Application configuration from environment variables and config.yaml."""

    def __init__(self, db_path: str | Path | None = None):
        """
        Resolve the database path.

        Precedence: explicit db_path, then CONTROLPLANE_DB, then
        database.path from the project's .controlplane/config.yaml.
        """
        self.project_root = Path(
            os.getenv("CONTROLPLANE_PROJECT_ROOT") or find_project_root()
        ).resolve()
        self.settings: ControlPlaneConfig = load_config(self.project_root)

        chosen = db_path or os.getenv("CONTROLPLANE_DB") or self.settings.db_path
        self.db_path = Path(chosen).resolve()
