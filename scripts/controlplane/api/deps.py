"""
Request-scoped dependencies

Ticket: 0091_workflow_control_plane
"""

import sqlite3
from collections.abc import Iterator

from fastapi import Request

from ..engine.models import ControlPlaneConfig
from ..engine.schema import open_db


def get_conn(request: Request) -> Iterator[sqlite3.Connection]:
    """One connection per request; closed when the response is sent."""
    conn = open_db(request.app.state.db_path)
    try:
        yield conn
    finally:
        conn.close()


def get_settings(request: Request) -> ControlPlaneConfig:
    return request.app.state.settings
