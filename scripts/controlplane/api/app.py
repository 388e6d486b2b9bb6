"""
FastAPI application for the workflow control plane

Ticket: 0091_workflow_control_plane
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..engine.errors import CollisionError, NotFoundError
from ..engine.schema import create_db
from .config import ApiConfig
from .routes import evals_router, features_router, knowledge_router, propagation_router

logger = logging.getLogger(__name__)


def _error_body(exc: Exception) -> dict:
    return {"detail": str(exc), "error_type": type(exc).__name__}


async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=_error_body(exc))


async def _collision(request: Request, exc: CollisionError) -> JSONResponse:
    body = _error_body(exc)
    if exc.holder is not None:
        body["holder"] = exc.holder
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=body)


async def _rejected(request: Request, exc: ValueError) -> JSONResponse:
    logger.info("Rejected %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_body(exc)
    )


def create_app(db_path: str | Path | None = None) -> FastAPI:
    """Build the API against db_path (or the configured database)."""
    config = ApiConfig(db_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Make sure the database exists and is migrated before serving."""
        config.db_path.parent.mkdir(parents=True, exist_ok=True)
        create_db(config.db_path).close()
        logger.info("Control plane API using %s", config.db_path)
        yield

    app = FastAPI(
        title="Workflow Control Plane API",
        description="REST API for feature lifecycle, knowledge and evaluation state",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.db_path = config.db_path
    app.state.settings = config.settings

    # Add CORS middleware for development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # NotFoundError and CollisionError are ValueErrors; the most specific handler wins
    app.add_exception_handler(NotFoundError, _not_found)
    app.add_exception_handler(CollisionError, _collision)
    app.add_exception_handler(ValueError, _rejected)

    app.include_router(features_router, prefix="/api/v1")
    app.include_router(knowledge_router, prefix="/api/v1")
    app.include_router(propagation_router, prefix="/api/v1")
    app.include_router(evals_router, prefix="/api/v1")

    @app.get("/api/v1/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "ok", "database": str(config.db_path)}

    return app
