"""
FastAPI application for Redpanda Reconciler.

Provides:
- Liveness and readiness probes
- Health endpoint with per-controller queue depth
- Prometheus metrics

The reconcilers themselves run in the application lifespan.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Optional

import structlog
from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel

from . import __version__
from .config import settings
from .manager import Manager
from .metrics import get_metrics_response

logger = structlog.get_logger(__name__)


# =============================================================================
# RESPONSE MODELS
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    timestamp: str
    controllers: Dict[str, int]


# =============================================================================
# APPLICATION STATE
# =============================================================================


class AppState:
    """Global application state."""

    def __init__(self):
        self.manager: Optional[Manager] = None


app_state = AppState()


# =============================================================================
# LIFECYCLE
# =============================================================================


def configure_logging(level: str):
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management."""
    configure_logging(settings.log_level)
    logger.info("Starting Redpanda Reconciler", host=settings.host, port=settings.port)

    manager = Manager(settings)
    await manager.start()
    app_state.manager = manager

    yield

    # Shutdown
    logger.info("Shutting down Redpanda Reconciler")
    app_state.manager = None
    await manager.stop()


# =============================================================================
# FASTAPI APP
# =============================================================================


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="Redpanda Reconciler",
        description="PVC unbinder and Redpanda cluster sync controllers",
        version=__version__,
        lifespan=lifespan,
    )

    # Register routes
    app.include_router(health_router)
    app.include_router(metrics_router)

    return app


# =============================================================================
# HEALTH ROUTES
# =============================================================================

health_router = APIRouter(tags=["Health"])


@health_router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    manager = app_state.manager
    return HealthResponse(
        status="healthy" if manager and manager.running else "starting",
        version=__version__,
        timestamp=datetime.now(timezone.utc).isoformat(),
        controllers=manager.queue_depths() if manager else {},
    )


@health_router.get("/ready")
async def readiness_check():
    """Readiness probe for Kubernetes."""
    if not app_state.manager or not app_state.manager.running:
        raise HTTPException(status_code=503, detail="Manager not ready")
    return {"status": "ready"}


@health_router.get("/live")
async def liveness_check():
    """Liveness probe for Kubernetes."""
    return {"status": "alive"}


# =============================================================================
# METRICS ROUTES
# =============================================================================

metrics_router = APIRouter(tags=["Metrics"])


@metrics_router.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return get_metrics_response()


# =============================================================================
# ENTRY POINT
# =============================================================================

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "redpanda_reconciler.api:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
