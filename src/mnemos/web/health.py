"""HTTP health endpoint for the embedding job subsystem.

Exposes ``GET /health`` backed by ``EmbeddingJobManager.get_health_status()``:

- 200 with the health snapshot when the status is HEALTHY
- 503 with the health snapshot when it is DEGRADED or CRITICAL
- 503 with status "unavailable" when no manager is attached

Example:
    >>> app = create_health_app(manager)
    >>> await serve_health(app, config.web)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from mnemos import __version__
from mnemos.jobs.manager import HealthState
from mnemos.logging import get_logger

if TYPE_CHECKING:
    from mnemos.config import WebConfig
    from mnemos.jobs.manager import EmbeddingJobManager

logger = get_logger(__name__)


def get_manager(request: Request) -> EmbeddingJobManager | None:
    """Retrieve the job manager from app state, if one is attached."""
    return getattr(request.app.state, "manager", None)


def create_health_router() -> APIRouter:
    """Create the health check router.

    Routes:
        GET /health - Aggregate job subsystem health
    """
    router = APIRouter(tags=["health"])

    @router.get("/health")
    async def health(request: Request) -> JSONResponse:
        manager = get_manager(request)
        if manager is None:
            return JSONResponse(
                status_code=503,
                content={
                    "status": "unavailable",
                    "message": "Embedding job manager not initialized",
                },
            )

        try:
            status = manager.get_health_status()
        except Exception as exc:
            logger.error("health_check_failed", error=str(exc), exc_info=True)
            return JSONResponse(
                status_code=503,
                content={"status": "unavailable", "message": str(exc)},
            )

        body: dict[str, Any] = status.model_dump(mode="json")
        code = 200 if status.status == HealthState.HEALTHY else 503
        if code != 200:
            logger.warning(
                "health_check_unhealthy",
                status=status.status.value,
                reasons=status.reasons,
            )
        return JSONResponse(status_code=code, content=body)

    return router


def create_health_app(manager: EmbeddingJobManager | None = None) -> FastAPI:
    """Create a FastAPI application serving the health endpoint.

    Args:
        manager: Job manager to report on; None reports 503 unavailable.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="Mnemos",
        version=__version__,
        description="Embedding job subsystem health",
    )
    app.state.manager = manager
    app.include_router(create_health_router())

    logger.info("health_app_created", manager_attached=manager is not None)
    return app


async def serve_health(app: FastAPI, config: WebConfig) -> None:
    """Serve the health app with uvicorn until cancelled."""
    server = uvicorn.Server(
        uvicorn.Config(app, host=config.host, port=config.port, log_config=None)
    )
    logger.info("health_server_starting", host=config.host, port=config.port)
    await server.serve()
