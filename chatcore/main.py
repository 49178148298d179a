import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response, status

from chatcore.config import Settings, get_settings
from chatcore.core import ChatCore
from chatcore.logging_utils import setup_logging, OpsRequestMiddleware
from chatcore.metrics import get_metrics, get_metrics_content_type
from chatcore.schemas import HealthResponse

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the ops HTTP app hosting one ChatCore instance.

    The ChatCore is created, initialized and connected on startup and
    closed on shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.LOG_LEVEL)
        core = ChatCore.from_settings(settings)
        await core.init()
        await core.start()
        app.state.core = core
        yield
        await core.close()

    app = FastAPI(
        title="ChatCore",
        description="Client-side message delivery and synchronization engine",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(OpsRequestMiddleware)

    # =========================================================================
    # Health Check Routes
    # =========================================================================

    @app.get("/health/live", response_model=HealthResponse)
    async def health_live() -> HealthResponse:
        """Liveness probe - always returns 200 once the app is running."""
        return HealthResponse(status="ok")

    @app.get("/health/ready", response_model=HealthResponse)
    async def health_ready(request: Request, response: Response) -> HealthResponse:
        """
        Readiness probe - returns 200 only if:
        1. The local store is initialized
        2. The wire connection is up

        Otherwise returns 503 (Service Unavailable).
        """
        core: ChatCore = request.app.state.core

        if not core.store.initialized:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(status="not_ready", reason="Local store not initialized")

        if not core.connection.connected:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(status="not_ready", reason="Not connected to server")

        return HealthResponse(status="ready")

    # =========================================================================
    # Metrics Route
    # =========================================================================

    @app.get("/metrics")
    async def metrics() -> Response:
        """Expose Prometheus metrics in text exposition format."""
        return Response(
            content=get_metrics(),
            media_type=get_metrics_content_type()
        )

    return app


app = create_app()
