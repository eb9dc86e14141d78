import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routes import api_router
from .config import Settings, get_settings
from .services.engine_client import EngineClient, EngineService
from .services.execution_monitor import ExecutionMonitor
from .services.graph_store import GraphStore
from .services.queue_controller import QueueController

logger = logging.getLogger(__name__)


def create_app(engine: EngineService | None = None, settings: Settings | None = None) -> FastAPI:
    """
    Build the application. ``engine`` replaces the ComfyUI client (tests pass
    a fake); ``settings`` defaults to the environment.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Manage application lifespan: startup and shutdown events.
        """
        # Startup
        owned_engine = engine is None
        service = EngineClient.from_settings(settings) if owned_engine else engine
        app.state.settings = settings
        app.state.engine = service
        app.state.graph_store = GraphStore(ttl_seconds=settings.graph_ttl)
        app.state.monitor = ExecutionMonitor.from_settings(service, settings)
        app.state.queue_controller = QueueController.from_settings(service, settings)
        logger.info("comfyflow started, engine at %s", settings.engine_host)

        yield

        # Shutdown
        if owned_engine:
            await service.aclose()
        logger.info("comfyflow shut down")

    app = FastAPI(
        title="comfyflow",
        description="Build ComfyUI workflow graphs, run them and track them to completion.",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[],
        # Local tools and frontends only
        allow_origin_regex=r"^http:\/\/localhost:\d+$|^http:\/\/127\.0\.0\.1:\d+$",
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(api_router)
    return app


app = create_app()
