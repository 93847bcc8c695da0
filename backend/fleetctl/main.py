import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fleetctl.config import Settings, get_settings
from fleetctl.observability.logging import configure_logging
from fleetctl.observability.middleware import RequestContextMiddleware
from fleetctl.runtime.deps import RuntimeDependencies, build_dependencies
from fleetctl.scheduler import start_scheduler, stop_scheduler
from fleetctl.api.devices import router as devices_router
from fleetctl.api.health import router as health_router
from fleetctl.api.queues import router as queues_router
from fleetctl.api.tasks import router as tasks_router

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, runtime: RuntimeDependencies | None = None) -> FastAPI:
    """Build the API application. Tests pass a prebuilt runtime to share its in-memory store."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.runtime = runtime or build_dependencies(settings)
        if app.state.runtime.engine is not None:
            from fleetctl.storage.database import init_db

            await init_db(app.state.runtime.engine)
            logger.info("database_initialized")

        background = None
        if settings.scheduler_enabled:
            background = start_scheduler(app.state.runtime.scheduler, settings.due_scan_interval_seconds)

        yield

        if background is not None:
            stop_scheduler(background)
        await app.state.runtime.close()
        logger.info("control_plane_stopped")

    app = FastAPI(
        title=settings.app_name,
        description="Device fleet command queue and task orchestration",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:8000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)

    app.include_router(health_router)
    app.include_router(devices_router)
    app.include_router(tasks_router)
    app.include_router(queues_router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": settings.app_name,
            "version": "0.1.0",
            "docs": "/docs",
        }

    return app


configure_logging()
app = create_app()
