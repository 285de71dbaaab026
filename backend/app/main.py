"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import TriageConfig, settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import run_health_check
from backend.app.core.services import TriageServices, build_services

# ── API routers ──
from backend.app.api.v1.sos import router as sos_router
from backend.app.api.v1.responder import router as responder_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def create_app(
    services: Optional[TriageServices] = None,
    *,
    run_scheduler: Optional[bool] = None,
) -> FastAPI:
    """
    Build the application.

    ``services`` replaces the container the lifespan would otherwise build
    from settings; ``run_scheduler`` overrides ESCALATION_SWEEP_ENABLED.
    """
    sweep_enabled = (
        settings.ESCALATION_SWEEP_ENABLED if run_scheduler is None else run_scheduler
    )

    # ── Application lifespan (startup / shutdown) ──

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage startup and shutdown events."""
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )
        container = services or build_services(TriageConfig.from_settings(settings))
        app.state.services = container
        app.state.sweep_enabled = sweep_enabled
        if sweep_enabled:
            await container.scheduler.start()
        yield
        # Shutdown: stop the sweep loop, release the channel pool
        await container.scheduler.stop()
        container.close()
        logger.info("Shutting down %s", settings.APP_NAME)

    # ── Create application ──

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Emergency SOS triage for disaster response. "
            "Signal intake, responder assignment with optimistic concurrency, "
            "status lifecycle enforcement, time-based automatic escalation, "
            "spatial clustering of concurrent signals, and "
            "multi-channel responder notification (in-app, email, SMS, push)."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ── Middleware stack (outermost first) ──

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware, quiet_paths=settings.QUIET_LOG_PATHS)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(sos_router)
    app.include_router(responder_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "modules": [
                "signal-intake",
                "assignment",
                "status-lifecycle",
                "auto-escalation",
                "clustering",
                "responder-notifications",
                "analytics",
            ],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check(request: Request):
        """Deep health probe — checks all subsystems."""
        report = await run_health_check(
            request.app.state.services,
            scheduler_expected=request.app.state.sweep_enabled,
        )
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness(request: Request):
        """Kubernetes readiness probe — can we serve traffic?"""
        report = await run_health_check(
            request.app.state.services,
            scheduler_expected=request.app.state.sweep_enabled,
        )
        if report.status.value == "unhealthy":
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
