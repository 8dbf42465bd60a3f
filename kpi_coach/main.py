"""
KPI Coach - Suggestion & Action Engine
Main FastAPI application
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.gzip import GZipMiddleware
from contextlib import asynccontextmanager

from kpi_coach.config import get_settings
from kpi_coach.utils.logger import log
from kpi_coach import __version__

# Import routers
from kpi_coach.api import health, suggestions, kpi, outbound
from kpi_coach.middleware.auth_middleware import AuthMiddleware
from kpi_coach.services.errors import (
    AuthRequiredError,
    CoachError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    from kpi_coach.models.base import init_db
    init_db()

    yield

    log.info("Shutting down application")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    Rule-driven coaching for the driving-school CRM

    - Generates daily suggestions from funnel, tuition, expense and schedule signals
    - Scopes every read and write to the caller's branches or own records
    - Collects one feedback entry per user and suggestion
    - Manages KPI targets and period goals
    - Queues templated outbound messages from suggestion actions
    """,
    lifespan=lifespan
)


def _status_for(exc: CoachError) -> int:
    if isinstance(exc, AuthRequiredError):
        return 401
    if isinstance(exc, ForbiddenError):
        return 403
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    return 400


@app.exception_handler(CoachError)
async def coach_error_handler(request: Request, exc: CoachError):
    status = _status_for(exc)
    if status >= 403:
        log.info(f"{request.method} {request.url.path} -> {status} {exc.code}: {exc}")
    return JSONResponse(
        status_code=status,
        content={"success": False, "error": {"code": exc.code, "message": str(exc)}},
    )


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Session-based authentication middleware
app.add_middleware(AuthMiddleware)

app.add_middleware(GZipMiddleware, minimum_size=500)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(suggestions.router)
app.include_router(kpi.router)
app.include_router(outbound.router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "kpi_coach.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
