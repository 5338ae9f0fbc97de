"""
nima/main.py
────────────
Nima backend: FastAPI application entry point.

Startup sequence
────────────────
1. Load settings from .env (validated by pydantic-settings).
2. Configure structured logging.
3. Create database tables and register the workflows via the lifespan hook.
4. Resume workflow runs a previous process left unfinished.
5. Register CORS middleware.
6. Mount the v1 API router.
7. Register a global exception handler for clean error responses.

On shutdown the background scheduler is drained so in-flight steps can
checkpoint before the process exits.
"""

import logging
import logging.config
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from nima.api import routes
from nima.core.config import get_settings
from nima.database import create_db_and_tables
from nima.schemas import HealthResponse
from nima.workflows import item_try_on, looks  # noqa: F401  (registers the workflows)
from nima.workflows.engine import workflow
from nima.workflows.scheduler import scheduler

logging.config.dictConfig(
    {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
            }
        },
        "root": {"level": "INFO", "handlers": ["console"]},
        # Quieten SQLAlchemy and the HTTP clients in production
        "loggers": {
            "sqlalchemy.engine": {
                "level": "DEBUG" if get_settings().APP_DEBUG else "WARNING",
                "handlers": ["console"],
                "propagate": False,
            },
            "httpx": {"level": "WARNING"},
        },
    }
)

logger = logging.getLogger(__name__)
settings = get_settings()

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Run startup / shutdown logic around the application lifetime."""
    logger.info("Starting Nima backend (env=%s)", settings.APP_ENV)
    create_db_and_tables()
    logger.info("Database tables created / verified.")
    resumed = workflow.resume_incomplete()
    if resumed:
        logger.info("Resumed %d unfinished workflow run(s).", len(resumed))
    yield
    logger.info("Nima backend shutting down; waiting for %d background task(s).", scheduler.pending)
    await scheduler.drain()


app = FastAPI(
    title="Nima API",
    version=VERSION,
    description=(
        "AI stylist backend.\n\n"
        "Core features:\n"
        "- **Look generation**: curated outfits rendered on the user's photo\n"
        "- **Item try-on**: see a single catalog item on yourself\n"
        "- **Credits**: free weekly credits plus purchased packs\n"
    ),
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all handler so unhandled exceptions return a clean JSON response
    instead of an HTML traceback (important in production).
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "An unexpected error occurred. Please try again."},
    )


app.include_router(routes.router, prefix="/api/v1")


@app.get(
    "/",
    response_model=HealthResponse,
    tags=["Health"],
    summary="Liveness probe",
)
def health_check() -> HealthResponse:
    return HealthResponse(
        status="Nima Backend is Running",
        version=VERSION,
        environment=settings.APP_ENV,
    )
