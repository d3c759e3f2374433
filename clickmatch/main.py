"""
Clickmatch — ad click ↔ purchase attribution and conversion sync.
Main application entry point.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from clickmatch.api.admin import router as admin_router
from clickmatch.api.match import router as match_router
from clickmatch.api.sync import router as sync_router
from clickmatch.config import get_settings
from clickmatch.middleware.security import SecurityHeadersMiddleware

import structlog


def configure_logging(debug: bool) -> None:
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer(),
        ],
    )


configure_logging(get_settings().debug)

logger = structlog.get_logger()

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info(
        "clickmatch_starting",
        min_sync_tier=settings.sync_min_tier.value,
        identity_window_days=settings.identity_window_days,
    )
    yield
    logger.info("clickmatch_shutting_down")


app = FastAPI(
    title=get_settings().app_name,
    description="Attributes purchases to ad clicks and syncs them to the ad platform.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if get_settings().debug else None,
    redoc_url="/redoc" if get_settings().debug else None,
    openapi_url="/openapi.json" if get_settings().debug else None,
)

app.add_middleware(SecurityHeadersMiddleware)

# Server-to-server only; browsers get nothing outside debug
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if get_settings().debug else [],
    allow_methods=["GET", "POST"],
    allow_headers=["X-API-Key", "Content-Type"],
)

# --- Routes ---
app.include_router(match_router)
app.include_router(sync_router)
app.include_router(admin_router)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "clickmatch", "version": VERSION}
