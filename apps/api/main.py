"""
Screening Calibration - FastAPI Backend
Main application entry point with health check and API routing.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import engine, Base
from log_config import configure_logging
import models  # noqa: F401
from routers import (
    health,
    uploads,
    datasets,
)

configure_logging(settings.LOG_LEVEL, settings.LOG_FILE or None)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info("Starting Screening Calibration API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database schema verified.")
        except Exception as e:
            logger.warning("Database bootstrap skipped: %s", e)
    yield
    # Shutdown
    await engine.dispose()
    logger.info("Shutting down API...")


app = FastAPI(
    title="Screening Calibration API",
    description="Upload labelled reference datasets and calibrate screening thresholds",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(uploads.router, prefix="/uploads", tags=["Uploads"])
app.include_router(datasets.router, prefix="/datasets", tags=["Datasets"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Screening Calibration API",
        "version": "0.1.0",
        "status": "running"
    }
