"""
FastAPI application entry point.

Initializes logging, bootstraps the feedflow tables on startup and registers
the import, operation, export and mapping routers.
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from feedflow.api.routers import exports, imports, mappings, operations
from feedflow.core.config import settings
from feedflow.core.logging_config import configure_logging
from feedflow.db.models import create_tables
from feedflow.db.session import get_engine
from feedflow.domain.worker_pool import shutdown_worker_pool

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup; drain the worker pool on shutdown."""
    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
    else:
        try:
            create_tables(get_engine())
            logger.info("Database tables ready")
        except Exception:
            logger.exception("Failed to initialize database tables; the application cannot start")
            raise

    yield

    shutdown_worker_pool(wait=False)


app = FastAPI(
    title="Feedflow API",
    version="1.0.0",
    description="Product and market data feed import/export engine",
    lifespan=lifespan,
)

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
allowed_origins = [origin.strip() for origin in allowed_origins]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(imports.router)
app.include_router(operations.router)
app.include_router(exports.router)
app.include_router(mappings.router)


@app.get("/")
async def root():
    return {"message": "Feedflow API", "version": "1.0.0"}


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "feedflow-api",
    }
