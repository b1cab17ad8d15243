"""
FastAPI API Server.

On-demand trigger surface for the execution sync pipeline: full and
per-agent syncs, backfills, sheet header initialization and execution
statistics. Scheduled syncs run separately in ``src.workers.sync_worker``.

Start with:
    uvicorn src.api_server:app --reload --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from dotenv import load_dotenv
load_dotenv(".env.local")

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.middleware import RequestIdMiddleware
from src.api.sync import close_services, router as sync_router
from src.logging_config import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle hooks."""
    logger.info("api_server_starting")
    yield
    await close_services()
    logger.info("api_server_stopping")


app = FastAPI(
    title="Execution Sync Service API",
    description="Syncs voice agent executions, extracts transcript fields and publishes them to Google Sheets",
    version="0.1.0",
    lifespan=lifespan,
)

# Middleware (order matters, outermost first)
app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sync_router)


@app.get("/health", tags=["System"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "service": "execution-sync-service"}


@app.get("/", tags=["System"])
async def root() -> dict[str, str]:
    """API root."""
    return {
        "service": "Execution Sync Service",
        "version": "0.1.0",
        "docs": "/docs",
    }
