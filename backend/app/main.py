"""
Analysis Platform - Backend Layer

Entry point for the backend server.

"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.app.routes.analysis.analysis_route import router as analysis_router
from backend.app.routes.cache.cache_route import router as cache_router
from backend.app.routes.models.models_route import router as models_router
from backend.app.services import AnalysisPlatform

# Logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

logger = logging.getLogger(__name__)


# Application lifespan (startup / shutdown)
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the worker pool and cache maintenance; stop them on exit."""
    # --- Startup ---
    logger.info("Starting Analysis Platform...")
    platform = AnalysisPlatform.get_instance()
    platform.start()

    yield  # Application runs here.

    # --- Shutdown ---
    logger.info("Shutting down Analysis Platform.")
    platform.stop()


# Application
app = FastAPI(
    title="Analysis Platform",
    description=(
        "Natural-language data analysis with AI-generated, sandboxed code"
    ),
    version="0.1.0",
    lifespan=lifespan,
)

# Allow the frontend (served from file:// or localhost) to call the API.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(analysis_router)
app.include_router(cache_router)
app.include_router(models_router)

# Health check
@app.get("/health")
async def health_check():
    """Liveness probe: reports worker and cache-maintenance state."""
    platform = AnalysisPlatform.get_instance()
    workers_up = platform.queue.running

    return {
        "status": "healthy" if workers_up else "degraded",
        "workers_running": workers_up,
        "queued_analyses": platform.queue.pending(),
        "sandbox_backend": platform.settings.sandbox_backend,
    }
