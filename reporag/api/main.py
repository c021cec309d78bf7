"""
FastAPI Main Application.

Entry point for the RepoRAG API server.
"""

import logging
import threading
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from reporag.api.routes import router
from reporag.config import get_settings
from reporag.logger import setup_logging
from reporag.services import Services, build_services

logger = logging.getLogger(__name__)


def _recover_runs(services: Services):
    recovered = services.runner.recover_incomplete_runs()
    if recovered:
        logger.info(f"Recovered {len(recovered)} interrupted ingestion runs")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Handles startup and shutdown events.
    """
    # Startup
    owns_services = app.state.services is None
    if owns_services:
        settings = get_settings()
        setup_logging(settings.log_level, settings.json_logs)
        app.state.services = build_services(settings)

    services: Services = app.state.services
    settings = services.settings
    logger.info("RepoRAG starting...")
    logger.info(f"API: http://{settings.api_host}:{settings.api_port}")
    logger.info(f"Docs: http://{settings.api_host}:{settings.api_port}/docs")

    if owns_services and settings.recover_on_startup:
        threading.Thread(
            target=_recover_runs, args=(services,), name="recover-runs", daemon=True
        ).start()

    yield

    # Shutdown
    logger.info("RepoRAG shutting down...")
    if owns_services:
        services.close()


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        services: Pre-built services (tests pass these); built from settings at startup when omitted
    """
    app = FastAPI(
        title="RepoRAG API",
        description="""
    **RepoRAG** - Retrieval-augmented answers over a repository's documentation.

    ## Workflow

    1. **Ingest**: Start a run for a repository, branch, subpath and extension filter
    2. **Provision**: A scratch bucket is created for the run
    3. **Collect**: Matching files are cloned and archived
    4. **Embed**: Each file becomes an embedded content unit
    5. **Release**: Scratch storage is removed and the run completes
    6. **Query**: Questions are answered from the latest completed run
    """,
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    # Configure CORS for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://localhost:5173",  # Vite default
            "http://127.0.0.1:3000",
            "http://127.0.0.1:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include REST API routes
    app.include_router(router)

    # Root endpoint
    @app.get("/")
    async def root():
        """API root - returns basic info."""
        return {
            "name": "RepoRAG",
            "tagline": "Ask questions about a repository's documentation",
            "version": "0.1.0",
            "docs": "/docs",
            "health": "/api/v1/health",
        }

    return app


app = create_app()


def run_server():
    """Run the API server."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "reporag.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
    )


if __name__ == "__main__":
    run_server()
