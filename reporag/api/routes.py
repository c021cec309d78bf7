"""
FastAPI Routes for the RepoRAG API.

Provides REST endpoints for:
- Starting, inspecting, cancelling and resuming ingestion runs
- Answering queries against the latest completed run
- Reading conversations and index statistics
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from reporag.errors import (
    ConversationNotFoundError,
    InvalidQueryError,
    InvalidTransitionError,
    NoCompletedRunError,
    ObjectNotFoundError,
    RepoRAGError,
    RepositoryNotFoundError,
    RunNotFoundError,
    TransientError,
)
from reporag.graph.state import IngestionRun, RepositoryDescriptor
from reporag.graph.workflow import IngestionRunner
from reporag.services import Services

logger = logging.getLogger(__name__)

# API Router
router = APIRouter(prefix="/api/v1", tags=["reporag"])


def get_services(request: Request) -> Services:
    """Services built at application startup."""
    return request.app.state.services


# === Request/Response Models ===

class CreateIngestionRequest(BaseModel):
    """Request body for starting an ingestion run."""
    url: str = Field(..., min_length=1, description="Repository URL (e.g., https://github.com/owner/repo)")
    branch: Optional[str] = Field(None, description="Branch to ingest (defaults to the configured branch)")
    path: str = Field("", description="Subdirectory to restrict ingestion to")
    file_extensions: Optional[List[str]] = Field(
        None, description="Extensions to keep, with or without a leading dot (defaults to the configured list)"
    )
    run_id: Optional[str] = Field(None, description="Custom run ID (auto-generated if not provided)")


class RunResponse(BaseModel):
    """Response describing an ingestion run."""
    run_id: str
    status: str
    url: str
    branch: str
    path: str
    file_extensions: List[str]
    created_at: datetime
    updated_at: Optional[datetime] = None
    error_message: Optional[str] = None
    failed_step: Optional[str] = None
    cancel_requested: bool = False


class RunDetailResponse(RunResponse):
    """Run plus its saga steps and status history."""
    steps: List[Dict[str, Any]] = []
    history: List[Dict[str, Any]] = []


class QueryRequest(BaseModel):
    """Request body for a query."""
    query: str = Field(..., description="Natural-language question")
    conversation_id: Optional[str] = Field(None, description="Conversation to continue (a new one is started if omitted)")


class RelatedDocument(BaseModel):
    id: str
    source_path: str
    distance: Optional[float] = None


class QueryResponse(BaseModel):
    """Response for a query."""
    conversation_id: str
    answer: str
    run_id: str
    related_documents: List[RelatedDocument]


def _run_response(run: IngestionRun) -> Dict[str, Any]:
    return {
        "run_id": run.run_id,
        "status": run.status.value,
        "url": run.repository.url,
        "branch": run.repository.branch,
        "path": run.repository.path,
        "file_extensions": run.repository.file_extensions,
        "created_at": run.created_at,
        "updated_at": run.updated_at,
        "error_message": run.error_message,
        "failed_step": run.failed_step,
        "cancel_requested": run.cancel_requested,
    }


def _http_error(error: RepoRAGError) -> HTTPException:
    """Map a domain error onto an HTTP status."""
    if isinstance(error, NoCompletedRunError):
        status = 503
    elif isinstance(error, (RunNotFoundError, ConversationNotFoundError, ObjectNotFoundError, RepositoryNotFoundError)):
        status = 404
    elif isinstance(error, InvalidQueryError):
        status = 400
    elif isinstance(error, InvalidTransitionError):
        status = 409
    elif isinstance(error, TransientError):
        status = 503
    else:
        status = 502
    return HTTPException(status_code=status, detail=str(error))


# === Ingestion Endpoints ===

@router.post("/ingestions", response_model=RunResponse, status_code=202)
def create_ingestion(
    request: CreateIngestionRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Create an ingestion run and start the saga in the background.

    Poll GET /ingestions/{run_id} for progress.
    """
    settings = services.settings
    repository = RepositoryDescriptor(
        url=request.url,
        branch=request.branch or settings.default_branch,
        path=request.path,
        file_extensions=(
            request.file_extensions
            if request.file_extensions is not None
            else settings.default_file_extensions
        ),
    )

    if request.run_id:
        try:
            services.registry.get_run(request.run_id)
        except RunNotFoundError:
            pass
        else:
            raise HTTPException(
                status_code=400,
                detail=f"Run with ID '{request.run_id}' already exists"
            )

    run_id = services.runner.create_run(repository, run_id=request.run_id)
    _execute_in_background(services.runner, run_id)
    return _run_response(services.registry.get_run(run_id))


@router.get("/ingestions")
def list_ingestions(
    limit: int = 50,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """List ingestion runs, newest first."""
    runs = services.registry.list_runs(limit=limit)
    return {"runs": [_run_response(run) for run in runs], "total": len(runs)}


@router.get("/ingestions/{run_id}", response_model=RunDetailResponse)
def get_ingestion(
    run_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Get the current status of a run, its steps and its history."""
    try:
        run = services.registry.get_run(run_id)
    except RepoRAGError as e:
        raise _http_error(e) from e

    steps = [
        {
            "step": record["step"],
            "status": record["status"].value,
            "attempts": record["attempts"],
            "output": record["output"],
        }
        for record in services.ledger.steps(run_id)
    ]
    return {
        **_run_response(run),
        "steps": steps,
        "history": services.registry.history(run_id),
    }


@router.post("/ingestions/{run_id}/cancel", response_model=RunResponse)
def cancel_ingestion(
    run_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Cancel a run.

    A run executing in this server stops at its next step boundary; any
    other unfinished run is compensated immediately.
    """
    try:
        run = services.runner.cancel(run_id)
    except RepoRAGError as e:
        raise _http_error(e) from e
    return _run_response(run)


@router.post("/ingestions/{run_id}/resume", response_model=RunResponse, status_code=202)
def resume_ingestion(
    run_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Resume an interrupted run in the background."""
    try:
        run = services.registry.get_run(run_id)
    except RepoRAGError as e:
        raise _http_error(e) from e

    if run.status.is_terminal:
        raise HTTPException(
            status_code=409,
            detail=f"Run already finished. Current status: {run.status.value}"
        )
    if services.runner.is_active(run_id):
        raise HTTPException(
            status_code=409,
            detail=f"Run '{run_id}' is already executing"
        )

    _execute_in_background(services.runner, run_id)
    return _run_response(run)


# === Query Endpoints ===

@router.post("/queries", response_model=QueryResponse)
def create_query(
    request: QueryRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Answer a query against the latest completed ingestion run."""
    try:
        result = services.pipeline.answer_query(request.query, request.conversation_id)
    except RepoRAGError as e:
        raise _http_error(e) from e

    return {
        "conversation_id": result.conversation_id,
        "answer": result.answer,
        "run_id": result.run_id,
        "related_documents": [
            {"id": doc.id, "source_path": doc.source_path, "distance": doc.distance}
            for doc in result.related_documents
        ],
    }


@router.get("/conversations/{conversation_id}")
def get_conversation(
    conversation_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Get the stored turns of a conversation."""
    try:
        return services.pipeline.get_conversation(conversation_id)
    except RepoRAGError as e:
        raise _http_error(e) from e


@router.delete("/conversations/{conversation_id}")
def delete_conversation(
    conversation_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, str]:
    """Release a conversation's scratch storage."""
    try:
        services.pipeline.release_conversation(conversation_id)
    except RepoRAGError as e:
        raise _http_error(e) from e
    return {"message": "Conversation released.", "conversation_id": conversation_id}


# === Index Endpoints ===

@router.get("/index/stats")
def get_index_stats(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Get vector store statistics and the run queries are answered against."""
    try:
        latest = services.registry.latest_completed()
    except NoCompletedRunError:
        latest = None

    try:
        stats = services.vector_store.stats()
    except RepoRAGError as e:
        raise _http_error(e) from e

    if latest:
        stats["latest_run_id"] = latest
        stats["latest_run_units"] = services.vector_store.count(latest)
    else:
        stats["latest_run_id"] = None
        stats["latest_run_units"] = 0
    return stats


# === Health Endpoints ===

@router.get("/health")
def health_check(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Check API health and configuration (fast, no external calls)."""
    settings = services.settings
    return {
        "api": "healthy",
        "llm_provider": settings.llm_provider,
        "llm_model": settings.llm_model,
        "embedding_model": settings.embedding_model,
        "object_store": settings.object_store_backend,
        "github": "token configured" if settings.github_token else "no token (preflight checks disabled)",
    }


# === Background Task Functions ===

def _execute_sync(runner: IngestionRunner, run_id: str):
    """Drive a run to completion (called from thread)."""
    try:
        run = runner.execute(run_id)
        logger.info(f"[{run_id}] Background execution finished: {run.status.value}")
    except RepoRAGError as e:
        # Failure is already recorded on the run.
        logger.error(f"[{run_id}] Background execution failed: {e}")
    except Exception:
        logger.exception(f"[{run_id}] Unexpected error during background execution")


def _execute_in_background(runner: IngestionRunner, run_id: str):
    """Start a run in a background thread (non-blocking)."""
    thread = threading.Thread(
        target=_execute_sync,
        args=(runner, run_id),
        name=f"ingest-{run_id}",
        daemon=True,
    )
    thread.start()
