"""FastAPI router for the Crucible fine-tuning pipeline.

Exposes the submit and reconcile triggers plus example ingestion and
read-only views of examples, jobs, and batch readiness. Designed to be
mounted at /api/crucible/ by the parent application.

All endpoint functions are synchronous (not async) because the
pipeline uses synchronous SQLite and provider calls. FastAPI runs sync
handlers in a thread pool automatically.
"""

from __future__ import annotations

import math
from typing import Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from crucible.src.config import PipelineConfig
from crucible.src.pipeline import FineTuningPipeline, build_pipeline
from crucible.src.registry import ConsumptionWriteFailure
from crucible.src.storage import CrucibleStorageError

router = APIRouter()

# ---------------------------------------------------------------------------
# Module-level pipeline instance (initialized by init_crucible)
# ---------------------------------------------------------------------------

_pipeline: FineTuningPipeline | None = None


def init_crucible(
    config: PipelineConfig | None = None,
    pipeline: FineTuningPipeline | None = None,
) -> FineTuningPipeline:
    """Initialize the pipeline backing this router.

    Call this once at application startup before any requests are served.

    Args:
        config: Settings to build from. Read from the environment when None.
        pipeline: Prebuilt pipeline (for tests). Takes precedence over config.

    Returns:
        The active FineTuningPipeline.

    Raises:
        ConfigurationError: If the configuration is unusable.
    """
    global _pipeline

    if pipeline is None:
        pipeline = build_pipeline(config or PipelineConfig.from_env())
    _pipeline = pipeline
    return _pipeline


def reset_crucible() -> None:
    """Drop the active pipeline without closing it."""
    global _pipeline
    _pipeline = None


def get_pipeline() -> FineTuningPipeline:
    """Return the initialized pipeline or raise.

    Raises:
        HTTPException: If the pipeline has not been initialized.
    """
    if _pipeline is None:
        raise HTTPException(status_code=500, detail="Crucible pipeline not initialized")
    return _pipeline


# ---------------------------------------------------------------------------
# Pydantic request models
# ---------------------------------------------------------------------------


class ExampleCreate(BaseModel):
    """Request body for adding a training example."""

    prompt: str = Field(..., min_length=1)
    completion: str = Field(..., min_length=1)
    source: str = Field(default="user_feedback", min_length=1, max_length=100)
    quality_score: float = Field(default=0.5, ge=0.0, le=1.0)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@router.get("/health")
def health_check() -> dict[str, Any]:
    """Return Crucible service health status."""
    return {
        "status": "ok",
        "service": "crucible",
        "version": "0.1.0",
        "pipeline_initialized": _pipeline is not None,
        "provider": _pipeline.provider.name if _pipeline is not None else None,
    }


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


@router.post("/submit")
def submit_batch() -> dict[str, Any]:
    """Submit a training batch if enough unconsumed examples exist.

    Every normal result (submitted, not ready, claim conflict, provider
    failure) is returned with status 200.

    Returns:
        Serialized SubmitOutcome.
    """
    try:
        return get_pipeline().submit().to_dict()
    except HTTPException:
        raise
    except ConsumptionWriteFailure as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except Exception as exc:
        raise HTTPException(status_code=500, detail="Failed to submit batch") from exc


@router.post("/reconcile")
def reconcile_jobs() -> dict[str, Any]:
    """Poll the provider for every active job and record changes.

    Returns:
        Serialized ReconcileSummary.
    """
    try:
        return get_pipeline().reconcile().to_dict()
    except HTTPException:
        raise
    except Exception as exc:
        raise HTTPException(status_code=500, detail="Failed to reconcile jobs") from exc


# ---------------------------------------------------------------------------
# Examples
# ---------------------------------------------------------------------------


@router.post("/examples", status_code=201)
def add_example(body: ExampleCreate) -> dict[str, Any]:
    """Store a new training example.

    Args:
        body: Prompt, completion, and optional source and quality score.

    Returns:
        Dict with the created example.
    """
    try:
        example = get_pipeline().add_example(
            prompt=body.prompt,
            completion=body.completion,
            source=body.source,
            quality_score=body.quality_score,
        )
        return {"success": True, "example": example.to_dict()}
    except HTTPException:
        raise
    except CrucibleStorageError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except Exception as exc:
        raise HTTPException(status_code=500, detail="Failed to add example") from exc


@router.get("/examples")
def list_examples(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
) -> dict[str, Any]:
    """List examples newest first with pagination.

    Args:
        page: 1-based page number.
        limit: Page size.

    Returns:
        Dict with examples and a pagination block.
    """
    try:
        examples, total = get_pipeline().list_examples(page=page, limit=limit)
        return {
            "examples": [ex.to_dict() for ex in examples],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit),
            },
        }
    except HTTPException:
        raise
    except Exception as exc:
        raise HTTPException(status_code=500, detail="Failed to list examples") from exc


# ---------------------------------------------------------------------------
# Jobs and readiness
# ---------------------------------------------------------------------------


@router.get("/jobs")
def list_jobs(limit: int = Query(default=5, ge=1, le=100)) -> dict[str, Any]:
    """List the most recent fine-tuning jobs, newest first.

    Args:
        limit: Maximum number of jobs.

    Returns:
        Dict containing list of job dicts.
    """
    try:
        return {"jobs": [job.to_dict() for job in get_pipeline().list_jobs(limit=limit)]}
    except HTTPException:
        raise
    except Exception as exc:
        raise HTTPException(status_code=500, detail="Failed to list jobs") from exc


@router.get("/stats")
def get_stats() -> dict[str, Any]:
    """Report the unconsumed example count against the batch threshold."""
    try:
        return get_pipeline().stats()
    except HTTPException:
        raise
    except Exception as exc:
        raise HTTPException(status_code=500, detail="Failed to get stats") from exc
