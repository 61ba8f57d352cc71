"""Processing job router: service-side creation and the worker protocol."""

from __future__ import annotations

import logging
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.processing_job import ProcessingJob
from models.project_asset import ProjectAsset
from routers.auth_scope import WorkerContext, get_worker_context, require_service_key
from services.classifier import AssetCategory, AssetType, JobType, job_types_for_worker
from services.dispatch import notify_job_created
from services.errors import InvalidRequestError, NotFoundError
from services.job_pipeline import (
    claim_next,
    complete_job,
    enqueue_asset,
    mark_asset_processing,
    report_failure,
    report_progress,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateJobRequest(BaseModel):
    project_id: str = Field(min_length=1)
    asset_id: str = Field(min_length=1)
    asset_category: Literal["single_model", "large_area"]
    job_type: Optional[Literal["normalize", "tileset", "pointcloud"]] = None


class UpdateJobRequest(BaseModel):
    status: Optional[Literal["processing", "failed"]] = None
    progress_percent: Optional[float] = None
    error_message: Optional[str] = Field(default=None, max_length=4000)


class FailJobRequest(BaseModel):
    error_message: str = Field(min_length=1, max_length=4000)
    error_code: Optional[str] = Field(default=None, max_length=100)


class CompleteJobRequest(BaseModel):
    final_key: str = Field(min_length=1)
    asset_type: Literal["glb", "b3dm", "tileset", "pnts", "imagery", "geojson", "kml", "other"]
    file_size_bytes: Optional[int] = Field(default=None, ge=0)


def _job_payload(job: ProcessingJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "asset_id": job.asset_id,
        "job_type": job.job_type,
        "status": job.status,
        "worker_id": job.worker_id,
        "raw_file_key": job.raw_file_key,
        "progress_percent": int(job.progress_percent or 0),
        "error_code": job.error_code,
        "error_message": job.error_message,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


def _asset_summary(asset: Optional[ProjectAsset]) -> Optional[Dict[str, Any]]:
    if asset is None:
        return None
    return {
        "id": asset.id,
        "project_id": asset.project_id,
        "name": asset.name,
        "source_format": asset.source_format,
        "asset_category": asset.asset_category,
    }


@router.post("/create")
async def create_job(
    request: CreateJobRequest,
    _service: None = Depends(require_service_key),
    db: AsyncSession = Depends(get_db),
):
    """Ensure a queued job exists for the asset (idempotent)."""
    result = await db.execute(
        select(ProjectAsset).where(
            ProjectAsset.id == request.asset_id,
            ProjectAsset.project_id == request.project_id,
        )
    )
    asset = result.scalar_one_or_none()
    if asset is None:
        raise NotFoundError("Asset not found")

    raw_key = asset.asset_key
    job_type = JobType(request.job_type) if request.job_type else None
    creation = await enqueue_asset(db, asset, AssetCategory(request.asset_category), job_type)
    job = creation.job
    if creation.created:
        await notify_job_created(job.id, asset_id=request.asset_id, job_type=job.job_type, raw_key=raw_key)

    response = {
        "ok": True,
        "job_id": job.id,
        "asset_id": request.asset_id,
        "project_id": request.project_id,
        "job_type": job.job_type,
        "status": job.status,
        "created": creation.created,
    }
    if not creation.created:
        response["message"] = "Job already exists"
    return response


@router.get("/poll")
async def poll_job(
    worker_type: Optional[str] = Query(None),
    worker: WorkerContext = Depends(get_worker_context),
    db: AsyncSession = Depends(get_db),
):
    """Claim the oldest queued job this worker type can run, if any."""
    try:
        job_types = job_types_for_worker(worker_type)
    except KeyError as exc:
        raise InvalidRequestError(f"Unknown worker_type {worker_type}") from exc

    claimed = await claim_next(db, worker_id=worker.worker_id, job_types=job_types)
    if claimed is None:
        return {"job": None}

    if claimed.asset is not None:
        await mark_asset_processing(db, claimed.asset.id)
    payload = _job_payload(claimed.job)
    payload["asset"] = _asset_summary(claimed.asset)
    return {"job": payload}


@router.post("/{job_id}/update")
async def update_job(
    job_id: str,
    request: UpdateJobRequest,
    worker: WorkerContext = Depends(get_worker_context),
    db: AsyncSession = Depends(get_db),
):
    """Report progress, or failure when ``status`` is ``failed``."""
    if request.status is None and request.progress_percent is None and request.error_message is None:
        raise InvalidRequestError("status, progress_percent or error_message required")
    job = await report_progress(
        db,
        job_id=job_id,
        worker_id=worker.worker_id,
        progress_percent=request.progress_percent,
        error_message=request.error_message,
        status=request.status,
    )
    return {
        "ok": True,
        "job_id": job.id,
        "status": job.status,
        "progress_percent": int(job.progress_percent or 0),
    }


@router.post("/{job_id}/fail")
async def fail_job(
    job_id: str,
    request: FailJobRequest,
    worker: WorkerContext = Depends(get_worker_context),
    db: AsyncSession = Depends(get_db),
):
    job = await report_failure(
        db,
        job_id=job_id,
        worker_id=worker.worker_id,
        error_message=request.error_message,
        error_code=request.error_code,
    )
    return {"ok": True, "job_id": job.id, "status": job.status, "asset_id": job.asset_id}


@router.post("/{job_id}/complete")
async def finish_job(
    job_id: str,
    request: CompleteJobRequest,
    worker: WorkerContext = Depends(get_worker_context),
    db: AsyncSession = Depends(get_db),
):
    """Complete the job and publish the output; asset bookkeeping is best effort."""
    result = await complete_job(
        db,
        job_id=job_id,
        worker_id=worker.worker_id,
        final_key=request.final_key,
        asset_type=AssetType(request.asset_type),
        file_size_bytes=request.file_size_bytes,
    )
    return {
        "ok": True,
        "job_id": result.job.id,
        "asset_id": result.job.asset_id,
        "final_key": request.final_key.strip(),
        "asset_type": request.asset_type,
        "asset_updated": result.asset_updated,
    }
