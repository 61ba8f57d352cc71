"""Processing job lifecycle: creation, claiming, progress, completion, failure.

The database is the only coordination point. Every status change is a
conditional UPDATE whose WHERE clause names the legal predecessor statuses
(and, for worker calls, the recorded claimant), so concurrent callers cannot
both move the same row and illegal transitions are rejected at write time.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.processing_job import ProcessingJob
from models.project_asset import ProjectAsset
from models.status import (
    ACTIVE_JOB_STATUSES,
    AssetStatus,
    JobStatus,
    asset_predecessors,
    job_predecessors,
)
from services.classifier import AssetCategory, AssetType, JobType, classify, coerce_source_format
from services.errors import (
    IllegalTransitionError,
    InvalidRequestError,
    NotFoundError,
    WorkerMismatchError,
)

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 1000


@dataclass
class JobCreation:
    job: ProcessingJob
    created: bool


@dataclass
class ClaimedJob:
    job: ProcessingJob
    asset: Optional[ProjectAsset]


@dataclass
class CompletionResult:
    job: ProcessingJob
    asset_updated: bool
    asset_error: Optional[str] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def clamp_progress(value: Any) -> int:
    """Clamp a reported progress value into [0, 100]."""
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidRequestError("progress_percent must be a number") from exc
    if math.isnan(number):
        raise InvalidRequestError("progress_percent must be a number")
    if math.isinf(number):
        return 100 if number > 0 else 0
    return max(0, min(100, int(round(number))))


def _truncate(message: Optional[str]) -> Optional[str]:
    if message is None:
        return None
    return str(message)[:MAX_ERROR_MESSAGE_LENGTH]


async def get_job(db: AsyncSession, job_id: str) -> Optional[ProcessingJob]:
    result = await db.execute(
        select(ProcessingJob)
        .where(ProcessingJob.id == job_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_asset(db: AsyncSession, asset_id: str) -> Optional[ProjectAsset]:
    result = await db.execute(
        select(ProjectAsset)
        .where(ProjectAsset.id == asset_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_active_job(db: AsyncSession, asset_id: str) -> Optional[ProcessingJob]:
    result = await db.execute(
        select(ProcessingJob)
        .where(
            ProcessingJob.asset_id == asset_id,
            ProcessingJob.status.in_(ACTIVE_JOB_STATUSES),
        )
        .order_by(ProcessingJob.created_at.desc())
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def get_latest_job(db: AsyncSession, asset_id: str) -> Optional[ProcessingJob]:
    result = await db.execute(
        select(ProcessingJob)
        .where(ProcessingJob.asset_id == asset_id)
        .order_by(ProcessingJob.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _guarded_update(
    db: AsyncSession,
    model: Any,
    entity_id: str,
    predecessors: Iterable[str],
    values: Dict[str, Any],
    *extra_conditions: Any,
) -> bool:
    status_column = model.status if model is ProcessingJob else model.processing_status
    stmt = (
        update(model)
        .where(model.id == entity_id, status_column.in_(tuple(predecessors)), *extra_conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def _explain_job_write_failure(
    db: AsyncSession,
    job_id: str,
    target: JobStatus,
    worker_id: Optional[str],
) -> None:
    await db.rollback()
    job = await get_job(db, job_id)
    if job is None:
        raise NotFoundError("Job not found")
    if worker_id is not None and job.worker_id is not None and job.worker_id != worker_id:
        raise WorkerMismatchError()
    raise IllegalTransitionError("job", job_id, job.status, target.value)


async def transition_job(
    db: AsyncSession,
    job_id: str,
    target: JobStatus,
    *,
    worker_id: Optional[str] = None,
    values: Optional[Dict[str, Any]] = None,
) -> None:
    """Move a job to ``target`` if its current status allows it.

    When ``worker_id`` is given, the write also requires it to match the
    recorded claimant. Does not commit.
    """
    conditions = []
    if worker_id is not None:
        conditions.append(ProcessingJob.worker_id == worker_id)
    ok = await _guarded_update(
        db,
        ProcessingJob,
        job_id,
        job_predecessors(target),
        {"status": target.value, **(values or {})},
        *conditions,
    )
    if not ok:
        await _explain_job_write_failure(db, job_id, target, worker_id)


async def transition_asset(
    db: AsyncSession,
    asset_id: str,
    target: AssetStatus,
    *,
    values: Optional[Dict[str, Any]] = None,
    strict: bool = True,
) -> bool:
    """Move an asset to ``target`` if its current status allows it.

    Completion must carry a ``final_key``; no other transition may set one.
    With ``strict=False`` an illegal transition returns False instead of
    raising, leaving the session's pending work intact. Does not commit.
    """
    values = dict(values or {})
    if target is AssetStatus.COMPLETED:
        if not values.get("final_key"):
            raise InvalidRequestError("final_key is required to complete an asset")
    elif values.get("final_key"):
        raise InvalidRequestError("final_key may only be set on completion")

    ok = await _guarded_update(
        db,
        ProjectAsset,
        asset_id,
        asset_predecessors(target),
        {"processing_status": target.value, **values},
    )
    if ok or not strict:
        return ok

    await db.rollback()
    asset = await get_asset(db, asset_id)
    if asset is None:
        raise NotFoundError("Asset not found")
    raise IllegalTransitionError("asset", asset_id, asset.processing_status, target.value)


async def create_job(
    db: AsyncSession,
    *,
    asset_id: str,
    job_type: JobType,
    raw_key: Optional[str],
) -> JobCreation:
    """Create a queued job, or return the asset's existing queued/processing job.

    The partial unique index on active jobs settles concurrent creations:
    the losing insert fails and resolves to the winner's row. Commits.
    """
    existing = await get_active_job(db, asset_id)
    if existing is not None:
        return JobCreation(job=existing, created=False)

    job = ProcessingJob(
        id=str(uuid.uuid4()),
        asset_id=asset_id,
        job_type=JobType(job_type).value,
        status=JobStatus.QUEUED.value,
        raw_file_key=raw_key,
        progress_percent=0,
        created_at=_now(),
    )
    db.add(job)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await get_active_job(db, asset_id)
        if existing is None:
            raise
        logger.info("Concurrent job creation for asset %s resolved to job %s", asset_id, existing.id)
        return JobCreation(job=existing, created=False)

    logger.info("Created %s job %s for asset %s", job.job_type, job.id, asset_id)
    return JobCreation(job=job, created=True)


async def enqueue_asset(
    db: AsyncSession,
    asset: ProjectAsset,
    category: AssetCategory,
    job_type: Optional[JobType] = None,
) -> JobCreation:
    """Classify the asset, ensure it has an active job, and mark it queued.

    Idempotent: an existing active job is reused and an already queued or
    processing asset is left alone. A failed asset is re-queued (retry).
    Completed assets are never re-queued.
    """
    asset_id = asset.id
    if asset.processing_status == AssetStatus.COMPLETED.value:
        raise IllegalTransitionError("asset", asset_id, asset.processing_status, AssetStatus.QUEUED.value)
    if job_type is None:
        job_type = classify(category, coerce_source_format(asset.source_format))
    creation = await create_job(db, asset_id=asset_id, job_type=job_type, raw_key=asset.asset_key)

    queued = await transition_asset(
        db,
        asset_id,
        AssetStatus.QUEUED,
        values={"processing_job_id": creation.job.id, "asset_category": AssetCategory(category).value},
        strict=False,
    )
    await db.commit()
    if not queued:
        logger.debug("Asset %s already queued or processing; reusing job %s", asset_id, creation.job.id)
    return creation


async def claim_next(
    db: AsyncSession,
    *,
    worker_id: str,
    job_types: Optional[Iterable[JobType]] = None,
    max_attempts: Optional[int] = None,
) -> Optional[ClaimedJob]:
    """Claim the oldest queued job, optionally restricted to ``job_types``.

    The claim itself is one conditional UPDATE that only matches while the
    row is still ``queued``; a caller that loses the race sees a zero row
    count and moves on to the next candidate. The asset is returned but not
    modified.
    """
    worker_id = str(worker_id or "").strip()
    if not worker_id:
        raise InvalidRequestError("worker id is required")

    type_values = None
    if job_types is not None:
        type_values = sorted(JobType(job_type).value for job_type in job_types)
        if not type_values:
            return None

    attempts = max(int(max_attempts or settings.CLAIM_MAX_ATTEMPTS or 1), 1)
    for _ in range(attempts):
        candidate_query = select(ProcessingJob.id).where(ProcessingJob.status == JobStatus.QUEUED.value)
        if type_values is not None:
            candidate_query = candidate_query.where(ProcessingJob.job_type.in_(type_values))
        candidate_query = candidate_query.order_by(ProcessingJob.created_at.asc(), ProcessingJob.id.asc()).limit(1)
        candidate_id = (await db.execute(candidate_query)).scalar_one_or_none()
        if candidate_id is None:
            await db.rollback()
            return None

        won = await _guarded_update(
            db,
            ProcessingJob,
            candidate_id,
            job_predecessors(JobStatus.PROCESSING),
            {
                "status": JobStatus.PROCESSING.value,
                "worker_id": worker_id,
                "started_at": _now(),
            },
        )
        await db.commit()
        if won:
            job = await get_job(db, candidate_id)
            asset = await get_asset(db, job.asset_id)
            logger.info("Worker %s claimed %s job %s", worker_id, job.job_type, job.id)
            return ClaimedJob(job=job, asset=asset)
        logger.debug("Worker %s lost the claim race for job %s", worker_id, candidate_id)

    return None


async def mark_asset_processing(db: AsyncSession, asset_id: str) -> bool:
    """Record that the asset's job was picked up. Commits; False if not applicable."""
    moved = await transition_asset(db, asset_id, AssetStatus.PROCESSING, strict=False)
    await db.commit()
    if not moved:
        logger.debug("Asset %s not moved to processing (status changed concurrently)", asset_id)
    return moved


async def report_progress(
    db: AsyncSession,
    *,
    job_id: str,
    worker_id: str,
    progress_percent: Optional[float] = None,
    error_message: Optional[str] = None,
    status: Optional[str] = None,
) -> ProcessingJob:
    """Record progress for a processing job owned by ``worker_id``.

    ``status`` may only be ``processing`` (no change) or ``failed``, which is
    delegated to report_failure. Progress is clamped to [0, 100].
    """
    target = None
    if status:
        try:
            target = JobStatus(str(status).strip().lower())
        except ValueError as exc:
            raise InvalidRequestError(f"Unknown job status {status}") from exc
    if target is JobStatus.FAILED:
        return await report_failure(
            db,
            job_id=job_id,
            worker_id=worker_id,
            error_message=error_message or "Worker reported failure",
        )
    if target is JobStatus.COMPLETED:
        raise InvalidRequestError("Use the complete operation to finish a job")
    if target is JobStatus.QUEUED:
        raise InvalidRequestError("A claimed job cannot be re-queued")

    values: Dict[str, Any] = {}
    if progress_percent is not None:
        values["progress_percent"] = clamp_progress(progress_percent)
    if error_message:
        values["error_message"] = _truncate(error_message)

    if not values:
        job = await get_job(db, job_id)
        if job is None:
            raise NotFoundError("Job not found")
        if job.worker_id is not None and job.worker_id != worker_id:
            raise WorkerMismatchError()
        if job.status != JobStatus.PROCESSING.value:
            raise IllegalTransitionError("job", job_id, job.status, JobStatus.PROCESSING.value)
        return job

    ok = await _guarded_update(
        db,
        ProcessingJob,
        job_id,
        (JobStatus.PROCESSING.value,),
        values,
        ProcessingJob.worker_id == worker_id,
    )
    if not ok:
        await _explain_job_write_failure(db, job_id, JobStatus.PROCESSING, worker_id)
    await db.commit()
    return await get_job(db, job_id)


async def report_failure(
    db: AsyncSession,
    *,
    job_id: str,
    worker_id: Optional[str],
    error_message: str,
    error_code: Optional[str] = None,
) -> ProcessingJob:
    """Terminate a processing job as failed and mark its asset failed. Commits.

    ``worker_id=None`` is reserved for maintenance paths that act without a
    claimant (stalled job recovery).
    """
    now = _now()
    await transition_job(
        db,
        job_id,
        JobStatus.FAILED,
        worker_id=worker_id,
        values={
            "error_message": _truncate(error_message),
            "error_code": error_code,
            "completed_at": now,
        },
    )
    job = await get_job(db, job_id)
    asset_failed = await transition_asset(db, job.asset_id, AssetStatus.FAILED, strict=False)
    await db.commit()
    if not asset_failed:
        logger.warning("Job %s failed but asset %s was not in a failable state", job_id, job.asset_id)
    logger.info("Job %s failed: %s", job_id, _truncate(error_message))
    return await get_job(db, job_id)


async def complete_job(
    db: AsyncSession,
    *,
    job_id: str,
    worker_id: str,
    final_key: str,
    asset_type: AssetType,
    file_size_bytes: Optional[int] = None,
) -> CompletionResult:
    """Finish a processing job and publish its output on the asset.

    The job transition is committed first. A failure to update the asset
    afterwards is logged as a partial failure and reported in the result,
    but the call still succeeds so the worker does not redo the conversion.
    """
    final_key = str(final_key or "").strip()
    if not final_key:
        raise InvalidRequestError("final_key is required")
    asset_type = AssetType(asset_type)

    now = _now()
    await transition_job(
        db,
        job_id,
        JobStatus.COMPLETED,
        worker_id=worker_id,
        values={"completed_at": now, "progress_percent": 100},
    )
    await db.commit()
    job = await get_job(db, job_id)
    asset_id = job.asset_id

    asset_error = None
    try:
        updated = await transition_asset(
            db,
            asset_id,
            AssetStatus.COMPLETED,
            values={
                "final_key": final_key,
                "asset_type": asset_type.value,
                "processed_at": now,
                "final_file_size_bytes": int(file_size_bytes) if file_size_bytes is not None else None,
                "processing_job_id": job_id,
            },
            strict=False,
        )
        await db.commit()
        if not updated:
            asset_error = "asset missing or not in a completable state"
    except SQLAlchemyError as exc:
        await db.rollback()
        asset_error = str(exc)

    if asset_error is not None:
        logger.error(
            "Partial failure: job %s completed (final_key=%s) but asset %s was not updated: %s",
            job_id,
            final_key,
            asset_id,
            asset_error,
        )
    else:
        logger.info("Job %s completed; asset %s published at %s", job_id, asset_id, final_key)
    job = await get_job(db, job_id)
    return CompletionResult(job=job, asset_updated=asset_error is None, asset_error=asset_error)


async def fail_stalled_jobs(max_age_minutes: int) -> int:
    """Fail processing jobs whose worker has gone quiet for ``max_age_minutes``."""
    cutoff = _now() - timedelta(minutes=max(int(max_age_minutes), 1))
    async with async_session_maker() as db:
        result = await db.execute(
            select(ProcessingJob.id).where(
                ProcessingJob.status == JobStatus.PROCESSING.value,
                ProcessingJob.started_at < cutoff,
            )
        )
        job_ids = list(result.scalars().all())
        failed = 0
        for job_id in job_ids:
            try:
                await report_failure(
                    db,
                    job_id=job_id,
                    worker_id=None,
                    error_code="stalled",
                    error_message="Worker stopped reporting; job marked failed. Re-create the job to retry.",
                )
                failed += 1
            except IllegalTransitionError:
                # Finished concurrently.
                continue
        return failed
