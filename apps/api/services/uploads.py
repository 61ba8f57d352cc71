"""Upload slot issuance and the upload-complete decision."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.project_asset import ProjectAsset
from models.status import AssetStatus
from services.access import get_accessible_asset, require_project_access
from services.classifier import (
    AssetCategory,
    coerce_source_format,
    detect_source_format,
    viewable_asset_type,
)
from services.dispatch import notify_job_created
from services.errors import ConflictError, IllegalTransitionError, InvalidRequestError, UnsupportedMediaTypeError
from services.job_pipeline import enqueue_asset, get_active_job, get_asset, get_latest_job, transition_asset
from services.storage import StorageGateway, build_raw_key
from services.token_verifier import VerifiedIdentity

logger = logging.getLogger(__name__)

Notifier = Callable[..., Awaitable[bool]]


@dataclass
class UploadSlot:
    upload_url: str
    key: str
    asset_id: str
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class UploadCompletion:
    status: str
    asset_id: str
    job_id: Optional[str] = None
    job_type: Optional[str] = None
    asset_type: Optional[str] = None
    final_key: Optional[str] = None
    created: bool = False


def _parse_category(value: str) -> AssetCategory:
    try:
        return AssetCategory(str(value or "").strip().lower())
    except ValueError as exc:
        raise InvalidRequestError(f"Unknown asset category {value}") from exc


def _retention_days(value: Optional[float]) -> Optional[int]:
    if value is None:
        return None
    days = int(value)
    return days if days > 0 else None


def _mime_allowed(mime_type: str) -> bool:
    allowed = [item.strip().lower() for item in settings.R2_ALLOWED_UPLOAD_MIME_TYPES if item.strip()]
    if not allowed:
        return True
    return mime_type.strip().lower() in allowed


async def request_upload_slot(
    db: AsyncSession,
    gateway: StorageGateway,
    identity: VerifiedIdentity,
    *,
    project_id: str,
    file_name: str,
    mime_type: str,
    asset_category: str,
    raw_file_retention_days: Optional[float] = None,
    file_size_bytes: Optional[int] = None,
) -> UploadSlot:
    """Register a pending asset and presign the PUT for its raw object."""
    category = _parse_category(asset_category)
    if not (file_name or "").strip():
        raise InvalidRequestError("file_name is required")
    mime_type = (mime_type or "").strip() or "application/octet-stream"
    if not _mime_allowed(mime_type):
        raise UnsupportedMediaTypeError(f"MIME type {mime_type} is not allowed for upload")

    await require_project_access(db, identity, project_id)

    key = build_raw_key(project_id, identity.subject, file_name, int(time.time() * 1000))
    upload_url = await gateway.issue_upload_slot(key, mime_type, settings.UPLOAD_URL_TTL_SECONDS)

    asset = ProjectAsset(
        id=str(uuid.uuid4()),
        project_id=project_id,
        asset_key=key,
        name=file_name.strip(),
        mime_type=mime_type,
        source_format=detect_source_format(file_name, mime_type).value,
        asset_category=category.value,
        processing_status=AssetStatus.PENDING.value,
        raw_file_size_bytes=int(file_size_bytes) if file_size_bytes is not None else None,
        raw_file_retention_days=_retention_days(raw_file_retention_days),
        uploaded_by=identity.subject,
        created_at=datetime.now(timezone.utc),
    )
    db.add(asset)
    await db.commit()

    logger.info("Issued upload slot for asset %s at %s", asset.id, key)
    return UploadSlot(upload_url=upload_url, key=key, asset_id=asset.id, headers={"Content-Type": mime_type})


async def on_upload_complete(
    db: AsyncSession,
    identity: VerifiedIdentity,
    *,
    asset_id: str,
    asset_category: str,
    project_id: Optional[str] = None,
    notify: Optional[Notifier] = None,
) -> UploadCompletion:
    """Publish a directly viewable upload, or queue it for conversion.

    Safe to repeat: a completed asset is reported as-is and an asset with an
    active job reports that job. A queued or processing asset whose jobs have
    all finished is a conflict for an operator to reconcile; it never gets a
    second job. A failed asset gets a new job.
    """
    category = _parse_category(asset_category)
    asset = await get_accessible_asset(db, identity, asset_id, project_id)
    if asset.asset_category and asset.asset_category != category.value:
        raise InvalidRequestError(
            f"Asset was registered as {asset.asset_category}, not {category.value}"
        )

    status = AssetStatus(asset.processing_status)
    if status is AssetStatus.COMPLETED:
        return UploadCompletion(
            status=AssetStatus.COMPLETED.value,
            asset_id=asset.id,
            job_id=asset.processing_job_id,
            asset_type=asset.asset_type,
            final_key=asset.final_key,
        )
    if status in (AssetStatus.QUEUED, AssetStatus.PROCESSING):
        active = await get_active_job(db, asset.id)
        if active is not None:
            return UploadCompletion(
                status=AssetStatus.QUEUED.value,
                asset_id=asset.id,
                job_id=active.id,
                job_type=active.job_type,
            )
        latest = await get_latest_job(db, asset.id)
        latest_ref = f"job {latest.id} ({latest.status})" if latest is not None else "no job"
        logger.warning("Asset %s is %s with no active job; latest is %s", asset.id, status.value, latest_ref)
        raise ConflictError(
            f"Asset {asset.id} is {status.value} but has no active job; latest is {latest_ref}. Reconcile before re-uploading."
        )

    output_type = viewable_asset_type(coerce_source_format(asset.source_format))
    if output_type is not None:
        return await _publish_directly(db, asset, output_type.value)

    raw_key = asset.asset_key
    creation = await enqueue_asset(db, asset, category)
    job = creation.job
    if creation.created:
        await (notify or notify_job_created)(job.id, asset_id=asset_id, job_type=job.job_type, raw_key=raw_key)
    return UploadCompletion(
        status=AssetStatus.QUEUED.value,
        asset_id=asset_id,
        job_id=job.id,
        job_type=job.job_type,
        created=creation.created,
    )


async def _publish_directly(db: AsyncSession, asset: ProjectAsset, asset_type: str) -> UploadCompletion:
    asset_id = asset.id
    final_key = asset.asset_key
    moved = await transition_asset(
        db,
        asset_id,
        AssetStatus.COMPLETED,
        values={
            "final_key": final_key,
            "asset_type": asset_type,
            "processed_at": datetime.now(timezone.utc),
            "final_file_size_bytes": asset.raw_file_size_bytes,
        },
        strict=False,
    )
    if moved:
        await db.commit()
        logger.info("Asset %s is directly viewable; published as %s", asset_id, asset_type)
    else:
        await db.rollback()
        current = await get_asset(db, asset_id)
        if current is None or current.processing_status != AssetStatus.COMPLETED.value:
            raise IllegalTransitionError(
                "asset",
                asset_id,
                current.processing_status if current is not None else None,
                AssetStatus.COMPLETED.value,
            )
        final_key = current.final_key
        asset_type = current.asset_type

    return UploadCompletion(
        status=AssetStatus.COMPLETED.value,
        asset_id=asset_id,
        asset_type=asset_type,
        final_key=final_key,
    )
