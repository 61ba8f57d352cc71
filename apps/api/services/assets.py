"""Asset reads, deletion with storage purge, and raw-file retention."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import async_session_maker
from models.processing_job import ProcessingJob
from models.project_asset import ProjectAsset
from models.status import AssetStatus
from services.access import get_accessible_asset
from services.errors import DatabaseUnavailableError, NotFoundError, StorageUnavailableError
from services.job_pipeline import get_latest_job
from services.storage import StorageGateway, output_directory
from services.token_verifier import VerifiedIdentity

logger = logging.getLogger(__name__)


@dataclass
class AssetDeletion:
    asset_id: str
    project_id: str
    deleted_files: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class AssetStatusView:
    asset: ProjectAsset
    job: Optional[ProcessingJob]


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def get_asset_status(
    db: AsyncSession,
    identity: VerifiedIdentity,
    asset_id: str,
) -> AssetStatusView:
    asset = await get_accessible_asset(db, identity, asset_id)
    job = await get_latest_job(db, asset.id)
    return AssetStatusView(asset=asset, job=job)


async def _delete_single(gateway: StorageGateway, key: str, outcome: AssetDeletion) -> None:
    try:
        await gateway.delete_object(key)
        outcome.deleted_files.append(key)
    except NotFoundError:
        logger.info("Object %s already absent", key)
    except StorageUnavailableError as exc:
        outcome.errors.append(f"{key}: {exc.detail}")


async def delete_asset(
    db: AsyncSession,
    gateway: StorageGateway,
    identity: VerifiedIdentity,
    *,
    project_id: str,
    asset_id: str,
) -> AssetDeletion:
    """Delete an asset's stored objects and then its row.

    Storage failures are collected and reported, not raised, so one bad key
    does not leave the remaining objects behind. A database failure after
    the purge raises DatabaseUnavailableError carrying the storage results.
    """
    asset = await get_accessible_asset(db, identity, asset_id, project_id)
    raw_key = asset.asset_key
    final_key = asset.final_key
    asset_type = asset.asset_type
    raw_already_deleted = asset.raw_file_deleted_at is not None

    outcome = AssetDeletion(asset_id=asset_id, project_id=project_id)

    if raw_key and not raw_already_deleted:
        await _delete_single(gateway, raw_key, outcome)

    if final_key and final_key != raw_key:
        directory = output_directory(final_key, asset_type)
        if directory:
            purge = await gateway.delete_objects_under_prefix(directory)
            outcome.deleted_files.extend(purge.deleted)
            outcome.errors.extend(purge.errors)
        else:
            await _delete_single(gateway, final_key, outcome)

    try:
        await db.execute(delete(ProcessingJob).where(ProcessingJob.asset_id == asset_id))
        await db.execute(delete(ProjectAsset).where(ProjectAsset.id == asset_id))
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Asset %s storage purged but row delete failed: %s", asset_id, exc)
        raise DatabaseUnavailableError(
            {
                "error": "Failed to delete asset metadata",
                "deleted_files": outcome.deleted_files,
                "errors": outcome.errors,
            }
        ) from exc

    if outcome.errors:
        logger.warning(
            "Asset %s deleted with %d storage errors (%d objects removed)",
            asset_id,
            len(outcome.errors),
            len(outcome.deleted_files),
        )
    else:
        logger.info("Asset %s deleted (%d objects removed)", asset_id, len(outcome.deleted_files))
    return outcome


async def sweep_expired_raw_files(gateway: StorageGateway, now: Optional[datetime] = None) -> int:
    """Delete raw uploads whose retention period has passed since processing.

    Only completed assets whose output lives under a different key qualify;
    a directly viewable asset serves its raw object and is never swept.
    """
    now = now or datetime.now(timezone.utc)
    swept = 0
    async with async_session_maker() as db:
        result = await db.execute(
            select(ProjectAsset).where(
                ProjectAsset.processing_status == AssetStatus.COMPLETED.value,
                ProjectAsset.raw_file_retention_days.is_not(None),
                ProjectAsset.raw_file_deleted_at.is_(None),
                ProjectAsset.processed_at.is_not(None),
            )
        )
        for asset in result.scalars().all():
            if not asset.final_key or asset.final_key == asset.asset_key:
                continue
            expires_at = _as_utc(asset.processed_at) + timedelta(days=int(asset.raw_file_retention_days))
            if expires_at > now:
                continue
            try:
                await gateway.delete_object(asset.asset_key)
            except NotFoundError:
                pass
            except StorageUnavailableError as exc:
                logger.warning("Raw retention delete failed for %s: %s", asset.asset_key, exc.detail)
                continue
            asset.raw_file_deleted_at = now
            swept += 1
        if swept:
            await db.commit()
    return swept
