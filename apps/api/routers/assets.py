"""Asset status reads."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.assets import get_asset_status

router = APIRouter()


@router.get("/{asset_id}")
async def read_asset(
    asset_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    view = await get_asset_status(db, auth.identity, asset_id)
    asset, job = view.asset, view.job
    return {
        "id": asset.id,
        "project_id": asset.project_id,
        "name": asset.name,
        "asset_key": asset.asset_key,
        "final_key": asset.final_key,
        "source_format": asset.source_format,
        "asset_category": asset.asset_category,
        "asset_type": asset.asset_type,
        "processing_status": asset.processing_status,
        "raw_file_size_bytes": asset.raw_file_size_bytes,
        "final_file_size_bytes": asset.final_file_size_bytes,
        "raw_file_retention_days": asset.raw_file_retention_days,
        "raw_file_deleted_at": asset.raw_file_deleted_at.isoformat() if asset.raw_file_deleted_at else None,
        "created_at": asset.created_at.isoformat() if asset.created_at else None,
        "processed_at": asset.processed_at.isoformat() if asset.processed_at else None,
        "job": (
            {
                "id": job.id,
                "job_type": job.job_type,
                "status": job.status,
                "progress_percent": int(job.progress_percent or 0),
                "error_code": job.error_code,
                "error_message": job.error_message,
            }
            if job is not None
            else None
        ),
    }
