"""Upload slot and upload-complete endpoints."""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, get_storage_gateway
from routers.rate_limit import rate_limit
from services.storage import StorageGateway
from services.uploads import on_upload_complete, request_upload_slot

router = APIRouter()


class UploadUrlRequest(BaseModel):
    project_id: str = Field(min_length=1)
    file_name: str = Field(min_length=1, max_length=512)
    mime_type: str = Field(min_length=1, max_length=255)
    asset_category: Literal["single_model", "large_area"]
    raw_file_retention_days: Optional[float] = None
    file_size_bytes: Optional[int] = Field(default=None, ge=0)


class UploadCompleteRequest(BaseModel):
    project_id: Optional[str] = None
    asset_id: str = Field(min_length=1)
    asset_category: Literal["single_model", "large_area"]


@router.post("/upload-url")
async def create_upload_url(
    request: UploadUrlRequest,
    auth: AuthContext = Depends(get_auth_context),
    _rate_limit: None = Depends(rate_limit("upload_url", limit=120, window_seconds=3600, auth_dependency=get_auth_context)),
    gateway: StorageGateway = Depends(get_storage_gateway),
    db: AsyncSession = Depends(get_db),
):
    """Register a pending asset and return a presigned PUT for its raw file."""
    slot = await request_upload_slot(
        db,
        gateway,
        auth.identity,
        project_id=request.project_id,
        file_name=request.file_name,
        mime_type=request.mime_type,
        asset_category=request.asset_category,
        raw_file_retention_days=request.raw_file_retention_days,
        file_size_bytes=request.file_size_bytes,
    )
    return {
        "upload_url": slot.upload_url,
        "key": slot.key,
        "asset_id": slot.asset_id,
        "headers": slot.headers,
    }


@router.post("/upload-complete")
async def complete_upload(
    request: UploadCompleteRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Publish a directly viewable upload or queue it for processing."""
    outcome = await on_upload_complete(
        db,
        auth.identity,
        asset_id=request.asset_id,
        asset_category=request.asset_category,
        project_id=request.project_id,
    )
    response = {
        "ok": True,
        "asset_id": outcome.asset_id,
        "status": outcome.status,
    }
    if outcome.job_id:
        response["job_id"] = outcome.job_id
    if outcome.job_type:
        response["job_type"] = outcome.job_type
    if outcome.asset_type:
        response["asset_type"] = outcome.asset_type
    if outcome.final_key:
        response["final_key"] = outcome.final_key
    return response
