"""Storage access endpoints: signed reads, proxy reads, deletes, bucket admin."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import (
    AuthContext,
    get_auth_context,
    get_proxy_auth_context,
    get_storage_gateway,
)
from routers.rate_limit import rate_limit
from services.access import find_servable_asset, require_owner
from services.assets import delete_asset
from services.errors import InvalidRequestError
from services.storage import StorageGateway, guess_content_type

router = APIRouter()

PROXY_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Authorization, Content-Type",
}


class SignedUrlRequest(BaseModel):
    project_id: str = Field(min_length=1)
    asset_key: str = Field(min_length=1)
    filename: Optional[str] = Field(default=None, max_length=512)


class DeleteAssetRequest(BaseModel):
    project_id: str = Field(min_length=1)
    asset_id: str = Field(min_length=1)


class BucketCorsRequest(BaseModel):
    allowed_origins: List[str] = Field(min_length=1)


class BucketLifecycleRequest(BaseModel):
    days: int = Field(ge=1, le=3650)


@router.post("/signed-url")
async def create_signed_url(
    request: SignedUrlRequest,
    auth: AuthContext = Depends(get_auth_context),
    _rate_limit: None = Depends(rate_limit("signed_url", limit=600, window_seconds=3600, auth_dependency=get_auth_context)),
    gateway: StorageGateway = Depends(get_storage_gateway),
    db: AsyncSession = Depends(get_db),
):
    """Presign a short-lived GET for a key of a completed asset the caller can see."""
    await find_servable_asset(db, auth.identity, request.project_id, request.asset_key)
    url = await gateway.issue_read_slot(
        request.asset_key,
        filename=request.filename,
        disposition=settings.SIGNED_URL_CONTENT_DISPOSITION or "inline",
        ttl_seconds=settings.SIGNED_URL_TTL_SECONDS,
    )
    return {"signed_url": url, "expires_in": settings.SIGNED_URL_TTL_SECONDS}


@router.options("/proxy-asset")
async def proxy_asset_preflight():
    return Response(status_code=204, headers=PROXY_CORS_HEADERS)


@router.get("/proxy-asset")
async def proxy_asset(
    project_id: str = Query(..., min_length=1),
    asset_key: str = Query(..., min_length=1),
    auth: AuthContext = Depends(get_proxy_auth_context),
    _rate_limit: None = Depends(
        rate_limit("proxy_asset", limit=5000, window_seconds=3600, auth_dependency=get_proxy_auth_context)
    ),
    gateway: StorageGateway = Depends(get_storage_gateway),
    db: AsyncSession = Depends(get_db),
):
    """Stream an object with permissive CORS for consumers that cannot send headers."""
    if asset_key.startswith("/") or ".." in asset_key.split("/"):
        raise InvalidRequestError("Invalid asset_key")
    await find_servable_asset(db, auth.identity, project_id, asset_key)

    stored = await gateway.open_object(asset_key, fallback_content_type=guess_content_type(asset_key))
    headers = dict(PROXY_CORS_HEADERS)
    headers["Cache-Control"] = "public, max-age=3600"
    if stored.content_length is not None:
        headers["Content-Length"] = str(stored.content_length)
    return StreamingResponse(
        stored.iter_chunks(max(int(settings.PROXY_CHUNK_SIZE_BYTES), 1)),
        media_type=stored.content_type,
        headers=headers,
    )


@router.post("/delete-asset")
async def remove_asset(
    request: DeleteAssetRequest,
    auth: AuthContext = Depends(get_auth_context),
    gateway: StorageGateway = Depends(get_storage_gateway),
    db: AsyncSession = Depends(get_db),
):
    """Purge the asset's raw and processed objects, then delete its record."""
    outcome = await delete_asset(
        db,
        gateway,
        auth.identity,
        project_id=request.project_id,
        asset_id=request.asset_id,
    )
    response = {
        "ok": True,
        "asset_id": outcome.asset_id,
        "project_id": outcome.project_id,
        "deleted_files": outcome.deleted_files,
        "message": (
            "Asset deleted with some storage errors"
            if outcome.errors
            else "Asset and all files deleted successfully"
        ),
    }
    if outcome.errors:
        response["errors"] = outcome.errors
    return response


@router.post("/storage/cors")
async def configure_bucket_cors(
    request: BucketCorsRequest,
    auth: AuthContext = Depends(get_auth_context),
    gateway: StorageGateway = Depends(get_storage_gateway),
    db: AsyncSession = Depends(get_db),
):
    await require_owner(db, auth.identity)
    origins = [origin.strip() for origin in request.allowed_origins if origin.strip()]
    if not origins:
        raise InvalidRequestError("allowed_origins must contain at least one origin")
    rule = await gateway.put_cors_rule(origins)
    return {"ok": True, "bucket": gateway.bucket, "rule": rule}


@router.post("/storage/lifecycle")
async def configure_bucket_lifecycle(
    request: BucketLifecycleRequest,
    auth: AuthContext = Depends(get_auth_context),
    gateway: StorageGateway = Depends(get_storage_gateway),
    db: AsyncSession = Depends(get_db),
):
    await require_owner(db, auth.identity)
    rule = await gateway.put_raw_expiration_rule(request.days)
    return {"ok": True, "bucket": gateway.bucket, "rule": rule}
