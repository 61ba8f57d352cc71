"""Best-effort notification of the external worker dispatcher."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)


async def notify_job_created(
    job_id: str,
    *,
    asset_id: str,
    job_type: str,
    raw_key: Optional[str],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """Tell the dispatcher a job is queued. Never raises.

    Workers also discover queued jobs by polling, so a failed notification
    only delays pickup.
    """
    base_url = (settings.DISPATCH_API_URL or "").strip().rstrip("/")
    if not base_url:
        return False

    payload: Dict[str, Any] = {
        "job_id": job_id,
        "asset_id": asset_id,
        "job_type": job_type,
        "raw_file_key": raw_key,
    }
    headers = {"Content-Type": "application/json"}
    if settings.DISPATCH_API_KEY:
        headers["X-API-Key"] = settings.DISPATCH_API_KEY

    try:
        async with httpx.AsyncClient(timeout=settings.DISPATCH_TIMEOUT_SECONDS, transport=transport) as client:
            response = await client.post(f"{base_url}/api/jobs/create", json=payload, headers=headers)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("Dispatcher notification for job %s failed: %s", job_id, exc)
        return False

    logger.info("Dispatcher notified of job %s", job_id)
    return True
