import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from main import app
from services.maintenance import run_maintenance
from services.storage import StorageGateway


OWNER_ID = "owner-1"
PROJECT_ID = "project-1"


async def _seed_stalled_and_expired(seed, fake_s3):
    await seed.user(OWNER_ID)
    await seed.project(PROJECT_ID, OWNER_ID)
    await seed.asset("asset-stale", PROJECT_ID, status="processing")
    await seed.job(
        "job-stale",
        "asset-stale",
        status="processing",
        worker_id="worker-a",
        started_at=datetime.now(timezone.utc) - timedelta(hours=3),
    )
    raw_key = f"raw/{PROJECT_ID}/{OWNER_ID}/expired.obj"
    fake_s3.put(raw_key)
    await seed.asset(
        "asset-expired",
        PROJECT_ID,
        status="completed",
        asset_key=raw_key,
        final_key=f"processed/{PROJECT_ID}/asset-expired/model.glb",
        asset_type="glb",
        processed_at=datetime.now(timezone.utc) - timedelta(days=10),
        retention_days=7,
    )
    return raw_key


@pytest.mark.asyncio
async def test_maintenance_pass_fails_stalled_jobs_and_sweeps_raw(seed, session_maker, fake_s3):
    raw_key = await _seed_stalled_and_expired(seed, fake_s3)

    with (
        patch("services.job_pipeline.async_session_maker", session_maker),
        patch("services.assets.async_session_maker", session_maker),
    ):
        report = await run_maintenance(StorageGateway(fake_s3, "bucket"), stall_minutes=60, sweep_raw=True)

    assert report.ok
    assert report.stalled_jobs_failed == 1
    assert report.raw_files_deleted == 1
    assert (await seed.get_job("job-stale")).status == "failed"
    assert raw_key not in fake_s3.objects


@pytest.mark.asyncio
async def test_maintenance_steps_are_opt_in(seed, session_maker, fake_s3):
    raw_key = await _seed_stalled_and_expired(seed, fake_s3)

    with (
        patch("services.job_pipeline.async_session_maker", session_maker),
        patch("services.assets.async_session_maker", session_maker),
    ):
        report = await run_maintenance(StorageGateway(fake_s3, "bucket"), stall_minutes=0, sweep_raw=False)

    assert report.ok
    assert (report.stalled_jobs_failed, report.raw_files_deleted) == (0, 0)
    assert (await seed.get_job("job-stale")).status == "processing"
    assert raw_key in fake_s3.objects


@pytest.mark.asyncio
async def test_failing_step_is_reported_and_next_step_still_runs(fake_s3):
    sweep = AsyncMock(return_value=2)
    with (
        patch("services.maintenance.fail_stalled_jobs", AsyncMock(side_effect=SQLAlchemyError("db down"))),
        patch("services.maintenance.sweep_expired_raw_files", sweep),
    ):
        report = await run_maintenance(StorageGateway(fake_s3, "bucket"), stall_minutes=60, sweep_raw=True)

    assert not report.ok
    assert report.errors[0].startswith("stalled_jobs:")
    assert report.raw_files_deleted == 2
    sweep.assert_awaited_once()


@pytest.mark.asyncio
async def test_sweep_without_storage_is_an_error():
    report = await run_maintenance(None, stall_minutes=0, sweep_raw=True)

    assert report.errors == ["raw_sweep: object storage is not configured"]


@pytest.mark.asyncio
async def test_api_lifespan_schedules_no_background_work():
    strong = "s" * 32
    stalled = AsyncMock(return_value=0)
    sweep = AsyncMock(return_value=0)
    with (
        patch.object(settings, "API_SECRET_KEY", strong),
        patch.object(settings, "WORKER_SHARED_SECRET", strong),
        patch.object(settings, "SUPABASE_URL", "https://idp.test"),
        patch.object(settings, "AUTO_CREATE_DB_SCHEMA", False),
        patch.object(settings, "R2_ENDPOINT", ""),
        patch.object(settings, "JOB_STALL_TIMEOUT_MINUTES", 5),
        patch("services.maintenance.fail_stalled_jobs", stalled),
        patch("services.maintenance.sweep_expired_raw_files", sweep),
    ):
        before = asyncio.all_tasks()
        async with app.router.lifespan_context(app):
            during = asyncio.all_tasks()

    assert during == before
    stalled.assert_not_awaited()
    sweep.assert_not_awaited()
