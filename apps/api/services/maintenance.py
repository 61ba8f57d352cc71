"""Operator-run maintenance passes.

The API process never schedules these; an operator runs
``scripts/run_maintenance.py`` from cron or a scheduled container. Raw
retention is primarily enforced by the bucket lifecycle rule
(``/storage/lifecycle``); the sweep here also records ``raw_file_deleted_at``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from config import settings
from services.assets import sweep_expired_raw_files
from services.errors import PipelineError
from services.job_pipeline import fail_stalled_jobs
from services.storage import StorageGateway

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceReport:
    stalled_jobs_failed: int = 0
    raw_files_deleted: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


async def run_maintenance(
    gateway: Optional[StorageGateway],
    *,
    stall_minutes: Optional[int] = None,
    sweep_raw: Optional[bool] = None,
) -> MaintenanceReport:
    """Run one maintenance pass; a failing step is recorded and the next still runs."""
    if stall_minutes is None:
        stall_minutes = settings.JOB_STALL_TIMEOUT_MINUTES
    if sweep_raw is None:
        sweep_raw = settings.RAW_RETENTION_SWEEP_ENABLED
    report = MaintenanceReport()

    if int(stall_minutes) > 0:
        try:
            report.stalled_jobs_failed = await fail_stalled_jobs(int(stall_minutes))
        except SQLAlchemyError as exc:
            logger.error("Stalled job recovery failed: %s", exc)
            report.errors.append(f"stalled_jobs: {exc}")

    if sweep_raw:
        if gateway is None:
            report.errors.append("raw_sweep: object storage is not configured")
        else:
            try:
                report.raw_files_deleted = await sweep_expired_raw_files(gateway)
            except (SQLAlchemyError, PipelineError) as exc:
                logger.error("Raw retention sweep failed: %s", exc)
                report.errors.append(f"raw_sweep: {exc}")

    logger.info(
        "Maintenance pass: %d stalled jobs failed, %d raw files deleted",
        report.stalled_jobs_failed,
        report.raw_files_deleted,
    )
    return report
