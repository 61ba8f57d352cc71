"""Run one maintenance pass: fail stalled jobs and sweep expired raw uploads.

Schedule externally, e.g. hourly from cron:
    cd apps/api && python scripts/run_maintenance.py
"""
import asyncio
import logging
import os
import sys

# Add parent dir to path to find config and services
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import settings  # noqa: E402
from services.maintenance import run_maintenance  # noqa: E402
from services.storage import StorageGateway  # noqa: E402


async def main() -> int:
    print("🛠️ Running maintenance pass...")
    gateway = StorageGateway.from_settings(settings) if settings.R2_ENDPOINT else None
    report = await run_maintenance(gateway)
    print(f"♻️ Stalled jobs marked failed: {report.stalled_jobs_failed}")
    print(f"🧹 Raw files deleted: {report.raw_files_deleted}")
    for error in report.errors:
        print(f"❌ {error}")
    return 0 if report.ok else 1


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    sys.exit(asyncio.run(main()))
