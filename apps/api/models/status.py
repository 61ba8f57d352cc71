"""Processing status values and the transitions allowed between them."""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Tuple


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AssetStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


JOB_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

# failed -> queued is the retry path: a new job was created for the asset.
ASSET_TRANSITIONS: Dict[AssetStatus, FrozenSet[AssetStatus]] = {
    AssetStatus.PENDING: frozenset({AssetStatus.QUEUED, AssetStatus.COMPLETED, AssetStatus.FAILED}),
    AssetStatus.QUEUED: frozenset({AssetStatus.PROCESSING, AssetStatus.COMPLETED, AssetStatus.FAILED}),
    AssetStatus.PROCESSING: frozenset({AssetStatus.COMPLETED, AssetStatus.FAILED}),
    AssetStatus.COMPLETED: frozenset(),
    AssetStatus.FAILED: frozenset({AssetStatus.QUEUED}),
}

ACTIVE_JOB_STATUSES: Tuple[str, ...] = (JobStatus.QUEUED.value, JobStatus.PROCESSING.value)


def job_predecessors(target: JobStatus) -> Tuple[str, ...]:
    """Return the job statuses from which ``target`` may be entered."""
    return tuple(sorted(source.value for source, targets in JOB_TRANSITIONS.items() if target in targets))


def asset_predecessors(target: AssetStatus) -> Tuple[str, ...]:
    """Return the asset statuses from which ``target`` may be entered."""
    return tuple(sorted(source.value for source, targets in ASSET_TRANSITIONS.items() if target in targets))
