"""Asset processing job model."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Index, Integer, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


_ACTIVE_JOB_PREDICATE = text("status IN ('queued', 'processing')")


class ProcessingJob(Base):
    """Queued conversion work for exactly one asset."""

    __tablename__ = "processing_jobs"
    __table_args__ = (
        Index("ix_processing_jobs_status_created_at", "status", "created_at"),
        # At most one queued/processing job per asset.
        Index(
            "uq_processing_jobs_active_asset",
            "asset_id",
            unique=True,
            postgresql_where=_ACTIVE_JOB_PREDICATE,
            sqlite_where=_ACTIVE_JOB_PREDICATE,
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    asset_id = Column(String, ForeignKey("project_assets.id", ondelete="CASCADE"), nullable=False, index=True)
    job_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default="queued")
    worker_id = Column(String, nullable=True)
    raw_file_key = Column(String, nullable=True)
    progress_percent = Column(Integer, nullable=False, default=0)
    error_code = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    asset = relationship("ProjectAsset", back_populates="jobs")
