"""Uploaded project asset model."""

from sqlalchemy import BigInteger, CheckConstraint, Column, String, DateTime, ForeignKey, Integer
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class ProjectAsset(Base):
    """One raw upload and, once processed, its viewable derivative."""

    __tablename__ = "project_assets"
    __table_args__ = (
        CheckConstraint(
            "(processing_status = 'completed' AND final_key IS NOT NULL) "
            "OR (processing_status <> 'completed' AND final_key IS NULL)",
            name="ck_project_assets_final_key_completed",
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    asset_key = Column(String, nullable=False, index=True)  # raw/{project_id}/{user_id}/{ts}-{name}
    final_key = Column(String, nullable=True, index=True)
    name = Column(String, nullable=False)
    mime_type = Column(String, nullable=False)
    source_format = Column(String, nullable=False, default="other")
    asset_type = Column(String, nullable=True)
    asset_category = Column(String, nullable=False)
    processing_status = Column(String, nullable=False, default="pending", index=True)
    processing_job_id = Column(String, nullable=True)
    raw_file_size_bytes = Column(BigInteger, nullable=True)
    final_file_size_bytes = Column(BigInteger, nullable=True)
    raw_file_retention_days = Column(Integer, nullable=True)  # null keeps the raw file forever
    raw_file_deleted_at = Column(DateTime(timezone=True), nullable=True)
    uploaded_by = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)

    project = relationship("Project", back_populates="assets")
    jobs = relationship("ProcessingJob", back_populates="asset", cascade="all, delete-orphan", passive_deletes=True)
