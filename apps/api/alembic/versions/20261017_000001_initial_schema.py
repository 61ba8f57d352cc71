"""create asset pipeline schema

Revision ID: 20261017_000001
Revises:
Create Date: 2026-10-17 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261017_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False, server_default="user"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)
    op.create_index(op.f("ix_users_role"), "users", ["role"], unique=False)

    op.create_table(
        "projects",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_projects_owner_id"), "projects", ["owner_id"], unique=False)

    op.create_table(
        "project_access",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("granted_by", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["granted_by"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("project_id", "user_id", name="uq_project_access_project_user"),
    )
    op.create_index(op.f("ix_project_access_project_id"), "project_access", ["project_id"], unique=False)
    op.create_index(op.f("ix_project_access_user_id"), "project_access", ["user_id"], unique=False)

    op.create_table(
        "project_assets",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("asset_key", sa.String(), nullable=False),
        sa.Column("final_key", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("mime_type", sa.String(), nullable=False),
        sa.Column("source_format", sa.String(), nullable=False, server_default="other"),
        sa.Column("asset_type", sa.String(), nullable=True),
        sa.Column("asset_category", sa.String(), nullable=False),
        sa.Column("processing_status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("processing_job_id", sa.String(), nullable=True),
        sa.Column("raw_file_size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("final_file_size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("raw_file_retention_days", sa.Integer(), nullable=True),
        sa.Column("raw_file_deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("uploaded_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "(processing_status = 'completed' AND final_key IS NOT NULL) "
            "OR (processing_status <> 'completed' AND final_key IS NULL)",
            name="ck_project_assets_final_key_completed",
        ),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["uploaded_by"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_project_assets_project_id"), "project_assets", ["project_id"], unique=False)
    op.create_index(op.f("ix_project_assets_asset_key"), "project_assets", ["asset_key"], unique=False)
    op.create_index(op.f("ix_project_assets_final_key"), "project_assets", ["final_key"], unique=False)
    op.create_index(op.f("ix_project_assets_processing_status"), "project_assets", ["processing_status"], unique=False)

    op.create_table(
        "processing_jobs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("asset_id", sa.String(), nullable=False),
        sa.Column("job_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="queued"),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("raw_file_key", sa.String(), nullable=True),
        sa.Column("progress_percent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["asset_id"], ["project_assets.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_processing_jobs_asset_id"), "processing_jobs", ["asset_id"], unique=False)
    op.create_index("ix_processing_jobs_status_created_at", "processing_jobs", ["status", "created_at"], unique=False)
    op.create_index(
        "uq_processing_jobs_active_asset",
        "processing_jobs",
        ["asset_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('queued', 'processing')"),
        sqlite_where=sa.text("status IN ('queued', 'processing')"),
    )


def downgrade() -> None:
    op.drop_index("uq_processing_jobs_active_asset", table_name="processing_jobs")
    op.drop_index("ix_processing_jobs_status_created_at", table_name="processing_jobs")
    op.drop_index(op.f("ix_processing_jobs_asset_id"), table_name="processing_jobs")
    op.drop_table("processing_jobs")
    op.drop_index(op.f("ix_project_assets_processing_status"), table_name="project_assets")
    op.drop_index(op.f("ix_project_assets_final_key"), table_name="project_assets")
    op.drop_index(op.f("ix_project_assets_asset_key"), table_name="project_assets")
    op.drop_index(op.f("ix_project_assets_project_id"), table_name="project_assets")
    op.drop_table("project_assets")
    op.drop_index(op.f("ix_project_access_user_id"), table_name="project_access")
    op.drop_index(op.f("ix_project_access_project_id"), table_name="project_access")
    op.drop_table("project_access")
    op.drop_index(op.f("ix_projects_owner_id"), table_name="projects")
    op.drop_table("projects")
    op.drop_index(op.f("ix_users_role"), table_name="users")
    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
