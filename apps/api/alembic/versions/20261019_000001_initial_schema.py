"""create initial schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=False)

    op.create_table(
        "chunked_uploads",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("file_name", sa.String(), nullable=False),
        sa.Column("original_size", sa.BigInteger(), nullable=False),
        sa.Column("chunk_size", sa.Integer(), nullable=False),
        sa.Column("total_chunks", sa.Integer(), nullable=False),
        sa.Column("chunks_uploaded", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("bucket_name", sa.String(), nullable=False),
        sa.Column("storage_prefix", sa.String(), nullable=False),
        sa.Column("mime_type", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_chunked_uploads_user_id"), "chunked_uploads", ["user_id"], unique=False)
    op.create_index(op.f("ix_chunked_uploads_status"), "chunked_uploads", ["status"], unique=False)

    op.create_table(
        "upload_chunks",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("upload_id", sa.String(), nullable=False),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("storage_path", sa.String(), nullable=False),
        sa.Column("size", sa.Integer(), nullable=False),
        sa.Column("checksum", sa.String(), nullable=True),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["upload_id"], ["chunked_uploads.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("upload_id", "chunk_index", name="uq_upload_chunks_upload_index"),
    )
    op.create_index(op.f("ix_upload_chunks_upload_id"), "upload_chunks", ["upload_id"], unique=False)

    op.create_table(
        "dataset_reference_profiles",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("dataset_type", sa.String(), nullable=False),
        sa.Column("subject_label", sa.String(), nullable=False),
        sa.Column("is_positive", sa.Boolean(), nullable=False),
        sa.Column("features", sa.JSON(), nullable=False),
        sa.Column("source_upload_id", sa.String(), nullable=True),
        sa.Column("uploaded_by", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["source_upload_id"], ["chunked_uploads.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_dataset_reference_profiles_dataset_type"),
        "dataset_reference_profiles",
        ["dataset_type"],
        unique=False,
    )
    op.create_index(
        op.f("ix_dataset_reference_profiles_source_upload_id"),
        "dataset_reference_profiles",
        ["source_upload_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_dataset_reference_profiles_uploaded_by"),
        "dataset_reference_profiles",
        ["uploaded_by"],
        unique=False,
    )
    op.create_index(
        "ix_reference_profiles_type_uploader",
        "dataset_reference_profiles",
        ["dataset_type", "uploaded_by"],
        unique=False,
    )

    op.create_table(
        "dataset_computed_thresholds",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("dataset_type", sa.String(), nullable=False),
        sa.Column("metric_name", sa.String(), nullable=False),
        sa.Column("positive_mean", sa.Float(), nullable=False),
        sa.Column("positive_std", sa.Float(), nullable=False),
        sa.Column("negative_mean", sa.Float(), nullable=False),
        sa.Column("negative_std", sa.Float(), nullable=False),
        sa.Column("optimal_threshold", sa.Float(), nullable=False),
        sa.Column("weight", sa.Float(), nullable=False),
        sa.Column("sample_size_positive", sa.Integer(), nullable=False),
        sa.Column("sample_size_negative", sa.Integer(), nullable=False),
        sa.Column("computed_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dataset_type", "metric_name", name="uq_computed_thresholds_type_metric"),
    )
    op.create_index(
        op.f("ix_dataset_computed_thresholds_dataset_type"),
        "dataset_computed_thresholds",
        ["dataset_type"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index(op.f("ix_dataset_computed_thresholds_dataset_type"), table_name="dataset_computed_thresholds")
    op.drop_table("dataset_computed_thresholds")
    op.drop_index("ix_reference_profiles_type_uploader", table_name="dataset_reference_profiles")
    op.drop_index(op.f("ix_dataset_reference_profiles_uploaded_by"), table_name="dataset_reference_profiles")
    op.drop_index(op.f("ix_dataset_reference_profiles_source_upload_id"), table_name="dataset_reference_profiles")
    op.drop_index(op.f("ix_dataset_reference_profiles_dataset_type"), table_name="dataset_reference_profiles")
    op.drop_table("dataset_reference_profiles")
    op.drop_index(op.f("ix_upload_chunks_upload_id"), table_name="upload_chunks")
    op.drop_table("upload_chunks")
    op.drop_index(op.f("ix_chunked_uploads_status"), table_name="chunked_uploads")
    op.drop_index(op.f("ix_chunked_uploads_user_id"), table_name="chunked_uploads")
    op.drop_table("chunked_uploads")
    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
