"""Create attachments and upload_queue tables

Revision ID: 3a8d2f61c0b7
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "3a8d2f61c0b7"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "attachments",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("library_id", sa.Integer(), nullable=False),
        sa.Column("item_key", sa.String(length=32), nullable=False),
        sa.Column("content_hash", sa.String(length=128), nullable=True),
        sa.Column("upload_status", sa.String(length=20), nullable=True),
        sa.Column("file_path", sa.String(length=1024), nullable=True),
        sa.Column("mime_type", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "library_id", "item_key", name="uq_attachments_user_ref"),
    )
    op.create_index("idx_attachments_user_hash", "attachments", ["user_id", "content_hash"])
    op.create_index("idx_attachments_user_status", "attachments", ["user_id", "upload_status"])

    op.create_table(
        "upload_queue",
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("content_hash", sa.String(length=128), nullable=False),
        sa.Column("visibility", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("library_id", sa.Integer(), nullable=False),
        sa.Column("item_key", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id", "content_hash"),
    )
    op.create_index(
        "idx_upload_queue_claim",
        "upload_queue",
        ["user_id", "attempt_count", "visibility"],
    )


def downgrade() -> None:
    op.drop_index("idx_upload_queue_claim", table_name="upload_queue")
    op.drop_table("upload_queue")
    op.drop_index("idx_attachments_user_status", table_name="attachments")
    op.drop_index("idx_attachments_user_hash", table_name="attachments")
    op.drop_table("attachments")
