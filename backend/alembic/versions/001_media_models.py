"""Media models migration.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates videos and video_qualities tables and links materials to videos.
Materials, enrollments and progress belong to the course platform schema.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create videos table
    op.create_table(
        "videos",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("original_name", sa.String(255), nullable=False),
        sa.Column("filename", sa.String(255), nullable=False),
        sa.Column("path", sa.String(512), nullable=False),
        sa.Column("size", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("mime_type", sa.String(100), nullable=False),
        sa.Column("uploaded_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("duration", sa.Float(), nullable=True),
        sa.Column("thumbnail", sa.String(512), nullable=True),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_videos_status", "videos", ["status"])
    op.create_index("ix_videos_uploaded_by", "videos", ["uploaded_by"])

    # Create video_qualities table
    op.create_table(
        "video_qualities",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("video_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("quality", sa.String(10), nullable=False),
        sa.Column("path", sa.String(512), nullable=False),
        sa.Column("size", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("bitrate", sa.String(20), nullable=False),
        sa.Column("bitrate_kbps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("resolution", sa.String(20), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["video_id"], ["videos.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("video_id", "quality", name="uq_video_quality"),
    )
    op.create_index("ix_video_qualities_video_id", "video_qualities", ["video_id"])

    # Link course materials to their video
    op.add_column(
        "materials",
        sa.Column("video_id", postgresql.UUID(as_uuid=True), nullable=True),
    )
    op.create_foreign_key(
        "fk_materials_video_id",
        "materials",
        "videos",
        ["video_id"],
        ["id"],
        ondelete="SET NULL",
    )
    op.create_index("ix_materials_video_id", "materials", ["video_id"])


def downgrade() -> None:
    op.drop_index("ix_materials_video_id", table_name="materials")
    op.drop_constraint("fk_materials_video_id", "materials", type_="foreignkey")
    op.drop_column("materials", "video_id")

    op.drop_index("ix_video_qualities_video_id", table_name="video_qualities")
    op.drop_table("video_qualities")

    op.drop_index("ix_videos_uploaded_by", table_name="videos")
    op.drop_index("ix_videos_status", table_name="videos")
    op.drop_table("videos")
