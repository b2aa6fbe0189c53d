from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "20261001_000001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    resource_kind_enum = sa.Enum("image", "video", "raw", name="resourcekind")

    op.create_table(
        "media_assets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("public_id", sa.String(length=512), nullable=False),
        sa.Column("url", sa.String(length=2048), nullable=False),
        sa.Column("resource_kind", resource_kind_enum, nullable=False),
        sa.Column("folder", sa.String(length=512), nullable=True),
        sa.Column("format", sa.String(length=32), nullable=False),
        sa.Column("byte_size", sa.BigInteger(), nullable=False),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column("is_visual_bible", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("identity_agent", sa.String(length=32), nullable=True),
        sa.Column("identity_slot", sa.Integer(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("modified_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("public_id", name="uq_media_assets_public_id"),
        sa.UniqueConstraint("identity_agent", "identity_slot", name="uq_media_assets_identity_anchor"),
    )
    op.create_index("ix_media_assets_visual_bible", "media_assets", ["is_visual_bible"])
    op.create_index("ix_media_assets_identity_agent", "media_assets", ["identity_agent"])


def downgrade() -> None:
    op.drop_index("ix_media_assets_identity_agent", table_name="media_assets")
    op.drop_index("ix_media_assets_visual_bible", table_name="media_assets")
    op.drop_table("media_assets")
    sa.Enum(name="resourcekind").drop(op.get_bind(), checkfirst=True)
