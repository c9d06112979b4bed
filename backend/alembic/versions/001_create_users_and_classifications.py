"""Create users and classifications tables

Revision ID: 001
Revises: None
Create Date: 2026-10-17 00:00:00.000000+00:00

What:  Initial schema: API accounts and one row per classify request.
How:   PostgreSQL UUID primary keys (gen_random_uuid()), TIMESTAMP WITH TIME
       ZONE, and indexes for the history, status and model statistics queries.

Rollback: downgrade() drops both tables (destructive).
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column("last_login", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "classifications",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column(
            "image_hash",
            sa.String(64),
            nullable=False,
            comment="SHA-256 hex digest of the image bytes",
        ),
        sa.Column("image_size", sa.Integer(), nullable=False, comment="Size in bytes"),
        sa.Column("image_type", sa.String(50), nullable=False, comment="MIME type"),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("confidence", sa.String(20), nullable=True),
        sa.Column("model_used", sa.String(100), nullable=False),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column(
            "status",
            sa.String(20),
            nullable=False,
            server_default=sa.text("'processing'"),
            comment="processing, completed, error, deleted",
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
    )

    # History pages: WHERE user_id = :id ORDER BY created_at DESC
    op.create_index(
        "idx_classifications_user_created",
        "classifications",
        ["user_id", sa.text("created_at DESC")],
    )
    op.create_index("idx_classifications_status", "classifications", ["status"])
    op.create_index("idx_classifications_model_used", "classifications", ["model_used"])
    op.create_index("idx_classifications_image_hash", "classifications", ["image_hash"])


def downgrade() -> None:
    op.drop_index("idx_classifications_image_hash", table_name="classifications")
    op.drop_index("idx_classifications_model_used", table_name="classifications")
    op.drop_index("idx_classifications_status", table_name="classifications")
    op.drop_index("idx_classifications_user_created", table_name="classifications")
    op.drop_table("classifications")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
