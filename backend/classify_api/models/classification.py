"""
Classify API Backend — Classification SQLAlchemy Model
======================================================

What:  ORM model for the `classifications` table: one row per classify request.
Who:   Written by ClassificationService; read by history, search and stats.

Lifecycle:
    1. Created when a classify request is accepted (status = 'processing')
    2. Updated after the model answers (status = 'completed', result set)
    3. On inference failure: status = 'error', error_message populated
    4. Deleting via the API is a soft delete (status = 'deleted')

Images are not stored. image_hash (SHA-256) identifies the upload for
deduplication and support requests.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import Mapped, mapped_column

from classify_api.database import Base

STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"
STATUS_DELETED = "deleted"


class Classification(Base):
    """A single image classification and its outcome."""

    __tablename__ = "classifications"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )

    # SET NULL keeps usage statistics intact when a user is removed
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    image_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="SHA-256 hex digest of the image bytes",
    )
    image_size: Mapped[int] = mapped_column(Integer, nullable=False, comment="Size in bytes")
    image_type: Mapped[str] = mapped_column(String(50), nullable=False, comment="MIME type")

    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confidence: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    model_used: Mapped[str] = mapped_column(String(100), nullable=False)

    # Model-reported duration when available, otherwise measured wall-clock time
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=STATUS_PROCESSING,
        server_default=text("'processing'"),
        comment="processing, completed, error, deleted",
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        Index("idx_classifications_user_created", "user_id", created_at.desc()),
        Index("idx_classifications_status", "status"),
        Index("idx_classifications_model_used", "model_used"),
        Index("idx_classifications_image_hash", "image_hash"),
    )

    def __repr__(self) -> str:
        return (
            f"<Classification(id={self.id}, status='{self.status}', "
            f"model='{self.model_used}')>"
        )
