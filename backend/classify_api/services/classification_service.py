"""
Classify API Backend — Classification Service (Business Logic Orchestrator)
===========================================================================

What:  Coordinates the record → gateway → persist workflow for image
       classification, plus history, search, soft delete and statistics.
How:   Composes the InferenceGateway, the inference backend and database
       operations. Stateless: the session, gateway and backend are passed in
       for each call.
Who:   Called by route handlers in routes/classify.py.

Orchestration Flow (POST /api/v1/classify/image):
    ┌──────────┐    ┌──────────────┐    ┌──────────────┐    ┌──────────┐
    │ Validate │───▶│ Insert row   │───▶│  Gateway     │───▶│ Update   │
    │ (Image)  │    │ (processing) │    │  (Ollama)    │    │ row      │
    └──────────┘    └──────────────┘    └──────────────┘    └──────────┘

    On inference failure the row is committed with status='error' before the
    exception propagates, so the failure survives the request rollback.
    A cancelled request is recorded the same way.

Ownership:
    Users see only their own classifications. The account configured as
    settings.admin_email may read and delete every row.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import desc, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from classify_api.config import settings
from classify_api.exceptions import (
    DatabaseError,
    ForbiddenError,
    InferenceError,
    NotFoundError,
    ValidationError,
)
from classify_api.models.classification import (
    STATUS_COMPLETED,
    STATUS_DELETED,
    STATUS_ERROR,
    STATUS_PROCESSING,
    Classification,
)
from classify_api.models.user import User
from classify_api.schemas.classification import (
    ClassificationItem,
    ClassifyResponse,
    HistoryResponse,
    ModelStats,
    Pagination,
    SearchResponse,
    UsageStats,
)
from classify_api.services.gateway import InferenceGateway
from classify_api.services.image_service import ImagePayload
from classify_api.services.inference_base import InferenceBackend

logger = logging.getLogger(__name__)

MIN_SEARCH_LENGTH = 3
SEARCH_LIMIT = 50

# The model gives no calibrated score; every completed answer is labelled alike
DEFAULT_CONFIDENCE = "High"


def is_admin(user: User) -> bool:
    return user.email.lower() == settings.admin_email.lower()


class ClassificationService:
    """
    Business logic layer for classifications.

    Database errors are wrapped in DatabaseError (hides SQL details).
    Inference errors propagate with their original type so the handler can
    map each one to its own status code.
    """

    async def classify(
        self,
        db: AsyncSession,
        gateway: InferenceGateway,
        backend: InferenceBackend,
        user: User,
        image: ImagePayload,
        prompt: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> ClassifyResponse:
        """
        Classify an image end-to-end.

        Workflow:
            1. Insert a row with status='processing'
            2. Submit the backend call through the gateway and await it
            3. Update the row with the result (status='completed')

        Raises:
            QueueFullError:     gateway is at capacity (raised before any wait)
            QueueTimeoutError:  request expired while queued
            InferenceError:     any other backend failure
            DatabaseError:      the row could not be written
        """
        prompt = prompt or settings.default_prompt
        record = Classification(
            id=uuid.uuid4(),
            user_id=user.id,
            image_hash=image.sha256,
            image_size=image.size,
            image_type=image.mime_type,
            prompt=prompt,
            model_used=backend.model,
            status=STATUS_PROCESSING,
        )

        try:
            db.add(record)
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to create classification record: %s", str(e), exc_info=True)
            raise DatabaseError(
                message="Could not record the classification request. Please try again.",
                context={"error_type": type(e).__name__},
            )
        logger.info("Classification %s created (status=processing)", record.id)

        image_b64 = image.base64
        try:
            result = await gateway.run(
                lambda: backend.classify_image(image_b64, prompt),
                request_id=request_id,
            )
        except InferenceError as e:
            await self._mark_failed(db, record, e.message)
            logger.warning(
                "Classification %s failed (%s): %s",
                record.id,
                type(e).__name__,
                e.message,
            )
            raise
        except asyncio.CancelledError:
            # Client went away; the row must not stay in processing
            await self._mark_failed(db, record, "Request cancelled")
            logger.warning("Classification %s cancelled", record.id)
            raise

        record.result = result.classification
        record.confidence = DEFAULT_CONFIDENCE
        record.processing_time_ms = result.processing_time_ms
        record.status = STATUS_COMPLETED
        try:
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to store classification %s: %s", record.id, str(e))
            raise DatabaseError(
                message="Classification succeeded but could not be saved. Please try again.",
                context={"classification_id": str(record.id)},
            )

        logger.info(
            "Classification %s completed in %dms",
            record.id,
            result.processing_time_ms,
        )
        return ClassifyResponse(
            id=record.id,
            classification=result.classification,
            confidence=DEFAULT_CONFIDENCE,
            model=result.model,
            processing_time_ms=result.processing_time_ms,
            image_size=image.size,
            timestamp=datetime.now(timezone.utc),
        )

    async def _mark_failed(self, db: AsyncSession, record: Classification, message: str) -> None:
        """Commit status='error' so the row outlives the request rollback."""
        record.status = STATUS_ERROR
        record.error_message = message
        try:
            await db.commit()
        except SQLAlchemyError:
            logger.error("Failed to record error status for classification %s", record.id)

    async def history(
        self,
        db: AsyncSession,
        user: User,
        limit: int = 20,
        offset: int = 0,
        status: Optional[str] = None,
    ) -> HistoryResponse:
        """Newest-first page of the user's classifications (deleted rows excluded)."""
        if status == STATUS_DELETED:
            raise ValidationError(message="Deleted classifications cannot be listed", field="status")

        filters = [Classification.status != STATUS_DELETED]
        if not is_admin(user):
            filters.append(Classification.user_id == user.id)
        if status:
            filters.append(Classification.status == status)

        try:
            result = await db.execute(
                select(Classification)
                .where(*filters)
                .order_by(desc(Classification.created_at))
                .offset(offset)
                .limit(limit)
            )
            rows = list(result.scalars().all())

            count_result = await db.execute(select(func.count(Classification.id)).where(*filters))
            total = count_result.scalar() or 0
        except SQLAlchemyError as e:
            logger.error("Database error listing classifications: %s", str(e), exc_info=True)
            raise DatabaseError(
                message="Could not retrieve classification history. Please try again.",
                context={"error_type": type(e).__name__},
            )

        return HistoryResponse(
            classifications=[ClassificationItem.model_validate(row) for row in rows],
            pagination=Pagination(
                limit=limit,
                offset=offset,
                total=total,
                has_more=offset + len(rows) < total,
            ),
        )

    async def _load(self, db: AsyncSession, classification_id: uuid.UUID, user: User) -> Classification:
        try:
            result = await db.execute(
                select(Classification).where(
                    Classification.id == classification_id,
                    Classification.status != STATUS_DELETED,
                )
            )
            record = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Database error fetching classification %s: %s", classification_id, str(e))
            raise DatabaseError(
                message="Could not retrieve the classification. Please try again.",
                context={"classification_id": str(classification_id)},
            )

        if record is None:
            raise NotFoundError(resource="classification", resource_id=str(classification_id))
        if record.user_id != user.id and not is_admin(user):
            raise ForbiddenError(context={"classification_id": str(classification_id)})
        return record

    async def get(self, db: AsyncSession, classification_id: uuid.UUID, user: User) -> ClassificationItem:
        record = await self._load(db, classification_id, user)
        return ClassificationItem.model_validate(record)

    async def delete(self, db: AsyncSession, classification_id: uuid.UUID, user: User) -> None:
        """Soft delete: the row stays for statistics but disappears from the API."""
        record = await self._load(db, classification_id, user)
        record.status = STATUS_DELETED
        try:
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to delete classification %s: %s", classification_id, str(e))
            raise DatabaseError(
                message="Could not delete the classification. Please try again.",
                context={"classification_id": str(classification_id)},
            )
        logger.info("Classification %s deleted by user %s", classification_id, user.id)

    async def search(self, db: AsyncSession, user: User, term: str) -> SearchResponse:
        """Case-insensitive substring search over results and prompts."""
        term = (term or "").strip()
        if len(term) < MIN_SEARCH_LENGTH:
            raise ValidationError(
                message=f"Search term must be at least {MIN_SEARCH_LENGTH} characters",
                field="q",
            )

        pattern = f"%{term}%"
        filters = [
            Classification.status != STATUS_DELETED,
            or_(Classification.result.ilike(pattern), Classification.prompt.ilike(pattern)),
        ]
        if not is_admin(user):
            filters.append(Classification.user_id == user.id)

        try:
            result = await db.execute(
                select(Classification)
                .where(*filters)
                .order_by(desc(Classification.created_at))
                .limit(SEARCH_LIMIT)
            )
            rows = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Database error searching classifications: %s", str(e), exc_info=True)
            raise DatabaseError(message="Search failed. Please try again.")

        items = [ClassificationItem.model_validate(row) for row in rows]
        return SearchResponse(query=term, results=items, count=len(items))

    async def model_stats(self, db: AsyncSession) -> List[ModelStats]:
        result = await db.execute(
            select(
                Classification.model_used,
                func.count(Classification.id),
                func.avg(Classification.processing_time_ms),
            )
            .where(Classification.status != STATUS_DELETED)
            .group_by(Classification.model_used)
            .order_by(desc(func.count(Classification.id)))
        )
        return [
            ModelStats(
                model=model,
                total=total,
                avg_processing_time_ms=round(float(avg), 1) if avg is not None else None,
            )
            for model, total, avg in result.all()
        ]

    async def stats(self, db: AsyncSession) -> UsageStats:
        """Counts per status and average processing time of completed runs."""
        try:
            result = await db.execute(
                select(Classification.status, func.count(Classification.id))
                .where(Classification.status != STATUS_DELETED)
                .group_by(Classification.status)
            )
            counts = {status: count for status, count in result.all()}

            avg_result = await db.execute(
                select(func.avg(Classification.processing_time_ms)).where(
                    Classification.status == STATUS_COMPLETED
                )
            )
            avg = avg_result.scalar()

            by_model = await self.model_stats(db)
        except SQLAlchemyError as e:
            logger.error("Database error computing statistics: %s", str(e))
            raise DatabaseError(message="Could not compute statistics.")

        return UsageStats(
            total=sum(counts.values()),
            completed=counts.get(STATUS_COMPLETED, 0),
            errors=counts.get(STATUS_ERROR, 0),
            processing=counts.get(STATUS_PROCESSING, 0),
            avg_processing_time_ms=round(float(avg), 1) if avg is not None else None,
            by_model=by_model,
        )


classification_service = ClassificationService()
