"""
Classify API Backend — Classification Routes
============================================

What:  Image classification, queue status, history and search endpoints
       under /api/v1/classify.
Who:   API clients holding a bearer token (status and samples are public).

POST /image accepts either:
    - multipart/form-data with an `image` file (or base64 string) and an
      optional `prompt` field
    - application/json: {"image": "<base64 or data URL>", "prompt": "..."}

Error responses for POST /image (global exception handlers):
    400 ValidationError          bad image, size or type
    401 AuthenticationError      missing or invalid token
    408 QueueTimeoutError        waited too long in the inference queue
    429 rate limit               per-IP classify window exceeded
    502 MalformedResponseError / UpstreamHTTPError
    503 QueueFullError (Retry-After), ServiceUnavailableError,
        ResourceNotReadyError, TransportError
    504 TransportError(kind="timeout")
"""

import logging
import uuid
from typing import Optional, Tuple

import pydantic
from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.datastructures import UploadFile

from classify_api.config import settings
from classify_api.database import get_db_session
from classify_api.dependencies import get_backend, get_current_user, get_gateway
from classify_api.exceptions import ValidationError
from classify_api.models.user import User
from classify_api.schemas.classification import (
    ClassificationItem,
    ClassifyJSONRequest,
    ClassifyResponse,
    ErrorResponse,
    HistoryResponse,
    QueueStatus,
    SampleImage,
    SamplesResponse,
    SearchResponse,
    ServiceStatusResponse,
)
from classify_api.services.classification_service import classification_service
from classify_api.services.gateway import InferenceGateway
from classify_api.services.image_service import ImagePayload, image_service
from classify_api.services.inference_base import InferenceBackend

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/classify", tags=["Classify"])

SAMPLES = [
    SampleImage(
        name="Everyday object",
        description="A single household item on a plain background",
        prompt="What object is in this image? Provide a brief, descriptive answer.",
    ),
    SampleImage(
        name="Animal",
        description="A photo of a pet or wild animal",
        prompt="What animal is in this image? Name the species if you can.",
    ),
    SampleImage(
        name="Food",
        description="A plate or dish",
        prompt="What food is shown in this image?",
    ),
    SampleImage(
        name="Scene",
        description="An indoor or outdoor scene",
        prompt="Describe the scene in this image in one sentence.",
    ),
]


async def read_image_input(request: Request) -> Tuple[ImagePayload, Optional[str]]:
    """Extract and validate the image and prompt from a form or JSON body."""
    content_type = request.headers.get("content-type", "")

    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        upload = form.get("image")
        prompt = form.get("prompt")
        prompt = prompt.strip() if isinstance(prompt, str) and prompt.strip() else None

        if isinstance(upload, UploadFile):
            try:
                content = await upload.read()
            finally:
                await upload.close()
            logger.info(
                "Received classify upload: filename=%s, size=%d bytes",
                upload.filename or "unknown",
                len(content),
            )
            return image_service.validate(content), prompt
        if isinstance(upload, str) and upload:
            return image_service.from_base64(upload), prompt
        raise ValidationError(message="No image provided", field="image")

    try:
        body = await request.json()
    except ValueError:
        raise ValidationError(
            message="Request body must be JSON or multipart form data with an image",
            field="image",
        )

    try:
        parsed = ClassifyJSONRequest.model_validate(body)
    except pydantic.ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ())) or "image"
        raise ValidationError(message=first.get("msg", "Invalid request body"), field=field)

    return image_service.from_base64(parsed.image), parsed.prompt


@router.post(
    "/image",
    response_model=ClassifyResponse,
    responses={
        400: {"description": "Invalid image", "model": ErrorResponse},
        401: {"description": "Authentication required", "model": ErrorResponse},
        408: {"description": "Timed out in the inference queue", "model": ErrorResponse},
        429: {"description": "Rate limit exceeded", "model": ErrorResponse},
        502: {"description": "Invalid answer from the model server", "model": ErrorResponse},
        503: {"description": "Queue full or model server unavailable", "model": ErrorResponse},
        504: {"description": "Model server timed out", "model": ErrorResponse},
    },
    summary="Classify an image",
    description=(
        "Upload a JPEG, PNG, GIF or WebP image (max 10MB) and get a short "
        "description of its content from the vision model."
    ),
)
async def classify_image(
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    gateway: InferenceGateway = Depends(get_gateway),
    backend: InferenceBackend = Depends(get_backend),
) -> ClassifyResponse:
    image, prompt = await read_image_input(request)
    return await classification_service.classify(
        db,
        gateway,
        backend,
        user,
        image,
        prompt=prompt,
        request_id=getattr(request.state, "request_id", None),
    )


@router.get(
    "/status",
    response_model=ServiceStatusResponse,
    summary="Inference backend and queue status",
)
async def service_status(
    gateway: InferenceGateway = Depends(get_gateway),
    backend: InferenceBackend = Depends(get_backend),
    db: AsyncSession = Depends(get_db_session),
) -> ServiceStatusResponse:
    """Always 200; failures are reported in the body."""
    status = await gateway.get_status()

    try:
        stats = await classification_service.stats(db)
    except Exception as e:
        logger.warning("Status: statistics unavailable: %s", str(e))
        stats = None

    return ServiceStatusResponse(
        ollama_available=status.reachable,
        model_ready=status.model_ready,
        model=backend.model,
        api_url=settings.ollama_api_url,
        queue=QueueStatus(
            active_requests=status.in_flight,
            queued_requests=status.queued,
            max_concurrent=status.max_concurrent,
            max_queue_size=status.max_queue_size,
            utilization_percent=status.utilization_percent,
        ),
        stats=stats,
        status="healthy" if status.healthy else "degraded",
        error=status.error,
    )


@router.get("/history", response_model=HistoryResponse, summary="Classification history")
async def history(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    status: Optional[str] = Query(default=None, pattern="^(processing|completed|error)$"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> HistoryResponse:
    return await classification_service.history(db, user, limit=limit, offset=offset, status=status)


@router.get("/search", response_model=SearchResponse, summary="Search classifications")
async def search(
    q: str = Query(default="", max_length=200),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> SearchResponse:
    return await classification_service.search(db, user, q)


@router.get("/samples", response_model=SamplesResponse, summary="Suggested prompts")
async def samples() -> SamplesResponse:
    return SamplesResponse(samples=SAMPLES, default_prompt=settings.default_prompt)


@router.get(
    "/{classification_id}",
    response_model=ClassificationItem,
    responses={
        403: {"description": "Not your classification", "model": ErrorResponse},
        404: {"description": "Not found", "model": ErrorResponse},
    },
    summary="Get one classification",
)
async def get_classification(
    classification_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> ClassificationItem:
    return await classification_service.get(db, classification_id, user)


@router.delete(
    "/{classification_id}",
    status_code=204,
    responses={
        403: {"description": "Not your classification", "model": ErrorResponse},
        404: {"description": "Not found", "model": ErrorResponse},
    },
    summary="Delete a classification",
)
async def delete_classification(
    classification_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> Response:
    await classification_service.delete(db, classification_id, user)
    return Response(status_code=204)
