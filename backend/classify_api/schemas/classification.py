"""
Classify API Backend — Pydantic Request/Response Schemas
========================================================

What:  Pydantic models defining the API contract for classification,
       queue status and health endpoints.
How:   FastAPI uses these models to validate request bodies, serialize
       responses, and generate the OpenAPI documentation.
Who:   Route handlers in routes/classify.py and routes/health.py.

Schemas are separate from the SQLAlchemy models: image_hash and
error_message are stored but only exposed where the client needs them.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class ClassifyJSONRequest(BaseModel):
    """
    JSON variant of POST /api/v1/classify/image.

    `image` is base64, optionally prefixed with a data URL
    ("data:image/png;base64,...").
    """

    image: str = Field(min_length=1, description="Base64-encoded image or data URL")
    prompt: Optional[str] = Field(
        default=None,
        max_length=1000,
        description="Custom prompt (defaults to the server's classification prompt)",
    )

    @field_validator("prompt")
    @classmethod
    def blank_prompt_is_default(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class ClassificationItem(BaseModel):
    """Stored classification as returned by history, search and detail routes."""

    id: uuid.UUID
    result: Optional[str] = Field(default=None, description="Model answer (null while processing)")
    confidence: Optional[str] = None
    model_used: str
    prompt: str
    processing_time_ms: Optional[int] = None
    image_size: int
    image_type: str
    status: str = Field(description="processing, completed, error")
    error_message: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ClassifyResponse(BaseModel):
    """
    Returned by POST /api/v1/classify/image with HTTP 200.

    `processing_time_ms` is the model-reported duration when Ollama sent one.
    """

    id: uuid.UUID
    classification: str
    confidence: str
    model: str
    processing_time_ms: int
    image_size: int
    timestamp: datetime


class Pagination(BaseModel):
    limit: int
    offset: int
    total: int
    has_more: bool


class HistoryResponse(BaseModel):
    classifications: List[ClassificationItem]
    pagination: Pagination


class SearchResponse(BaseModel):
    query: str
    results: List[ClassificationItem]
    count: int


class SampleImage(BaseModel):
    name: str
    description: str
    prompt: str


class SamplesResponse(BaseModel):
    samples: List[SampleImage]
    default_prompt: str


class ModelStats(BaseModel):
    model: str
    total: int
    avg_processing_time_ms: Optional[float] = None


class UsageStats(BaseModel):
    """Aggregates over every non-deleted classification."""

    total: int = 0
    completed: int = 0
    errors: int = 0
    processing: int = 0
    avg_processing_time_ms: Optional[float] = None
    by_model: List[ModelStats] = Field(default_factory=list)


# ══════════════════════════════════════════════════════════════════════════
# Status & Health
# ══════════════════════════════════════════════════════════════════════════


class QueueStatus(BaseModel):
    active_requests: int = Field(description="Units of work currently running")
    queued_requests: int = Field(description="Units of work waiting for a slot")
    max_concurrent: int
    max_queue_size: int
    utilization_percent: float = Field(description="active_requests / max_concurrent, 0-100")


class ServiceStatusResponse(BaseModel):
    """
    Returned by GET /api/v1/classify/status.

    Always answers 200: the status route reports failures, it does not raise them.
    """

    ollama_available: bool
    model_ready: bool
    model: str
    api_url: str
    queue: QueueStatus
    stats: Optional[UsageStats] = None
    status: str = Field(description="healthy or degraded")
    error: Optional[str] = None


class ErrorResponse(BaseModel):
    """
    Standardized error body for every API error.

    Example:
        {
            "error": "queue_full",
            "message": "Request queue is full. Please try again later.",
            "details": {"retry_after": 30},
            "request_id": "550e8400-e29b-41d4-a716-446655440000"
        }
    """

    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    """
    Returned by GET /health.

    Database failure makes the service unhealthy; an unavailable model only
    degrades it, because auth and history still work.
    """

    status: str = Field(description="healthy, degraded, unhealthy")
    version: str
    database: str = Field(description="connected, disconnected")
    ollama: str = Field(description="available, model_missing, unavailable")
    queue: QueueStatus
    uptime_seconds: float
