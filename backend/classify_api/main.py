"""
Classify API Backend — FastAPI Application Factory
==================================================

What:  Creates and configures the FastAPI application instance.
How:   Factory pattern: create_app() returns a configured FastAPI instance.
Who:   uvicorn (uvicorn classify_api.main:app).

Application Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                      FastAPI App                        │
    │                                                         │
    │  Middleware Chain:                                      │
    │  ┌──────────────┐ ┌──────────┐ ┌─────────────────┐      │
    │  │  Rate Limit  │→│ Req ID   │→│  Logging        │      │
    │  └──────────────┘ └──────────┘ └─────────────────┘      │
    │                                                         │
    │  Routes:                                                │
    │  ┌──────────────┐ ┌──────────────────┐ ┌────────────┐   │
    │  │ /api/v1/auth │ │ /api/v1/classify │ │ GET /health│   │
    │  └──────────────┘ └──────────────────┘ └────────────┘   │
    │                                                         │
    │  app.state:                                             │
    │    backend  → OllamaService (pooled httpx client)       │
    │    gateway  → InferenceGateway (slots + FIFO queue)     │
    └─────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:
    1. Initialize logging
    2. Validate configuration (logged, not fatal)
    3. Build the Ollama backend and the inference gateway
    4. Probe Ollama once and log the result

    Shutdown:
    1. Close the gateway (queued requests fail with 503, running ones finish)
    2. Close the backend's HTTP connection pool
    3. Dispose the database engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from classify_api import __version__
from classify_api.config import settings
from classify_api.database import dispose_engine
from classify_api.exceptions import (
    AuthenticationError,
    ClassifyAPIError,
    ConflictError,
    DatabaseError,
    ForbiddenError,
    InferenceError,
    NotFoundError,
    QueueFullError,
    RateLimitExceededError,
    ValidationError,
)
from classify_api.middleware.logging import RequestLoggingMiddleware
from classify_api.middleware.rate_limit import RateLimitMiddleware
from classify_api.middleware.request_id import RequestIDMiddleware, request_id_var
from classify_api.routes import auth, classify, health
from classify_api.services.gateway import InferenceGateway
from classify_api.services.ollama_service import OllamaService

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure logging for the entire application.

    Format: 2024-01-15T12:00:00 [INFO] classify_api.services.gateway: ...
    Called once during startup, before any other initialization.
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),  # Docker captures stdout
        ],
        force=True,
    )

    # Third-party libraries log every operation at DEBUG/INFO
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("Classify API %s starting up...", __version__)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        logger.error("Configuration error: %s", str(e))
        logger.error("Fix the configuration and restart the server.")
        raise

    backend = OllamaService(max_connections=settings.ollama_max_concurrent)
    gateway = InferenceGateway(
        backend,
        max_concurrent=settings.ollama_max_concurrent,
        max_queue_size=settings.ollama_max_queue_size,
        queue_timeout=settings.ollama_queue_timeout,
    )
    app.state.backend = backend
    app.state.gateway = gateway

    status = await gateway.get_status()
    if status.healthy:
        logger.info("Ollama ready at %s (model=%s)", settings.ollama_api_url, backend.model)
    elif status.reachable:
        logger.warning(
            "Ollama reachable but model '%s' is missing. Run: ollama pull %s",
            backend.model,
            backend.model,
        )
    else:
        logger.warning("Ollama is not reachable at %s", settings.ollama_api_url)

    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("API docs: http://%s:%d/docs", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("Classify API shutting down...")
    await gateway.close()
    await backend.aclose()
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def error_body(code: str, message: str, details=None) -> dict:
    content = {
        "error": code,
        "message": message,
        "request_id": request_id_var.get(""),
    }
    if details:
        content["details"] = details
    return content


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map exception types to HTTP status codes and the ErrorResponse body.

    Handler hierarchy:
        ValidationError         → 400
        AuthenticationError     → 401 (WWW-Authenticate: Bearer)
        ForbiddenError          → 403
        NotFoundError           → 404
        ConflictError           → 409
        RateLimitExceededError  → 429 (Retry-After)
        InferenceError family   → exc.status_code / exc.error_code
                                  (QueueFullError adds Retry-After)
        DatabaseError           → 500 (generic message)
        ClassifyAPIError (base) → 500
        Exception (fallback)    → 500

    Internal details (stack traces, SQL, raw transport errors) are logged,
    never returned.
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("[%s] Validation error: %s", request_id_var.get(""), exc.message)
        return JSONResponse(
            status_code=400,
            content=error_body("validation_error", exc.message, exc.context),
        )

    @app.exception_handler(AuthenticationError)
    async def handle_authentication_error(request: Request, exc: AuthenticationError):
        return JSONResponse(
            status_code=401,
            content=error_body("unauthorized", exc.message),
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(ForbiddenError)
    async def handle_forbidden(request: Request, exc: ForbiddenError):
        return JSONResponse(status_code=403, content=error_body("forbidden", exc.message))

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content=error_body("not_found", exc.message))

    @app.exception_handler(ConflictError)
    async def handle_conflict(request: Request, exc: ConflictError):
        return JSONResponse(status_code=409, content=error_body("conflict", exc.message))

    @app.exception_handler(RateLimitExceededError)
    async def handle_rate_limit(request: Request, exc: RateLimitExceededError):
        return JSONResponse(
            status_code=429,
            content=error_body("rate_limit_exceeded", exc.message, exc.context),
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(InferenceError)
    async def handle_inference_error(request: Request, exc: InferenceError):
        rid = request_id_var.get("")
        if exc.status_code >= 500:
            logger.error("[%s] Inference error (%s): %s", rid, exc.error_code, exc.message)
        else:
            logger.warning("[%s] Inference error (%s): %s", rid, exc.error_code, exc.message)

        headers = {}
        if isinstance(exc, QueueFullError):
            headers["Retry-After"] = str(exc.retry_after)

        # Internal request IDs stay in the log
        details = {k: v for k, v in exc.context.items() if k != "request_id"}
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.error_code, exc.message, details),
            headers=headers,
        )

    @app.exception_handler(DatabaseError)
    async def handle_database_error(request: Request, exc: DatabaseError):
        rid = request_id_var.get("")
        logger.error("[%s] Database error: %s | Context: %s", rid, exc.message, exc.context)
        return JSONResponse(
            status_code=500,
            content=error_body("server_error", "An internal error occurred. Please try again later."),
        )

    @app.exception_handler(ClassifyAPIError)
    async def handle_application_error(request: Request, exc: ClassifyAPIError):
        rid = request_id_var.get("")
        logger.error("[%s] Unhandled application error %s: %s", rid, type(exc).__name__, exc.message)
        return JSONResponse(status_code=500, content=error_body("server_error", exc.message))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        rid = request_id_var.get("")
        logger.error("[%s] Unexpected error: %s", rid, str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content=error_body(
                "internal_server_error",
                "An unexpected error occurred. Please try again or contact support.",
            ),
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app() -> FastAPI:
    app = FastAPI(
        title="Classify API",
        description=(
            "Image classification with a local Ollama vision model. Requests "
            "pass through a bounded queue so the model server is never overloaded."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Middleware executes in reverse order of addition:
    # RateLimit → RequestID → Logging → GZip → CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(RateLimitMiddleware)

    register_exception_handlers(app)

    app.include_router(auth.router)
    app.include_router(classify.router)
    app.include_router(health.router)

    return app


app = create_app()
