"""
Classify API Backend — Test Configuration (conftest.py)
=======================================================

What:  Shared pytest fixtures for the entire test suite.
How:   pytest auto-discovers conftest.py and makes fixtures available to all tests.

Fixtures:
    ├── mock_db_session: Mock AsyncSession (no real DB needed)
    ├── fake_backend: In-memory InferenceBackend with switchable probes
    ├── sample_jpeg_bytes / sample_png_bytes / sample_png_base64
    ├── test_user / admin_user: Transient User rows
    ├── app: FastAPI app with gateway, backend, DB and auth overridden
    └── test_client: HTTPX AsyncClient bound to `app` via ASGITransport

ASGITransport does not run the lifespan, so `app` wires app.state itself.
"""

import base64
import os
from datetime import datetime, timezone
from typing import Optional
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

# Settings are read at import time: configure the environment first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test.db"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-not-for-production-use"
os.environ["ADMIN_EMAIL"] = "admin@example.com"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from classify_api.models.user import User  # noqa: E402
from classify_api.services.gateway import InferenceGateway  # noqa: E402
from classify_api.services.inference_base import (  # noqa: E402
    ClassificationResult,
    InferenceBackend,
)

# 1x1 transparent PNG
PNG_1X1 = bytes.fromhex(
    "89504e470d0a1a0a0000000d4948445200000001000000010806000000"
    "1f15c4890000000a49444154789c63000100000500010d0a2db40000000049454e44ae426082"
)


class FakeBackend(InferenceBackend):
    """Scriptable backend: flip `reachable` / `model_ready`, set `error` or `answer`."""

    def __init__(self, model: str = "moondream"):
        self.model = model
        self.reachable = True
        self.model_ready = True
        self.answer = "A red apple on a wooden table"
        self.processing_time_ms = 1234
        self.error = None
        self.calls = []

    async def is_reachable(self) -> bool:
        return self.reachable

    async def is_model_ready(self, name: Optional[str] = None) -> bool:
        if name is not None and name not in self.model:
            return False
        return self.reachable and self.model_ready

    async def classify_image(self, image_base64: str, prompt: str) -> ClassificationResult:
        self.calls.append((image_base64, prompt))
        if self.error is not None:
            raise self.error
        return ClassificationResult(
            classification=self.answer,
            model=self.model,
            prompt=prompt,
            processing_time_ms=self.processing_time_ms,
        )


@pytest.fixture
def mock_db_session():
    """
    Mock async database session.

    Usage:
        mock_db_session.execute.return_value.scalar_one_or_none.return_value = row
    """
    session = AsyncMock()
    session.execute = AsyncMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def sample_jpeg_bytes():
    """Minimal JPEG: SOI marker + JFIF header + EOI marker. Passes MIME validation only."""
    return (
        b'\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00'
        b'\xff\xd9'
    )


@pytest.fixture
def sample_png_bytes():
    return PNG_1X1


@pytest.fixture
def sample_png_base64():
    return base64.b64encode(PNG_1X1).decode("ascii")


def make_user(email: str = "user@example.com", name: str = "Test User") -> User:
    return User(
        id=uuid4(),
        email=email,
        name=name,
        password_hash="not-a-real-hash",
        is_active=True,
        created_at=datetime.now(timezone.utc),
        last_login=None,
    )


@pytest.fixture
def test_user():
    return make_user()


@pytest.fixture
def admin_user():
    return make_user(email="admin@example.com", name="Admin")


@pytest.fixture
def app(fake_backend, mock_db_session, test_user):
    from classify_api.database import get_db_session
    from classify_api.dependencies import get_current_user
    from classify_api.main import create_app

    application = create_app()
    application.state.backend = fake_backend
    application.state.gateway = InferenceGateway(fake_backend, max_concurrent=3, max_queue_size=10)

    async def override_db():
        yield mock_db_session

    async def override_user():
        return test_user

    application.dependency_overrides[get_db_session] = override_db
    application.dependency_overrides[get_current_user] = override_user
    return application


@pytest_asyncio.fixture
async def test_client(app):
    """
    HTTPX AsyncClient talking to the app in-process.

    Usage:
        async def test_health(test_client):
            response = await test_client.get("/health")
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
