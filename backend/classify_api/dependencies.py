"""
Classify API Backend — FastAPI Dependencies
===========================================

What:  Request-scoped providers for the current user, the inference gateway
       and the service objects.
How:   Routes declare them with Depends(); tests replace them through
       app.dependency_overrides.

The gateway and backend live on app.state (created in the lifespan), so
every request shares the same slots and queue.
"""

import uuid
from typing import Optional

import jwt
from fastapi import Depends, Header, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from classify_api.database import get_db_session
from classify_api.exceptions import AuthenticationError, ServiceUnavailableError
from classify_api.models.user import User
from classify_api.security import decode_token
from classify_api.services.gateway import InferenceGateway
from classify_api.services.inference_base import InferenceBackend


async def get_current_user(
    db: AsyncSession = Depends(get_db_session),
    authorization: Optional[str] = Header(default=None, description="Bearer <token>"),
) -> User:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Access token required")

    token = authorization[7:].strip()
    try:
        payload = decode_token(token)
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Access token has expired")
    except jwt.PyJWTError:
        raise AuthenticationError("Invalid access token")

    if payload.get("type") != "access":
        raise AuthenticationError("Invalid token type")

    try:
        user_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise AuthenticationError("Invalid token payload")

    result = await db.execute(
        select(User).where(User.id == user_id, User.is_active == True)  # noqa: E712
    )
    user = result.scalar_one_or_none()
    if not user:
        raise AuthenticationError("User not found or inactive")
    return user


def get_gateway(request: Request) -> InferenceGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise ServiceUnavailableError(message="Classification service is not initialized.")
    return gateway


def get_backend(request: Request) -> InferenceBackend:
    backend = getattr(request.app.state, "backend", None)
    if backend is None:
        raise ServiceUnavailableError(message="Classification service is not initialized.")
    return backend
