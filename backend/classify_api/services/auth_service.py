"""
Classify API Backend — Authentication Service
=============================================

What:  Account registration and credential checks.
Who:   routes/auth.py.
"""

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from classify_api.exceptions import AuthenticationError, ConflictError
from classify_api.models.user import User
from classify_api.schemas.auth import TokenResponse, UserResponse
from classify_api.security import (
    create_access_token,
    hash_password,
    token_lifetime_seconds,
    verify_password,
)

logger = logging.getLogger(__name__)


def issue_token(user: User) -> TokenResponse:
    return TokenResponse(
        access_token=create_access_token(user.id, user.email),
        expires_in=token_lifetime_seconds(),
        user=UserResponse.model_validate(user),
    )


class AuthService:
    async def register(self, db: AsyncSession, email: str, password: str, name: str) -> TokenResponse:
        email = email.lower()
        existing = await db.execute(select(User.id).where(User.email == email))
        if existing.scalar_one_or_none() is not None:
            raise ConflictError(message="An account with this email already exists")

        user = User(
            id=uuid.uuid4(),
            email=email,
            name=name.strip(),
            password_hash=hash_password(password),
            created_at=datetime.now(timezone.utc),
        )
        db.add(user)
        try:
            await db.flush()
        except IntegrityError:
            # Concurrent registration of the same email
            raise ConflictError(message="An account with this email already exists")

        logger.info("User registered: %s", user.id)
        return issue_token(user)

    async def authenticate(self, db: AsyncSession, email: str, password: str) -> TokenResponse:
        """
        Check credentials and record the login.

        Unknown email, wrong password and inactive account all give the same
        error so the response does not reveal which accounts exist.
        """
        result = await db.execute(select(User).where(User.email == email.lower()))
        user = result.scalar_one_or_none()

        if user is None or not user.is_active or not verify_password(password, user.password_hash):
            logger.info("Failed login attempt for %s", email.lower())
            raise AuthenticationError("Invalid email or password")

        user.last_login = datetime.now(timezone.utc)
        await db.flush()
        logger.info("User logged in: %s", user.id)
        return issue_token(user)


auth_service = AuthService()
