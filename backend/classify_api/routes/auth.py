"""
Classify API Backend — Authentication Routes
============================================

What:  Registration, login and current-user endpoints under /api/v1/auth.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from classify_api.database import get_db_session
from classify_api.dependencies import get_current_user
from classify_api.models.user import User
from classify_api.schemas.auth import LoginRequest, RegisterRequest, TokenResponse, UserResponse
from classify_api.schemas.classification import ErrorResponse
from classify_api.services.auth_service import auth_service

router = APIRouter(prefix="/api/v1/auth", tags=["Auth"])


@router.post(
    "/register",
    status_code=201,
    response_model=TokenResponse,
    responses={409: {"description": "Email already registered", "model": ErrorResponse}},
    summary="Create an account",
)
async def register(
    body: RegisterRequest,
    db: AsyncSession = Depends(get_db_session),
) -> TokenResponse:
    return await auth_service.register(db, email=body.email, password=body.password, name=body.name)


@router.post(
    "/login",
    response_model=TokenResponse,
    responses={401: {"description": "Invalid credentials", "model": ErrorResponse}},
    summary="Exchange credentials for an access token",
)
async def login(
    body: LoginRequest,
    db: AsyncSession = Depends(get_db_session),
) -> TokenResponse:
    return await auth_service.authenticate(db, email=body.email, password=body.password)


@router.get("/me", response_model=UserResponse, summary="Current user profile")
async def me(user: User = Depends(get_current_user)) -> UserResponse:
    return UserResponse.model_validate(user)
