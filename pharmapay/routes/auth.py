from fastapi import APIRouter, Depends, HTTPException, status
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from pharmapay.config import settings
from pharmapay.database import get_db, utcnow
from pharmapay.middleware.auth import get_current_user
from pharmapay.models.user import User
from pharmapay.schemas.auth import (
    ChangePasswordRequest,
    LoginRequest,
    RefreshTokenRequest,
    SessionUser,
    TokenResponse,
    UserResponse,
)
from pharmapay.schemas.common import error_body
from pharmapay.services import user_service
from pharmapay.services.auth_service import (
    create_access_token,
    create_refresh_token,
    hash_password,
    verify_password,
    verify_refresh_token,
)

logger = structlog.get_logger()

router = APIRouter()


def _issue_tokens(user: User) -> TokenResponse:
    return TokenResponse(
        access_token=create_access_token(
            user_id=str(user.id),
            name=user.name,
            role=user.role,
            email=user.email,
        ),
        refresh_token=create_refresh_token(user_id=str(user.id)),
        token_type="Bearer",
        expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


@router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Authenticate user and return JWT tokens."""
    result = await db.execute(
        select(User).where(User.email == body.email.lower(), User.active == True)  # noqa: E712
    )
    user = result.scalar_one_or_none()

    if not user or not verify_password(body.password, user.password_hash):
        logger.warning("login_failed", email=body.email)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_body("AUTH_INVALID_CREDENTIALS", "Invalid email or password"),
        )

    user.last_login_at = utcnow()
    await db.commit()

    logger.info("user_logged_in", user_id=str(user.id), role=user.role)
    return _issue_tokens(user)


@router.post("/refresh", response_model=TokenResponse)
async def refresh(body: RefreshTokenRequest, db: AsyncSession = Depends(get_db)):
    """Refresh access token using a valid refresh token."""
    try:
        payload = verify_refresh_token(body.refresh_token)
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_body("AUTH_REFRESH_INVALID", "Invalid or expired refresh token"),
        )

    user = await user_service.get_user(db, payload.get("sub"))
    if not user or not user.active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_body("AUTH_USER_NOT_FOUND", "User no longer exists or is deactivated"),
        )

    return _issue_tokens(user)


@router.get("/me", response_model=UserResponse)
async def me(
    current_user: SessionUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    user = await user_service.get_user(db, current_user.id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_body("USER_NOT_FOUND", "User not found"),
        )
    return UserResponse(
        id=str(user.id),
        name=user.name,
        email=user.email,
        role=user.role,
        active=user.active,
    )


@router.post("/change-password", status_code=status.HTTP_204_NO_CONTENT)
async def change_password(
    body: ChangePasswordRequest,
    current_user: SessionUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Change the authenticated user's password."""
    user = await user_service.get_user(db, current_user.id)
    if not user or not user.active:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_body("USER_NOT_FOUND", "User not found"),
        )

    if not verify_password(body.current_password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_body("AUTH_INVALID_PASSWORD", "Incorrect current password"),
        )

    user.password_hash = hash_password(body.new_password)
    await db.commit()

    logger.info("password_changed", user_id=str(user.id))
