from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from pharmapay.database import get_db
from pharmapay.middleware.auth import get_current_user
from pharmapay.middleware.authorization import require_roles
from pharmapay.models.user import User
from pharmapay.schemas.auth import SessionUser, UserCreateRequest, UserResponse, UserRoleUpdate
from pharmapay.schemas.common import error_body
from pharmapay.services import user_service

logger = structlog.get_logger()
router = APIRouter()


def _to_response(user: User) -> UserResponse:
    return UserResponse(
        id=str(user.id),
        name=user.name,
        email=user.email,
        role=user.role,
        active=user.active,
    )


@router.get("", response_model=list[UserResponse])
async def list_users(
    current_user: SessionUser = Depends(get_current_user),
    _auth: None = Depends(require_roles("manager")),
    db: AsyncSession = Depends(get_db),
):
    return [_to_response(u) for u in await user_service.list_users(db)]


@router.post("", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    body: UserCreateRequest,
    current_user: SessionUser = Depends(get_current_user),
    _auth: None = Depends(require_roles("manager")),
    db: AsyncSession = Depends(get_db),
):
    user = await user_service.create_user(db, body)
    await db.commit()
    return _to_response(user)


@router.patch("/{user_id}/role", response_model=UserResponse)
async def update_user_role(
    user_id: str,
    body: UserRoleUpdate,
    current_user: SessionUser = Depends(get_current_user),
    _auth: None = Depends(require_roles("manager")),
    db: AsyncSession = Depends(get_db),
):
    if user_id == current_user.id and body.role != "manager":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_body("USER_SELF_DEMOTION", "Managers cannot remove their own manager role"),
        )
    user = await user_service.update_user_role(db, user_id, body.role)
    await db.commit()
    return _to_response(user)


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(
    user_id: str,
    current_user: SessionUser = Depends(get_current_user),
    _auth: None = Depends(require_roles("manager")),
    db: AsyncSession = Depends(get_db),
):
    if user_id == current_user.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_body("USER_SELF_DELETE", "You cannot delete your own account"),
        )
    await user_service.delete_user(db, user_id)
    await db.commit()
