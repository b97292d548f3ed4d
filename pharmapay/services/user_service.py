"""User administration (manager only): create, list, change role, delete."""

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from pharmapay.database import parse_uuid, utcnow
from pharmapay.models.user import User
from pharmapay.schemas.auth import UserCreateRequest
from pharmapay.services.auth_service import hash_password
from pharmapay.services.errors import UserNotFoundError, ValidationError

logger = structlog.get_logger()

MIN_PASSWORD_LENGTH = 6


@dataclass
class UserValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)


def validate_user_input(data: UserCreateRequest) -> UserValidation:
    errors: list[str] = []
    if not data.name.strip():
        errors.append("Name is required")
    if not data.password or len(data.password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must have at least {MIN_PASSWORD_LENGTH} characters")
    return UserValidation(valid=not errors, errors=errors)


async def get_user(session: AsyncSession, user_id) -> Optional[User]:
    user_uuid = parse_uuid(user_id)
    if user_uuid is None:
        return None
    result = await session.execute(select(User).where(User.id == user_uuid))
    return result.scalar_one_or_none()


async def list_users(session: AsyncSession) -> list[User]:
    result = await session.execute(select(User).order_by(User.name))
    return list(result.scalars().all())


async def create_user(session: AsyncSession, data: UserCreateRequest) -> User:
    validation = validate_user_input(data)
    if not validation.valid:
        raise ValidationError(validation.errors)

    email = data.email.strip().lower()
    existing = await session.execute(select(func.count(User.id)).where(User.email == email))
    if existing.scalar():
        raise ValidationError(["Email is already registered"])

    user = User(
        name=data.name.strip(),
        email=email,
        password_hash=hash_password(data.password),
        role=data.role,
        active=True,
        created_at=utcnow(),
    )
    session.add(user)
    await session.flush()
    logger.info("user_created", user_id=str(user.id), role=user.role)
    return user


async def update_user_role(session: AsyncSession, user_id, role: str) -> User:
    user = await get_user(session, user_id)
    if not user:
        raise UserNotFoundError(str(user_id))
    user.role = role
    await session.flush()
    logger.info("user_role_updated", user_id=str(user.id), role=role)
    return user


async def delete_user(session: AsyncSession, user_id):
    user = await get_user(session, user_id)
    if not user:
        raise UserNotFoundError(str(user_id))
    await session.delete(user)
    await session.flush()
    logger.info("user_deleted", user_id=str(user.id))
