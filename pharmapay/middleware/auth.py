from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError
import structlog

from pharmapay.schemas.auth import SessionUser
from pharmapay.services.auth_service import verify_access_token

logger = structlog.get_logger()

security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> SessionUser:
    """FastAPI dependency: extract and verify JWT, return the session user."""
    token = credentials.credentials
    try:
        payload = verify_access_token(token)
        user = SessionUser(
            id=payload["sub"],
            display_name=payload.get("name") or payload["email"],
            email=payload["email"],
            role=payload["role"],
        )
    except (JWTError, KeyError, ValueError) as e:
        logger.warning("auth_token_invalid", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": {
                    "code": "AUTH_TOKEN_INVALID",
                    "message": "Invalid or expired token",
                }
            },
            headers={"WWW-Authenticate": "Bearer"},
        )
    structlog.contextvars.bind_contextvars(user_id=user.id)
    return user
