from fastapi import Depends, HTTPException, status

from pharmapay.middleware.auth import get_current_user
from pharmapay.schemas.auth import SessionUser


def require_roles(*allowed_roles: str):
    """
    FastAPI dependency factory for role-based access control.

    Usage:
        @router.post("/{invoice_id}/mark-paid")
        async def mark_paid(
            current_user: SessionUser = Depends(get_current_user),
            _auth: None = Depends(require_roles("manager")),
        ):
    """
    async def check_role(current_user: SessionUser = Depends(get_current_user)):
        if current_user.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": {
                        "code": "INSUFFICIENT_PERMISSIONS",
                        "message": (
                            f"Role '{current_user.role}' cannot perform this action. "
                            f"Required: {allowed_roles}"
                        ),
                    }
                },
            )
        return None

    return check_role
