"""
Maintenance jobs triggered over HTTP by an external scheduler.

Jobs:
  - sweep-orphaned-attachments: removes uploaded files that no invoice
    links to (upload succeeded, row write did not)
"""

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from pharmapay.config import settings
from pharmapay.database import get_db
from pharmapay.services import attachment_service
from pharmapay.services.storage import ObjectStore, get_object_store

logger = structlog.get_logger()
router = APIRouter()


async def _require_internal_auth(request: Request):
    """Validate the X-Internal-Secret header against INTERNAL_JOB_SECRET."""
    secret = settings.INTERNAL_JOB_SECRET
    if not secret:
        # Unauthenticated internal calls are only accepted in debug mode
        if settings.DEBUG:
            return
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="INTERNAL_JOB_SECRET is not configured",
        )
    provided = request.headers.get("X-Internal-Secret")
    if not provided or provided != secret:
        logger.warning("internal_auth_failed", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden",
        )


@router.post("/sweep-orphaned-attachments")
async def sweep_orphaned_attachments(
    grace_minutes: Optional[int] = Query(None, ge=0),
    _auth: None = Depends(_require_internal_auth),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
):
    older_than = timedelta(minutes=grace_minutes) if grace_minutes is not None else None
    deleted = await attachment_service.sweep_orphaned_attachments(db, store, older_than)
    logger.info("job_sweep_orphaned_attachments_done", deleted=len(deleted))
    return {"job": "sweep-orphaned-attachments", "deleted": len(deleted), "keys": deleted}
