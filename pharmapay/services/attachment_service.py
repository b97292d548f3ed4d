"""
Attachment service: validation, upload with bucket fallback, signed
download URLs, best-effort deletion and the orphan sweep.

Buckets are tried in the order given by ``settings.bucket_candidates``
(configured bucket, then the default one). Only a "bucket not found"
condition moves on to the next candidate.
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from pharmapay.config import settings
from pharmapay.database import utcnow
from pharmapay.models.invoice import Invoice
from pharmapay.schemas.attachment import FileAttachment, PendingFile
from pharmapay.services.errors import StorageNotFoundError, UploadError
from pharmapay.services.storage import BucketNotFoundError, ObjectStore
from pharmapay.services.storage_paths import (
    ATTACHMENT_PREFIX,
    PAYMENT_PROOF_PREFIX,
    AttachmentLike,
    build_attachment_path,
    is_local_preview,
    resolve_storage_path,
    sanitize_file_name,
)

logger = structlog.get_logger()

REMOVE_BATCH_SIZE = 1000

ALLOWED_CONTENT_TYPES = {
    "application/pdf",
    "image/jpeg",
    "image/png",
    "image/webp",
}


@dataclass
class FileValidation:
    valid: bool
    error: Optional[str] = None


def max_file_size() -> int:
    return settings.ATTACHMENT_MAX_SIZE_MB * 1024 * 1024


def validate_file(file: PendingFile) -> FileValidation:
    if file.size > max_file_size():
        return FileValidation(
            valid=False,
            error=f"File too large (max {settings.ATTACHMENT_MAX_SIZE_MB}MB)",
        )
    if file.content_type not in ALLOWED_CONTENT_TYPES:
        return FileValidation(
            valid=False,
            error="File type not allowed (PDF, JPG, PNG, WebP)",
        )
    return FileValidation(valid=True)


async def _upload_with_fallback_bucket(
    store: ObjectStore, storage_path: str, file: PendingFile
) -> str:
    """Upload to the first bucket that exists and return its name."""
    for bucket in settings.bucket_candidates:
        try:
            await asyncio.to_thread(
                store.upload,
                bucket,
                storage_path,
                file.data,
                file.content_type,
                False,
            )
            return bucket
        except BucketNotFoundError:
            logger.warning("storage_bucket_not_found", bucket=bucket, key=storage_path)
            continue

    raise StorageNotFoundError(settings.STORAGE_BUCKET, settings.STORAGE_DEFAULT_BUCKET)


async def _store_file(
    store: ObjectStore, file: PendingFile, invoice_id: str, prefix: str = ""
) -> FileAttachment:
    validation = validate_file(file)
    if not validation.valid:
        raise UploadError(validation.error or "Invalid file")

    storage_file_name = prefix + sanitize_file_name(file.file_name)
    storage_path = build_attachment_path(invoice_id, file.file_name, prefix=prefix)

    try:
        bucket = await _upload_with_fallback_bucket(store, storage_path, file)
    except UploadError:
        raise
    except Exception as e:
        logger.error("attachment_upload_failed", key=storage_path, error=str(e))
        raise UploadError(str(e) or "File upload failed") from e

    logger.info("attachment_uploaded", bucket=bucket, key=storage_path, size=file.size)
    return FileAttachment(
        storage_path=storage_path,
        url=store.get_public_url(bucket, storage_path),
        file_name=storage_file_name,
        size=file.size,
    )


async def upload_invoice_attachment(
    store: ObjectStore, file: PendingFile, invoice_id: str
) -> FileAttachment:
    return await _store_file(store, file, str(invoice_id))


async def upload_payment_proof(
    store: ObjectStore, file: PendingFile, invoice_id: str
) -> FileAttachment:
    return await _store_file(store, file, str(invoice_id), prefix=PAYMENT_PROOF_PREFIX)


async def get_download_url(store: ObjectStore, attachment: FileAttachment) -> str:
    """Signed, time-limited URL for an attachment; falls back to its stored URL."""
    if is_local_preview(attachment.url):
        return attachment.url

    storage_path = resolve_storage_path(attachment)
    if not storage_path:
        return attachment.url

    for bucket in settings.bucket_candidates:
        try:
            return await asyncio.to_thread(
                store.create_signed_url,
                bucket,
                storage_path,
                settings.SIGNED_URL_TTL_SECONDS,
            )
        except BucketNotFoundError:
            continue
        except Exception as e:
            logger.warning("signed_url_failed", bucket=bucket, key=storage_path, error=str(e))
            break

    return attachment.url


async def delete_file(store: ObjectStore, storage_path: str):
    """Best-effort removal; failures are logged so the caller's mutation proceeds."""
    for bucket in settings.bucket_candidates:
        try:
            await asyncio.to_thread(store.remove, bucket, [storage_path])
            return
        except BucketNotFoundError:
            continue
        except Exception as e:
            logger.error("attachment_delete_failed", bucket=bucket, key=storage_path, error=str(e))
            return


async def delete_attachment(store: ObjectStore, attachment: AttachmentLike):
    storage_path = resolve_storage_path(attachment)
    if not storage_path:
        return
    await delete_file(store, storage_path)


async def _referenced_paths(session: AsyncSession) -> set[str]:
    result = await session.execute(
        select(
            Invoice.attachment_path,
            Invoice.attachment_url,
            Invoice.payment_proof_path,
            Invoice.payment_proof_url,
        )
    )
    referenced: set[str] = set()
    for att_path, att_url, proof_path, proof_url in result.all():
        for path, url in ((att_path, att_url), (proof_path, proof_url)):
            resolved = resolve_storage_path({"storage_path": path, "url": url})
            if resolved:
                referenced.add(resolved)
    return referenced


async def sweep_orphaned_attachments(
    session: AsyncSession,
    store: ObjectStore,
    older_than: Optional[timedelta] = None,
) -> list[str]:
    """Delete uploaded objects that no invoice links to.

    Covers the window between uploading a file and writing the row that
    references it. Objects younger than ``older_than`` are left alone so
    in-flight saves are not raced.
    """
    if older_than is None:
        older_than = timedelta(minutes=settings.ORPHAN_SWEEP_GRACE_MINUTES)
    cutoff = utcnow() - older_than
    referenced = await _referenced_paths(session)

    deleted: list[str] = []
    for bucket in settings.bucket_candidates:
        try:
            objects = await asyncio.to_thread(store.list_objects, bucket, f"{ATTACHMENT_PREFIX}/")
        except BucketNotFoundError:
            continue

        stale = [
            obj.key
            for obj in objects
            if obj.key not in referenced and obj.last_modified < cutoff
        ]
        if not stale:
            continue
        # DeleteObjects accepts at most REMOVE_BATCH_SIZE keys per request.
        for start in range(0, len(stale), REMOVE_BATCH_SIZE):
            batch = stale[start:start + REMOVE_BATCH_SIZE]
            await asyncio.to_thread(store.remove, bucket, batch)
            deleted.extend(batch)
        logger.info("orphaned_attachments_removed", bucket=bucket, count=len(stale))

    return deleted
