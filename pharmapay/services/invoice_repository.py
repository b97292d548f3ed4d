"""
Invoice repository: row <-> model mapping and persistence.

Writes go through the caller's session (the request owns the transaction).
Attachment objects are reconciled here: when an update clears or replaces a
stored file, the old key is queued on the session and removed by
``commit_and_remove_stale`` after the transaction commits.
"""

from datetime import datetime
from typing import Optional
import uuid

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from pharmapay.database import utcnow
from pharmapay.models.invoice import Invoice, InvoiceEvent
from pharmapay.models.user import User
from pharmapay.schemas.attachment import FileAttachment
from pharmapay.schemas.auth import SessionUser
from pharmapay.schemas.invoice import (
    InvoiceCreate,
    InvoiceEventResponse,
    InvoiceEventType,
    InvoiceResponse,
    InvoiceStatus,
    InvoiceUpdate,
    PaymentData,
)
from pharmapay.services import attachment_service
from pharmapay.services.errors import (
    ConflictError,
    InvoiceNotFoundError,
    PharmaPayError,
    ValidationError,
)
from pharmapay.services.storage import ObjectStore
from pharmapay.services.storage_paths import (
    file_name_from_url,
    is_local_preview,
    resolve_storage_path,
)

logger = structlog.get_logger()

_PLAIN_FIELDS = (
    "supplier_name_snapshot",
    "invoice_number",
    "invoice_date",
    "due_date",
    "total_amount",
    "notes",
)

_STALE_PATHS_KEY = "stale_storage_paths"


def _to_uuid(value, field_name: str, required: bool = False) -> Optional[uuid.UUID]:
    if value is None or value == "":
        if required:
            raise ValidationError([f"{field_name} is required"])
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        if required:
            raise ValidationError([f"{field_name} must be a valid id"])
        logger.warning("invoice_invalid_uuid", field=field_name, value=str(value))
        return None


def _row_attachment(url: Optional[str], path: Optional[str], name: Optional[str]) -> Optional[FileAttachment]:
    if not url and not path:
        return None
    return FileAttachment(
        url=url or "",
        file_name=name or file_name_from_url(url),
        storage_path=resolve_storage_path({"storage_path": path, "url": url}) or "",
    )


def map_row_to_invoice(row: Invoice, created_by_name: Optional[str] = None) -> InvoiceResponse:
    payment = None
    if row.payment_paid_at:
        payment = PaymentData(
            paid_at=row.payment_paid_at,
            method=row.payment_method or "",
            amount_paid=(
                row.payment_amount_paid
                if row.payment_amount_paid is not None
                else row.total_amount
            ),
        )

    return InvoiceResponse(
        id=str(row.id),
        supplier_id=str(row.supplier_id),
        supplier_name_snapshot=row.supplier_name_snapshot or "",
        invoice_number=row.invoice_number,
        invoice_date=row.invoice_date,
        due_date=row.due_date,
        total_amount=row.total_amount,
        status=InvoiceStatus(row.status),
        attachment=_row_attachment(row.attachment_url, row.attachment_path, row.attachment_name),
        notes=row.notes or "",
        created_by=created_by_name or (str(row.created_by) if row.created_by else ""),
        created_at=row.created_at,
        updated_at=row.updated_at,
        payment=payment,
        payment_proof=_row_attachment(row.payment_proof_url, row.payment_proof_path, None),
    )


def _attachment_columns(attachment: Optional[FileAttachment]) -> dict:
    """Column values for a persisted attachment; unsaved previews store nothing."""
    if attachment is None or attachment.file is not None or is_local_preview(attachment.url):
        return {"attachment_url": None, "attachment_path": None, "attachment_name": None}
    return {
        "attachment_url": attachment.url or None,
        "attachment_path": resolve_storage_path(attachment),
        "attachment_name": attachment.file_name or None,
    }


def _invoice_select():
    return select(Invoice, User.name).outerjoin(User, User.id == Invoice.created_by)


async def get_invoice_row(session: AsyncSession, invoice_id) -> Invoice:
    invoice_uuid = _to_uuid(invoice_id, "invoice_id")
    row = None
    if invoice_uuid is not None:
        result = await session.execute(select(Invoice).where(Invoice.id == invoice_uuid))
        row = result.scalar_one_or_none()
    if row is None:
        raise InvoiceNotFoundError(str(invoice_id))
    return row


async def log_event(
    session: AsyncSession,
    invoice_id,
    event_type: InvoiceEventType,
    user_id: Optional[str],
    details: Optional[dict] = None,
) -> InvoiceEvent:
    event = InvoiceEvent(
        invoice_id=_to_uuid(invoice_id, "invoice_id", required=True),
        type=InvoiceEventType(event_type).value,
        by_user_id=_to_uuid(user_id, "by_user_id"),
        details=details or {},
        created_at=utcnow(),
    )
    session.add(event)
    await session.flush()
    logger.info("invoice_event_logged", invoice_id=str(invoice_id), type=event.type)
    return event


async def _append_event(session: AsyncSession, invoice_id, event_type: InvoiceEventType, user_id):
    # The audit trail must not undo the write it describes.
    try:
        async with session.begin_nested():
            await log_event(session, invoice_id, event_type, user_id)
    except SQLAlchemyError as e:
        logger.error(
            "invoice_event_log_failed",
            invoice_id=str(invoice_id),
            type=InvoiceEventType(event_type).value,
            error=str(e),
        )


async def create_invoice(session: AsyncSession, data: InvoiceCreate, user: SessionUser) -> str:
    now = utcnow()
    row = Invoice(
        supplier_id=_to_uuid(data.supplier_id, "supplier_id", required=True),
        supplier_name_snapshot=data.supplier_name_snapshot,
        invoice_number=data.invoice_number,
        invoice_date=data.invoice_date,
        due_date=data.due_date,
        total_amount=data.total_amount,
        status=InvoiceStatus(data.status).value,
        notes=data.notes,
        created_by=_to_uuid(user.id, "created_by"),
        created_at=now,
        updated_at=now,
        **_attachment_columns(data.attachment),
    )
    session.add(row)
    await session.flush()
    if row.id is None:
        raise PharmaPayError("Failed to create invoice")

    await _append_event(session, row.id, InvoiceEventType.CREATED, user.id)
    logger.info("invoice_created", invoice_id=str(row.id), status=row.status, user_id=user.id)
    return str(row.id)


async def update_invoice(
    session: AsyncSession,
    invoice_id,
    changes: InvoiceUpdate,
    user: SessionUser,
    event_type: Optional[InvoiceEventType] = None,
    expected_updated_at: Optional[datetime] = None,
) -> Invoice:
    """Apply the fields explicitly set on ``changes``.

    If ``expected_updated_at`` is given the write only succeeds when the row
    still carries that timestamp; otherwise ConflictError is raised.
    """
    row = await get_invoice_row(session, invoice_id)
    fields = changes.model_fields_set
    values: dict = {}

    for name in _PLAIN_FIELDS:
        if name in fields:
            values[name] = getattr(changes, name)
    if "supplier_id" in fields:
        values["supplier_id"] = _to_uuid(changes.supplier_id, "supplier_id", required=True)
    if "status" in fields and changes.status is not None:
        values["status"] = changes.status.value
        if changes.status != InvoiceStatus.PAID:
            values.update(payment_paid_at=None, payment_method=None, payment_amount_paid=None)
    if "payment" in fields:
        payment = changes.payment
        values.update(
            payment_paid_at=payment.paid_at if payment else None,
            payment_method=payment.method if payment else None,
            payment_amount_paid=payment.amount_paid if payment else None,
        )

    # Read the old keys before writing so replaced objects can be removed after commit.
    stale_paths: list[str] = []
    if "attachment" in fields:
        previous = resolve_storage_path({"storage_path": row.attachment_path, "url": row.attachment_url})
        values.update(_attachment_columns(changes.attachment))
        if previous and previous != values["attachment_path"]:
            stale_paths.append(previous)
    if "payment_proof" in fields:
        previous = resolve_storage_path({"storage_path": row.payment_proof_path, "url": row.payment_proof_url})
        proof = _attachment_columns(changes.payment_proof)
        values.update(payment_proof_url=proof["attachment_url"], payment_proof_path=proof["attachment_path"])
        if previous and previous != values["payment_proof_path"]:
            stale_paths.append(previous)

    values["updated_at"] = utcnow()

    stmt = update(Invoice).where(Invoice.id == row.id)
    if expected_updated_at is not None:
        stmt = stmt.where(Invoice.updated_at == expected_updated_at)
    result = await session.execute(
        stmt.values(**values).execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.warning("invoice_update_conflict", invoice_id=str(row.id))
        raise ConflictError(str(row.id))
    await session.refresh(row)

    if event_type:
        await _append_event(session, row.id, event_type, user.id)

    logger.info(
        "invoice_updated",
        invoice_id=str(row.id),
        fields=sorted(fields),
        event_type=InvoiceEventType(event_type).value if event_type else None,
    )
    _queue_stale_paths(session, stale_paths)
    return row


def _queue_stale_paths(session: AsyncSession, paths: list[str]):
    if paths:
        session.info.setdefault(_STALE_PATHS_KEY, []).extend(paths)


def pending_stale_paths(session: AsyncSession) -> list[str]:
    return list(session.info.get(_STALE_PATHS_KEY, []))


async def commit_and_remove_stale(session: AsyncSession, store: ObjectStore):
    """Commit, then delete the objects this transaction stopped referencing.

    Replaced objects are only removed once the row no longer points at
    them. If the commit fails the queue is dropped and the objects stay.
    """
    try:
        await session.commit()
    except Exception:
        session.info.pop(_STALE_PATHS_KEY, None)
        raise
    for path in session.info.pop(_STALE_PATHS_KEY, []):
        await attachment_service.delete_file(store, path)


async def delete_invoice(session: AsyncSession, store: ObjectStore, invoice_id):
    """Remove stored files first, then the row (its events cascade).

    If the row delete fails after the files are gone, the object is orphaned
    rather than the row pointing at a missing file.
    """
    row = await get_invoice_row(session, invoice_id)
    await attachment_service.delete_attachment(
        store, {"storage_path": row.attachment_path, "url": row.attachment_url}
    )
    await attachment_service.delete_attachment(
        store, {"storage_path": row.payment_proof_path, "url": row.payment_proof_url}
    )
    await session.execute(delete(Invoice).where(Invoice.id == row.id))
    await session.flush()
    logger.info("invoice_deleted", invoice_id=str(row.id))


async def get_invoice(session: AsyncSession, invoice_id) -> Optional[InvoiceResponse]:
    invoice_uuid = _to_uuid(invoice_id, "invoice_id")
    if invoice_uuid is None:
        return None
    result = await session.execute(_invoice_select().where(Invoice.id == invoice_uuid))
    found = result.first()
    if not found:
        return None
    row, created_by_name = found
    return map_row_to_invoice(row, created_by_name)


def _filter_invoices(q, status=None, supplier_id=None, search=None):
    if status:
        q = q.where(Invoice.status == InvoiceStatus(status).value)
    if supplier_id:
        q = q.where(Invoice.supplier_id == _to_uuid(supplier_id, "supplier_id", required=True))
    if search:
        pattern = f"%{search}%"
        q = q.where(
            or_(
                Invoice.invoice_number.ilike(pattern),
                Invoice.supplier_name_snapshot.ilike(pattern),
            )
        )
    return q


async def count_invoices(
    session: AsyncSession,
    status: Optional[InvoiceStatus] = None,
    supplier_id: Optional[str] = None,
    search: Optional[str] = None,
) -> int:
    q = _filter_invoices(select(func.count(Invoice.id)), status, supplier_id, search)
    return (await session.execute(q)).scalar() or 0


async def list_invoices(
    session: AsyncSession,
    status: Optional[InvoiceStatus] = None,
    supplier_id: Optional[str] = None,
    search: Optional[str] = None,
    offset: int = 0,
    limit: Optional[int] = None,
) -> list[InvoiceResponse]:
    q = _filter_invoices(_invoice_select(), status, supplier_id, search)
    q = q.order_by(Invoice.created_at.desc()).offset(offset)
    if limit is not None:
        q = q.limit(limit)
    result = await session.execute(q)
    return [map_row_to_invoice(row, name) for row, name in result.all()]


async def list_invoices_by_supplier(session: AsyncSession, supplier_id: str) -> list[InvoiceResponse]:
    return await list_invoices(session, supplier_id=supplier_id)


async def get_invoice_events(session: AsyncSession, invoice_id) -> list[InvoiceEventResponse]:
    invoice_uuid = _to_uuid(invoice_id, "invoice_id", required=True)
    result = await session.execute(
        select(InvoiceEvent, User.name)
        .outerjoin(User, User.id == InvoiceEvent.by_user_id)
        .where(InvoiceEvent.invoice_id == invoice_uuid)
        .order_by(InvoiceEvent.created_at.desc())
    )
    return [
        InvoiceEventResponse(
            id=str(event.id),
            invoice_id=str(event.invoice_id),
            type=InvoiceEventType(event.type),
            by=name or (str(event.by_user_id) if event.by_user_id else ""),
            at=event.created_at,
            details=event.details or {},
        )
        for event, name in result.all()
    ]
