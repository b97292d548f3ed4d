"""
Invoice lifecycle service.

States: draft -> submitted -> paid. ``paid`` is terminal.

  draft      editable; ``submit_invoice`` moves it on once the submission
             rules pass
  submitted  editable; ``mark_as_paid`` (manager) records the payment
  paid       read-only apart from the payment proof

Files are always uploaded before the row that references them is written.
For a brand-new invoice the row has to exist first (the storage key embeds
its id), so an upload failure there is reported as AttachmentNotSavedError.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from pharmapay.database import parse_uuid, utcnow
from pharmapay.models.invoice import Invoice
from pharmapay.schemas.attachment import FileAttachment, PendingFile
from pharmapay.schemas.auth import SessionUser
from pharmapay.schemas.invoice import (
    InvoiceCreate,
    InvoiceEventType,
    InvoiceStatus,
    InvoiceUpdate,
    PaymentData,
)
from pharmapay.services import attachment_service, invoice_repository, supplier_service
from pharmapay.services.errors import (
    AttachmentNotSavedError,
    SupplierNotFoundError,
    TransitionError,
    UploadError,
    ValidationError,
)
from pharmapay.services.storage import ObjectStore

logger = structlog.get_logger()

INITIAL_STATUSES = {InvoiceStatus.DRAFT, InvoiceStatus.SUBMITTED}
EDITABLE_STATUSES = {InvoiceStatus.DRAFT.value, InvoiceStatus.SUBMITTED.value}


@dataclass
class SubmissionValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)


def _get(invoice, name: str):
    if isinstance(invoice, Mapping):
        return invoice.get(name)
    return getattr(invoice, name, None)


def validate_invoice_for_submission(invoice) -> SubmissionValidation:
    """Check every submission rule and report all failures together.

    A total of zero is valid; only a missing total is rejected.
    """
    errors: list[str] = []

    if not _get(invoice, "supplier_id"):
        errors.append("Supplier is required")
    if not _get(invoice, "invoice_number"):
        errors.append("Invoice number is required")
    if not _get(invoice, "invoice_date"):
        errors.append("Invoice date is required")
    if _get(invoice, "total_amount") is None:
        errors.append("Total is required")
    if not _get(invoice, "attachment"):
        errors.append("Document is required")

    return SubmissionValidation(valid=not errors, errors=errors)


async def check_duplicate_invoice(
    session: AsyncSession,
    supplier_id: str,
    invoice_number: str,
    exclude_invoice_id: Optional[str] = None,
) -> bool:
    """True when another invoice of this supplier already uses the number."""
    supplier_uuid = parse_uuid(supplier_id)
    if supplier_uuid is None or not invoice_number:
        return False

    q = select(Invoice.id).where(
        Invoice.supplier_id == supplier_uuid,
        Invoice.invoice_number == invoice_number,
    )
    exclude_uuid = parse_uuid(exclude_invoice_id)
    if exclude_uuid is not None:
        q = q.where(Invoice.id != exclude_uuid)
    result = await session.execute(q.limit(1))
    return result.first() is not None


async def _supplier_snapshot(session: AsyncSession, supplier_id: str) -> str:
    supplier = await supplier_service.get_supplier(session, supplier_id)
    if not supplier:
        raise SupplierNotFoundError(str(supplier_id))
    return supplier.name


def _require_valid_file(file: PendingFile):
    validation = attachment_service.validate_file(file)
    if not validation.valid:
        raise ValidationError([validation.error or "Invalid file"])


def _with_fields(changes: InvoiceUpdate, **extra) -> InvoiceUpdate:
    """Copy of ``changes`` keeping its explicitly-set fields plus ``extra``."""
    values = {name: getattr(changes, name) for name in changes.model_fields_set}
    values.update(extra)
    return InvoiceUpdate(**values)


async def save_new_invoice(
    session: AsyncSession,
    store: ObjectStore,
    data: InvoiceCreate,
    user: SessionUser,
    file: Optional[PendingFile] = None,
) -> str:
    if data.status not in INITIAL_STATUSES:
        raise TransitionError("new", f"create as {data.status.value}")
    if file is not None:
        _require_valid_file(file)

    if data.status == InvoiceStatus.SUBMITTED:
        pending = data.attachment or (FileAttachment(file_name=file.file_name, file=file) if file else None)
        validation = validate_invoice_for_submission(data.model_copy(update={"attachment": pending}))
        if not validation.valid:
            raise ValidationError(validation.errors)

    snapshot = data.supplier_name_snapshot or await _supplier_snapshot(session, data.supplier_id)
    update = {"supplier_name_snapshot": snapshot}
    if file is not None:
        update["attachment"] = None
    invoice_id = await invoice_repository.create_invoice(session, data.model_copy(update=update), user)

    if file is None:
        return invoice_id

    try:
        attachment = await attachment_service.upload_invoice_attachment(store, file, invoice_id)
    except UploadError as e:
        logger.error("invoice_saved_attachment_failed", invoice_id=invoice_id, error=e.message)
        raise AttachmentNotSavedError(invoice_id, e) from e

    await invoice_repository.update_invoice(
        session, invoice_id, InvoiceUpdate(attachment=attachment), user
    )
    return invoice_id


async def save_invoice_changes(
    session: AsyncSession,
    store: ObjectStore,
    invoice_id: str,
    changes: InvoiceUpdate,
    user: SessionUser,
    file: Optional[PendingFile] = None,
    expected_updated_at: Optional[datetime] = None,
) -> Invoice:
    """Edit a draft or submitted invoice, uploading any new file first.

    If the upload fails nothing is written. If the row write fails after a
    successful upload, the new object is removed again. The replaced object
    is only queued; ``commit_and_remove_stale`` deletes it after commit.
    """
    fields = changes.model_fields_set
    if fields & {"status", "payment", "payment_proof"}:
        raise ValidationError(["Status and payment change only through submit or mark as paid"])

    row = await invoice_repository.get_invoice_row(session, invoice_id)
    if row.status not in EDITABLE_STATUSES:
        raise TransitionError(row.status, "edit")
    if file is not None:
        _require_valid_file(file)

    if "supplier_id" in fields and not changes.supplier_name_snapshot:
        changes = _with_fields(
            changes, supplier_name_snapshot=await _supplier_snapshot(session, changes.supplier_id)
        )

    # update_invoice refreshes ``row``; keep the key it held before.
    previous_path = row.attachment_path or ""
    uploaded: Optional[FileAttachment] = None
    if file is not None:
        uploaded = await attachment_service.upload_invoice_attachment(store, file, str(row.id))
        changes = _with_fields(changes, attachment=uploaded)

    try:
        return await invoice_repository.update_invoice(
            session,
            row.id,
            changes,
            user,
            event_type=InvoiceEventType.UPDATED,
            expected_updated_at=expected_updated_at,
        )
    except Exception:
        if uploaded is not None and uploaded.storage_path != previous_path:
            await attachment_service.delete_file(store, uploaded.storage_path)
        raise


async def submit_invoice(
    session: AsyncSession, invoice_id: str, user: SessionUser
) -> Invoice:
    row = await invoice_repository.get_invoice_row(session, invoice_id)
    if row.status != InvoiceStatus.DRAFT.value:
        raise TransitionError(row.status, "submit")

    validation = validate_invoice_for_submission(invoice_repository.map_row_to_invoice(row))
    if not validation.valid:
        raise ValidationError(validation.errors)

    updated = await invoice_repository.update_invoice(
        session,
        row.id,
        InvoiceUpdate(status=InvoiceStatus.SUBMITTED),
        user,
        event_type=InvoiceEventType.SUBMITTED,
        expected_updated_at=row.updated_at,
    )
    logger.info("invoice_submitted", invoice_id=str(row.id), user_id=user.id)
    return updated


async def mark_as_paid(
    session: AsyncSession,
    invoice_id: str,
    method: str,
    user: SessionUser,
) -> Invoice:
    """Record full payment of a submitted invoice.

    The amount paid is always the invoice total; partial payments are not
    modelled.
    """
    row = await invoice_repository.get_invoice_row(session, invoice_id)
    if row.status != InvoiceStatus.SUBMITTED.value:
        raise TransitionError(row.status, "mark as paid")

    payment = PaymentData(paid_at=utcnow(), method=method, amount_paid=row.total_amount)
    updated = await invoice_repository.update_invoice(
        session,
        row.id,
        InvoiceUpdate(status=InvoiceStatus.PAID, payment=payment),
        user,
        event_type=InvoiceEventType.PAID,
        expected_updated_at=row.updated_at,
    )
    logger.info("invoice_paid", invoice_id=str(row.id), method=method, user_id=user.id)
    return updated


async def attach_payment_proof(
    session: AsyncSession,
    store: ObjectStore,
    invoice_id: str,
    file: PendingFile,
    user: SessionUser,
) -> Invoice:
    row = await invoice_repository.get_invoice_row(session, invoice_id)
    if row.status != InvoiceStatus.PAID.value:
        raise TransitionError(row.status, "attach a payment proof to")
    _require_valid_file(file)

    proof = await attachment_service.upload_payment_proof(store, file, str(row.id))
    try:
        return await invoice_repository.update_invoice(
            session,
            row.id,
            InvoiceUpdate(payment_proof=proof),
            user,
            event_type=InvoiceEventType.UPDATED,
        )
    except Exception:
        await attachment_service.delete_file(store, proof.storage_path)
        raise
