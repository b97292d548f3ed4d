from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from pharmapay.database import get_db
from pharmapay.middleware.auth import get_current_user
from pharmapay.middleware.authorization import require_roles
from pharmapay.schemas.attachment import DownloadUrlResponse, PendingFile
from pharmapay.schemas.auth import SessionUser
from pharmapay.schemas.common import PaginatedResponse, build_pagination, error_body
from pharmapay.schemas.invoice import (
    DuplicateCheckResponse,
    InvoiceCreate,
    InvoiceEventResponse,
    InvoiceResponse,
    InvoiceStatus,
    InvoiceUpdate,
    MarkPaidRequest,
    SubmissionErrorsResponse,
)
from pharmapay.services import attachment_service, invoice_repository, invoice_service
from pharmapay.services.errors import (
    AttachmentNotSavedError,
    DuplicateInvoiceWarning,
    InvoiceNotFoundError,
)
from pharmapay.services.storage import ObjectStore, get_object_store

logger = structlog.get_logger()
router = APIRouter()


async def _to_pending_file(upload: Optional[UploadFile]) -> Optional[PendingFile]:
    if upload is None or not upload.filename:
        return None
    data = await upload.read()
    return PendingFile(
        file_name=upload.filename,
        content_type=upload.content_type or "application/octet-stream",
        data=data,
    )


async def _load(db: AsyncSession, invoice_id: str) -> InvoiceResponse:
    invoice = await invoice_repository.get_invoice(db, invoice_id)
    if invoice is None:
        raise InvoiceNotFoundError(invoice_id)
    return invoice


@router.get("", response_model=PaginatedResponse[InvoiceResponse])
async def list_invoices(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    inv_status: Optional[InvoiceStatus] = Query(None, alias="status"),
    supplier_id: Optional[str] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    current_user: SessionUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    total = await invoice_repository.count_invoices(db, inv_status, supplier_id, search)
    items = await invoice_repository.list_invoices(
        db,
        status=inv_status,
        supplier_id=supplier_id,
        search=search,
        offset=(page - 1) * limit,
        limit=limit,
    )
    return PaginatedResponse(data=items, pagination=build_pagination(page, limit, total))


@router.get("/duplicate-check", response_model=DuplicateCheckResponse)
async def duplicate_check(
    supplier_id: str = Query(...),
    invoice_number: str = Query(...),
    exclude_invoice_id: Optional[str] = Query(None),
    current_user: SessionUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    duplicate = await invoice_service.check_duplicate_invoice(
        db, supplier_id, invoice_number, exclude_invoice_id
    )
    return DuplicateCheckResponse(duplicate=duplicate)


@router.get("/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(
    invoice_id: str,
    current_user: SessionUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await _load(db, invoice_id)


@router.get("/{invoice_id}/validation", response_model=SubmissionErrorsResponse)
async def validate_invoice(
    invoice_id: str,
    current_user: SessionUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Submission readiness, reported without changing the invoice."""
    invoice = await _load(db, invoice_id)
    result = invoice_service.validate_invoice_for_submission(invoice)
    return SubmissionErrorsResponse(valid=result.valid, errors=result.errors)


@router.post("", response_model=InvoiceResponse, status_code=status.HTTP_201_CREATED)
async def create_invoice(
    supplier_id: str = Form(...),
    invoice_number: str = Form(..., min_length=1, max_length=100),
    total_amount: Decimal = Form(..., ge=0),
    invoice_date: Optional[date] = Form(None),
    due_date: Optional[date] = Form(None),
    notes: str = Form(""),
    submit: bool = Form(False),
    allow_duplicate: bool = Form(False),
    file: Optional[UploadFile] = File(None),
    current_user: SessionUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
):
    if not allow_duplicate and await invoice_service.check_duplicate_invoice(
        db, supplier_id, invoice_number
    ):
        raise DuplicateInvoiceWarning(supplier_id, invoice_number)

    data = InvoiceCreate(
        supplier_id=supplier_id,
        invoice_number=invoice_number,
        invoice_date=invoice_date,
        due_date=due_date,
        total_amount=total_amount,
        notes=notes,
        status=InvoiceStatus.SUBMITTED if submit else InvoiceStatus.DRAFT,
    )
    pending = await _to_pending_file(file)

    try:
        invoice_id = await invoice_service.save_new_invoice(db, store, data, current_user, pending)
    except AttachmentNotSavedError as e:
        # Keep the row: the caller is told the invoice exists without its file.
        await db.commit()
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=error_body(e.code, e.message, {"invoice_id": e.invoice_id}),
        )

    await invoice_repository.commit_and_remove_stale(db, store)
    return await _load(db, invoice_id)


@router.patch("/{invoice_id}", response_model=InvoiceResponse)
async def update_invoice(
    invoice_id: str,
    supplier_id: Optional[str] = Form(None),
    invoice_number: Optional[str] = Form(None, min_length=1, max_length=100),
    total_amount: Optional[Decimal] = Form(None, ge=0),
    invoice_date: Optional[date] = Form(None),
    due_date: Optional[date] = Form(None),
    notes: Optional[str] = Form(None),
    remove_attachment: bool = Form(False),
    expected_updated_at: Optional[datetime] = Form(None),
    allow_duplicate: bool = Form(False),
    file: Optional[UploadFile] = File(None),
    current_user: SessionUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
):
    fields = {
        "supplier_id": supplier_id,
        "invoice_number": invoice_number,
        "total_amount": total_amount,
        "invoice_date": invoice_date,
        "due_date": due_date,
        "notes": notes,
    }
    values = {name: value for name, value in fields.items() if value is not None}
    pending = await _to_pending_file(file)
    if remove_attachment and pending is None:
        values["attachment"] = None

    if not allow_duplicate and ("supplier_id" in values or "invoice_number" in values):
        current = await _load(db, invoice_id)
        check_supplier = values.get("supplier_id", current.supplier_id)
        check_number = values.get("invoice_number", current.invoice_number)
        if await invoice_service.check_duplicate_invoice(db, check_supplier, check_number, invoice_id):
            raise DuplicateInvoiceWarning(check_supplier, check_number)

    await invoice_service.save_invoice_changes(
        db,
        store,
        invoice_id,
        InvoiceUpdate(**values),
        current_user,
        file=pending,
        expected_updated_at=expected_updated_at,
    )
    await invoice_repository.commit_and_remove_stale(db, store)
    return await _load(db, invoice_id)


@router.post("/{invoice_id}/submit", response_model=InvoiceResponse)
async def submit_invoice(
    invoice_id: str,
    current_user: SessionUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
):
    await invoice_service.submit_invoice(db, invoice_id, current_user)
    await invoice_repository.commit_and_remove_stale(db, store)
    return await _load(db, invoice_id)


@router.post("/{invoice_id}/mark-paid", response_model=InvoiceResponse)
async def mark_paid(
    invoice_id: str,
    body: MarkPaidRequest,
    current_user: SessionUser = Depends(get_current_user),
    _auth: None = Depends(require_roles("manager")),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
):
    await invoice_service.mark_as_paid(db, invoice_id, body.method, current_user)
    await invoice_repository.commit_and_remove_stale(db, store)
    return await _load(db, invoice_id)


@router.post("/{invoice_id}/payment-proof", response_model=InvoiceResponse)
async def upload_payment_proof(
    invoice_id: str,
    file: UploadFile = File(...),
    current_user: SessionUser = Depends(get_current_user),
    _auth: None = Depends(require_roles("manager")),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
):
    pending = await _to_pending_file(file)
    if pending is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=error_body("VALIDATION_ERROR", "A file is required"),
        )
    await invoice_service.attach_payment_proof(db, store, invoice_id, pending, current_user)
    await invoice_repository.commit_and_remove_stale(db, store)
    return await _load(db, invoice_id)


@router.delete("/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_invoice(
    invoice_id: str,
    current_user: SessionUser = Depends(get_current_user),
    _auth: None = Depends(require_roles("manager")),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
):
    await invoice_repository.delete_invoice(db, store, invoice_id)
    await db.commit()
    logger.info("invoice_deleted_by_user", invoice_id=invoice_id, user_id=current_user.id)


@router.get("/{invoice_id}/events", response_model=list[InvoiceEventResponse])
async def list_invoice_events(
    invoice_id: str,
    current_user: SessionUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _load(db, invoice_id)
    return await invoice_repository.get_invoice_events(db, invoice_id)


@router.get("/{invoice_id}/download-url", response_model=DownloadUrlResponse)
async def get_download_url(
    invoice_id: str,
    kind: str = Query("attachment", pattern="^(attachment|payment_proof)$"),
    current_user: SessionUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
):
    invoice = await _load(db, invoice_id)
    attachment = invoice.attachment if kind == "attachment" else invoice.payment_proof
    if attachment is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_body("ATTACHMENT_NOT_FOUND", "Invoice has no such file"),
        )
    url = await attachment_service.get_download_url(store, attachment)
    return DownloadUrlResponse(url=url, file_name=attachment.file_name)
