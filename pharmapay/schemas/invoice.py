from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from pharmapay.schemas.attachment import FileAttachment


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    PAID = "paid"


class InvoiceEventType(str, Enum):
    CREATED = "CREATED"
    SUBMITTED = "SUBMITTED"
    PAID = "PAID"
    UPDATED = "UPDATED"


class PaymentData(BaseModel):
    paid_at: datetime
    method: str
    amount_paid: Decimal


class InvoiceCreate(BaseModel):
    supplier_id: str
    supplier_name_snapshot: str = ""
    invoice_number: str = Field(..., min_length=1, max_length=100)
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    total_amount: Decimal = Field(..., ge=0)
    status: InvoiceStatus = InvoiceStatus.DRAFT
    notes: str = ""
    attachment: Optional[FileAttachment] = None


class InvoiceUpdate(BaseModel):
    """Partial update; only fields explicitly set are written.

    ``attachment=None`` set explicitly clears the attachment, while leaving
    the field unset keeps it.
    """

    supplier_id: Optional[str] = None
    supplier_name_snapshot: Optional[str] = None
    invoice_number: Optional[str] = Field(None, min_length=1, max_length=100)
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    total_amount: Optional[Decimal] = Field(None, ge=0)
    status: Optional[InvoiceStatus] = None
    notes: Optional[str] = None
    attachment: Optional[FileAttachment] = None
    payment: Optional[PaymentData] = None
    payment_proof: Optional[FileAttachment] = None


class InvoiceResponse(BaseModel):
    id: str
    supplier_id: str
    supplier_name_snapshot: str
    invoice_number: str
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    total_amount: Decimal
    status: InvoiceStatus
    attachment: Optional[FileAttachment] = None
    notes: str = ""
    created_by: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    payment: Optional[PaymentData] = None
    payment_proof: Optional[FileAttachment] = None


class InvoiceEventResponse(BaseModel):
    id: str
    invoice_id: str
    type: InvoiceEventType
    by: str
    at: datetime
    details: dict[str, Any] = Field(default_factory=dict)


class MarkPaidRequest(BaseModel):
    method: str = Field(..., min_length=1, max_length=50)


class SubmissionErrorsResponse(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


class DuplicateCheckResponse(BaseModel):
    duplicate: bool
