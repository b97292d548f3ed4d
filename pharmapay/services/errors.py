"""Domain exceptions raised by the invoice, attachment and supplier services.

Routes translate these into structured HTTP errors; services never build
HTTP responses themselves.
"""

from typing import Optional


class PharmaPayError(Exception):
    code = "PHARMAPAY_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PharmaPayError):
    code = "VALIDATION_ERROR"

    def __init__(self, errors: list[str]):
        super().__init__(", ".join(errors) or "Validation failed")
        self.errors = list(errors)


class DuplicateInvoiceWarning(PharmaPayError):
    """Advisory: another invoice already uses this number for the supplier."""

    code = "INVOICE_DUPLICATE"

    def __init__(self, supplier_id: str, invoice_number: str):
        super().__init__(
            f"Invoice {invoice_number} already exists for this supplier"
        )
        self.supplier_id = supplier_id
        self.invoice_number = invoice_number


class UploadError(PharmaPayError):
    code = "ATTACHMENT_UPLOAD_FAILED"


class StorageNotFoundError(UploadError):
    code = "STORAGE_BUCKET_NOT_FOUND"

    def __init__(self, bucket: str, fallback: Optional[str] = None):
        message = f"Storage bucket not found ({bucket}). Check STORAGE_BUCKET"
        if fallback and fallback != bucket:
            message += f" or use the '{fallback}' bucket"
        super().__init__(message + ".")
        self.bucket = bucket


class TransitionError(PharmaPayError):
    code = "INVOICE_INVALID_TRANSITION"

    def __init__(self, current: str, action: str):
        super().__init__(f"Cannot {action} an invoice in status '{current}'")
        self.current = current
        self.action = action


class InvoiceNotFoundError(PharmaPayError):
    code = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        super().__init__("Invoice not found")
        self.invoice_id = invoice_id


class SupplierNotFoundError(PharmaPayError):
    code = "SUPPLIER_NOT_FOUND"

    def __init__(self, supplier_id: str):
        super().__init__("Supplier not found")
        self.supplier_id = supplier_id


class ConflictError(PharmaPayError):
    code = "INVOICE_CONFLICT"

    def __init__(self, invoice_id: str):
        super().__init__("Invoice was modified by someone else; reload and retry")
        self.invoice_id = invoice_id


class AttachmentNotSavedError(PharmaPayError):
    """The invoice row was written but its file could not be stored."""

    code = "INVOICE_SAVED_ATTACHMENT_FAILED"

    def __init__(self, invoice_id: str, cause: UploadError):
        super().__init__(f"Invoice saved but the file was not: {cause.message}")
        self.invoice_id = invoice_id
        self.cause = cause


class SupplierInUseError(PharmaPayError):
    code = "SUPPLIER_IN_USE"

    def __init__(self, supplier_id: str, invoice_count: int):
        super().__init__(
            f"Supplier has {invoice_count} invoice(s) and cannot be deleted; deactivate it instead"
        )
        self.supplier_id = supplier_id
        self.invoice_count = invoice_count


class UserNotFoundError(PharmaPayError):
    code = "USER_NOT_FOUND"

    def __init__(self, user_id: str):
        super().__init__("User not found")
        self.user_id = user_id
