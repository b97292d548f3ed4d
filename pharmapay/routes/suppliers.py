from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from pharmapay.database import get_db
from pharmapay.middleware.auth import get_current_user
from pharmapay.middleware.authorization import require_roles
from pharmapay.models.supplier import Supplier
from pharmapay.schemas.auth import SessionUser
from pharmapay.schemas.invoice import InvoiceResponse
from pharmapay.schemas.supplier import SupplierCreate, SupplierResponse, SupplierUpdate
from pharmapay.services import invoice_repository, supplier_service
from pharmapay.services.errors import SupplierNotFoundError

logger = structlog.get_logger()
router = APIRouter()


def _to_response(supplier: Supplier) -> SupplierResponse:
    return SupplierResponse(
        id=str(supplier.id),
        name=supplier.name,
        email=supplier.email,
        phone=supplier.phone,
        active=supplier.active,
        created_at=supplier.created_at,
    )


@router.get("", response_model=list[SupplierResponse])
async def list_suppliers(
    active_only: bool = Query(False),
    current_user: SessionUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    suppliers = await supplier_service.list_suppliers(db, active_only=active_only)
    return [_to_response(s) for s in suppliers]


@router.get("/{supplier_id}", response_model=SupplierResponse)
async def get_supplier(
    supplier_id: str,
    current_user: SessionUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    supplier = await supplier_service.get_supplier(db, supplier_id)
    if not supplier:
        raise SupplierNotFoundError(supplier_id)
    return _to_response(supplier)


@router.get("/{supplier_id}/invoices", response_model=list[InvoiceResponse])
async def list_supplier_invoices(
    supplier_id: str,
    current_user: SessionUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if not await supplier_service.get_supplier(db, supplier_id):
        raise SupplierNotFoundError(supplier_id)
    return await invoice_repository.list_invoices_by_supplier(db, supplier_id)


@router.post("", response_model=SupplierResponse, status_code=status.HTTP_201_CREATED)
async def create_supplier(
    body: SupplierCreate,
    current_user: SessionUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    supplier = await supplier_service.create_supplier(db, body)
    await db.commit()
    return _to_response(supplier)


@router.patch("/{supplier_id}", response_model=SupplierResponse)
async def update_supplier(
    supplier_id: str,
    body: SupplierUpdate,
    current_user: SessionUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    supplier = await supplier_service.update_supplier(db, supplier_id, body)
    await db.commit()
    return _to_response(supplier)


@router.delete("/{supplier_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_supplier(
    supplier_id: str,
    current_user: SessionUser = Depends(get_current_user),
    _auth: None = Depends(require_roles("manager")),
    db: AsyncSession = Depends(get_db),
):
    await supplier_service.delete_supplier(db, supplier_id)
    await db.commit()
