"""Supplier validation and CRUD. Suppliers carry no event log."""

import re
from dataclasses import dataclass, field
from typing import Optional, Union

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from pharmapay.database import parse_uuid, utcnow
from pharmapay.models.invoice import Invoice
from pharmapay.models.supplier import Supplier
from pharmapay.schemas.supplier import SupplierCreate, SupplierUpdate
from pharmapay.services.errors import (
    SupplierInUseError,
    SupplierNotFoundError,
    ValidationError,
)

logger = structlog.get_logger()

PHONE_REGEX = re.compile(r"^\+?[0-9][0-9 ()-]{5,18}$")


@dataclass
class SupplierValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)


def _is_email(value: str) -> bool:
    try:
        validate_email(value, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def validate_supplier(data: Union[SupplierCreate, SupplierUpdate], partial: bool = False) -> SupplierValidation:
    errors: list[str] = []

    if not partial or "name" in data.model_fields_set:
        if not data.name or not data.name.strip():
            errors.append("Supplier name is required")
    if data.email and not _is_email(data.email.strip()):
        errors.append("Supplier email is not valid")
    if data.phone and not PHONE_REGEX.match(data.phone.strip()):
        errors.append("Supplier phone is not valid")

    return SupplierValidation(valid=not errors, errors=errors)


async def get_supplier(session: AsyncSession, supplier_id) -> Optional[Supplier]:
    supplier_uuid = parse_uuid(supplier_id)
    if supplier_uuid is None:
        return None
    result = await session.execute(select(Supplier).where(Supplier.id == supplier_uuid))
    return result.scalar_one_or_none()


async def list_suppliers(session: AsyncSession, active_only: bool = False) -> list[Supplier]:
    q = select(Supplier)
    if active_only:
        q = q.where(Supplier.active == True)  # noqa: E712
    result = await session.execute(q.order_by(Supplier.name))
    return list(result.scalars().all())


async def create_supplier(session: AsyncSession, data: SupplierCreate) -> Supplier:
    validation = validate_supplier(data)
    if not validation.valid:
        raise ValidationError(validation.errors)

    now = utcnow()
    supplier = Supplier(
        name=data.name.strip(),
        email=data.email.strip() if data.email else None,
        phone=data.phone.strip() if data.phone else None,
        active=data.active,
        created_at=now,
        updated_at=now,
    )
    session.add(supplier)
    await session.flush()
    logger.info("supplier_created", supplier_id=str(supplier.id))
    return supplier


async def update_supplier(session: AsyncSession, supplier_id, data: SupplierUpdate) -> Supplier:
    supplier = await get_supplier(session, supplier_id)
    if not supplier:
        raise SupplierNotFoundError(str(supplier_id))

    validation = validate_supplier(data, partial=True)
    if not validation.valid:
        raise ValidationError(validation.errors)

    for name in data.model_fields_set:
        value = getattr(data, name)
        if isinstance(value, str):
            value = value.strip() or None
        if name in ("name", "active") and value is None:
            continue
        setattr(supplier, name, value)
    supplier.updated_at = utcnow()
    await session.flush()
    # Existing invoices keep their supplier_name_snapshot.
    logger.info("supplier_updated", supplier_id=str(supplier.id), fields=sorted(data.model_fields_set))
    return supplier


async def delete_supplier(session: AsyncSession, supplier_id):
    supplier = await get_supplier(session, supplier_id)
    if not supplier:
        raise SupplierNotFoundError(str(supplier_id))

    invoice_count = (
        await session.execute(
            select(func.count(Invoice.id)).where(Invoice.supplier_id == supplier.id)
        )
    ).scalar() or 0
    if invoice_count:
        raise SupplierInUseError(str(supplier.id), invoice_count)

    await session.delete(supplier)
    await session.flush()
    logger.info("supplier_deleted", supplier_id=str(supplier.id))
