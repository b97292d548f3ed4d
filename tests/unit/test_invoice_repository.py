"""
Unit tests for pharmapay/services/invoice_repository.py against SQLite.

Covers:
  - row <-> model mapping (creator name join, payment only when paid)
  - partial updates, stale attachment removal after commit, payment clearing
  - optimistic concurrency on ``expected_updated_at``
  - event logging, including a failing event write not undoing the update
  - delete removes stored files and cascades events
  - list filters and counts
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from structlog.testing import capture_logs

from pharmapay.database import utcnow
from pharmapay.models.invoice import InvoiceEvent
from pharmapay.schemas.attachment import FileAttachment, PendingFile
from pharmapay.schemas.invoice import (
    InvoiceCreate,
    InvoiceEventType,
    InvoiceStatus,
    InvoiceUpdate,
    PaymentData,
)
from pharmapay.services import invoice_repository
from pharmapay.services.errors import ConflictError, InvoiceNotFoundError, ValidationError


def _stored(invoice_id: str, name: str = "nota.pdf") -> FileAttachment:
    path = f"invoices/{invoice_id}/{name}"
    return FileAttachment(
        url=f"http://localhost:54321/storage/v1/object/public/invoices/{path}",
        file_name=name,
        storage_path=path,
    )


async def _create(session, invoice_fields, user, **overrides) -> str:
    data = InvoiceCreate(supplier_name_snapshot="Distribuidora Saude", **{**invoice_fields, **overrides})
    invoice_id = await invoice_repository.create_invoice(session, data, user)
    await session.commit()
    return invoice_id


# ---------------------------------------------------------------------------
# create / read
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_maps_back_with_creator_name(session, invoice_fields, staff_user):
    invoice_id = await _create(session, invoice_fields, staff_user)

    invoice = await invoice_repository.get_invoice(session, invoice_id)

    assert invoice.id == invoice_id
    assert invoice.status == InvoiceStatus.DRAFT
    assert invoice.total_amount == Decimal("150.00")
    assert invoice.supplier_name_snapshot == "Distribuidora Saude"
    assert invoice.created_by == "Ana Staff"
    assert invoice.payment is None
    assert invoice.attachment is None


@pytest.mark.asyncio
async def test_create_logs_created_event(session, invoice_fields, staff_user):
    invoice_id = await _create(session, invoice_fields, staff_user)

    events = await invoice_repository.get_invoice_events(session, invoice_id)

    assert [e.type for e in events] == [InvoiceEventType.CREATED]
    assert events[0].by == "Ana Staff"


@pytest.mark.asyncio
async def test_create_does_not_persist_preview_attachment(session, invoice_fields, staff_user):
    invoice_id = await _create(
        session, invoice_fields, staff_user, attachment=FileAttachment(url="blob:http://localhost/1")
    )
    invoice = await invoice_repository.get_invoice(session, invoice_id)
    assert invoice.attachment is None


@pytest.mark.asyncio
async def test_get_missing_invoice(session):
    assert await invoice_repository.get_invoice(session, "not-a-uuid") is None
    with pytest.raises(InvoiceNotFoundError):
        await invoice_repository.get_invoice_row(session, "00000000-0000-0000-0000-000000000000")


@pytest.mark.asyncio
async def test_create_requires_supplier(session, staff_user):
    data = InvoiceCreate(supplier_id="", invoice_number="NF-1", total_amount=Decimal("1"))
    with pytest.raises(ValidationError):
        await invoice_repository.create_invoice(session, data, staff_user)


# ---------------------------------------------------------------------------
# update
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_update_writes_only_set_fields(session, store, invoice_fields, staff_user):
    invoice_id = await _create(session, invoice_fields, staff_user, notes="original")

    await invoice_repository.update_invoice(
        session, invoice_id, InvoiceUpdate(total_amount=Decimal("99.90")), staff_user
    )
    invoice = await invoice_repository.get_invoice(session, invoice_id)

    assert invoice.total_amount == Decimal("99.90")
    assert invoice.notes == "original"
    assert invoice.invoice_number == "NF-1001"


@pytest.mark.asyncio
async def test_replacing_attachment_removes_old_object(session, store, invoice_fields, staff_user):
    invoice_id = await _create(session, invoice_fields, staff_user)
    await invoice_repository.update_invoice(
        session, invoice_id, InvoiceUpdate(attachment=_stored(invoice_id, "v1.pdf")), staff_user
    )
    await invoice_repository.commit_and_remove_stale(session, store)
    store.remove.assert_not_called()

    await invoice_repository.update_invoice(
        session, invoice_id, InvoiceUpdate(attachment=_stored(invoice_id, "v2.pdf")), staff_user
    )
    # Nothing is deleted before the row change is committed.
    store.remove.assert_not_called()
    assert invoice_repository.pending_stale_paths(session) == [f"invoices/{invoice_id}/v1.pdf"]

    await invoice_repository.commit_and_remove_stale(session, store)

    store.remove.assert_called_once_with("invoices", [f"invoices/{invoice_id}/v1.pdf"])
    assert invoice_repository.pending_stale_paths(session) == []
    invoice = await invoice_repository.get_invoice(session, invoice_id)
    assert invoice.attachment.storage_path == f"invoices/{invoice_id}/v2.pdf"


@pytest.mark.asyncio
async def test_clearing_attachment_removes_object(session, store, invoice_fields, staff_user):
    invoice_id = await _create(session, invoice_fields, staff_user, attachment=None)
    await invoice_repository.update_invoice(
        session, invoice_id, InvoiceUpdate(attachment=_stored(invoice_id)), staff_user
    )

    await invoice_repository.update_invoice(
        session, invoice_id, InvoiceUpdate(attachment=None), staff_user
    )
    await invoice_repository.commit_and_remove_stale(session, store)

    store.remove.assert_called_once_with("invoices", [f"invoices/{invoice_id}/nota.pdf"])
    assert (await invoice_repository.get_invoice(session, invoice_id)).attachment is None


@pytest.mark.asyncio
async def test_failed_commit_keeps_replaced_object(session, store, invoice_fields, staff_user, monkeypatch):
    invoice_id = await _create(session, invoice_fields, staff_user)
    await invoice_repository.update_invoice(
        session, invoice_id, InvoiceUpdate(attachment=_stored(invoice_id, "v1.pdf")), staff_user
    )
    await invoice_repository.commit_and_remove_stale(session, store)

    await invoice_repository.update_invoice(
        session, invoice_id, InvoiceUpdate(attachment=_stored(invoice_id, "v2.pdf")), staff_user
    )

    async def failing_commit():
        raise OperationalError("COMMIT", {}, Exception("database is locked"))

    monkeypatch.setattr(session, "commit", failing_commit)
    with pytest.raises(OperationalError):
        await invoice_repository.commit_and_remove_stale(session, store)
    monkeypatch.undo()
    await session.rollback()

    store.remove.assert_not_called()
    assert invoice_repository.pending_stale_paths(session) == []
    invoice = await invoice_repository.get_invoice(session, invoice_id)
    assert invoice.attachment.storage_path == f"invoices/{invoice_id}/v1.pdf"


@pytest.mark.asyncio
async def test_pending_file_attachment_is_not_stored(session, store, invoice_fields, staff_user):
    invoice_id = await _create(session, invoice_fields, staff_user)
    pending = FileAttachment(
        file_name="nota.pdf",
        file=PendingFile(file_name="nota.pdf", content_type="application/pdf", data=b"1"),
    )

    await invoice_repository.update_invoice(
        session, invoice_id, InvoiceUpdate(attachment=pending), staff_user
    )

    assert (await invoice_repository.get_invoice(session, invoice_id)).attachment is None


@pytest.mark.asyncio
async def test_leaving_paid_status_clears_payment(session, store, invoice_fields, manager_user):
    invoice_id = await _create(session, invoice_fields, manager_user)
    payment = PaymentData(paid_at=utcnow(), method="pix", amount_paid=Decimal("150.00"))
    await invoice_repository.update_invoice(
        session, invoice_id, InvoiceUpdate(status=InvoiceStatus.PAID, payment=payment), manager_user
    )
    assert (await invoice_repository.get_invoice(session, invoice_id)).payment.method == "pix"

    await invoice_repository.update_invoice(
        session, invoice_id, InvoiceUpdate(status=InvoiceStatus.SUBMITTED), manager_user
    )

    invoice = await invoice_repository.get_invoice(session, invoice_id)
    assert invoice.status == InvoiceStatus.SUBMITTED
    assert invoice.payment is None


@pytest.mark.asyncio
async def test_stale_expected_updated_at_conflicts(session, store, invoice_fields, staff_user):
    invoice_id = await _create(session, invoice_fields, staff_user)
    row = await invoice_repository.get_invoice_row(session, invoice_id)
    seen = row.updated_at

    await invoice_repository.update_invoice(
        session, invoice_id, InvoiceUpdate(notes="first edit"), staff_user, expected_updated_at=seen
    )

    with pytest.raises(ConflictError):
        await invoice_repository.update_invoice(
            session,
            invoice_id,
            InvoiceUpdate(notes="second edit"),
            staff_user,
            expected_updated_at=seen - timedelta(seconds=1),
        )


@pytest.mark.asyncio
async def test_update_appends_requested_event(session, store, invoice_fields, staff_user):
    invoice_id = await _create(session, invoice_fields, staff_user)

    await invoice_repository.update_invoice(
        session, invoice_id, InvoiceUpdate(notes="x"), staff_user, event_type=InvoiceEventType.UPDATED
    )
    await invoice_repository.update_invoice(session, invoice_id, InvoiceUpdate(notes="y"), staff_user)

    types = [e.type for e in await invoice_repository.get_invoice_events(session, invoice_id)]
    assert sorted(types) == [InvoiceEventType.CREATED, InvoiceEventType.UPDATED]


@pytest.mark.asyncio
async def test_update_log_line_carries_event_type(session, invoice_fields, staff_user):
    invoice_id = await _create(session, invoice_fields, staff_user)

    with capture_logs() as logs:
        await invoice_repository.update_invoice(
            session, invoice_id, InvoiceUpdate(notes="x"), staff_user, event_type=InvoiceEventType.SUBMITTED
        )

    updated = [entry for entry in logs if entry["event"] == "invoice_updated"]
    assert updated[0]["event_type"] == "SUBMITTED"
    assert updated[0]["fields"] == ["notes"]


@pytest.mark.asyncio
async def test_event_failure_does_not_undo_update(session, store, invoice_fields, staff_user, monkeypatch):
    invoice_id = await _create(session, invoice_fields, staff_user)

    async def broken_log_event(*args, **kwargs):
        raise OperationalError("INSERT INTO invoice_events", {}, Exception("disk I/O error"))

    monkeypatch.setattr(invoice_repository, "log_event", broken_log_event)

    await invoice_repository.update_invoice(
        session, invoice_id, InvoiceUpdate(notes="kept"), staff_user, event_type=InvoiceEventType.UPDATED
    )
    await session.commit()

    assert (await invoice_repository.get_invoice(session, invoice_id)).notes == "kept"


@pytest.mark.asyncio
async def test_log_event_requires_valid_invoice_id(session, staff_user):
    with pytest.raises(ValidationError):
        await invoice_repository.log_event(session, "", InvoiceEventType.UPDATED, staff_user.id)


# ---------------------------------------------------------------------------
# delete
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_delete_removes_files_and_events(session, store, invoice_fields, staff_user):
    invoice_id = await _create(session, invoice_fields, staff_user)
    await invoice_repository.update_invoice(
        session,
        invoice_id,
        InvoiceUpdate(attachment=_stored(invoice_id), payment_proof=_stored(invoice_id, "pagamento-r.pdf")),
        staff_user,
    )

    await invoice_repository.delete_invoice(session, store, invoice_id)
    await session.commit()

    removed = [c.args[1] for c in store.remove.call_args_list]
    assert removed == [[f"invoices/{invoice_id}/nota.pdf"], [f"invoices/{invoice_id}/pagamento-r.pdf"]]
    assert await invoice_repository.get_invoice(session, invoice_id) is None
    events = (await session.execute(select(InvoiceEvent))).scalars().all()
    assert events == []


# ---------------------------------------------------------------------------
# list
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_list_filters(session, store, invoice_fields, staff_user):
    first = await _create(session, invoice_fields, staff_user, invoice_number="NF-1")
    await _create(session, invoice_fields, staff_user, invoice_number="NF-2")
    await invoice_repository.update_invoice(
        session, first, InvoiceUpdate(status=InvoiceStatus.SUBMITTED), staff_user
    )

    submitted = await invoice_repository.list_invoices(session, status=InvoiceStatus.SUBMITTED)
    assert [i.invoice_number for i in submitted] == ["NF-1"]

    found = await invoice_repository.list_invoices(session, search="nf-2")
    assert [i.invoice_number for i in found] == ["NF-2"]

    by_supplier = await invoice_repository.list_invoices_by_supplier(session, invoice_fields["supplier_id"])
    assert len(by_supplier) == 2
    assert await invoice_repository.count_invoices(session, supplier_id=invoice_fields["supplier_id"]) == 2


@pytest.mark.asyncio
async def test_list_pagination(session, invoice_fields, staff_user):
    for n in range(3):
        await _create(session, invoice_fields, staff_user, invoice_number=f"NF-{n}")

    page = await invoice_repository.list_invoices(session, offset=1, limit=1)
    assert len(page) == 1
    assert await invoice_repository.count_invoices(session) == 3


@pytest.mark.asyncio
async def test_resaving_same_attachment_deletes_nothing(session, store, invoice_fields, staff_user):
    invoice_id = await _create(session, invoice_fields, staff_user)
    await invoice_repository.update_invoice(
        session, invoice_id, InvoiceUpdate(attachment=_stored(invoice_id)), staff_user
    )

    await invoice_repository.update_invoice(
        session, invoice_id, InvoiceUpdate(attachment=_stored(invoice_id), notes="same file"), staff_user
    )

    store.remove.assert_not_called()
