"""
API tests for /auth, /api/v1/suppliers, /api/v1/users, /internal/jobs and /health.
"""

from datetime import timedelta

import pytest

from pharmapay.config import settings
from pharmapay.database import utcnow
from pharmapay.services.storage import StoredObject


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_login_refresh_and_me(client, staff_user):
    login = await client.post("/auth/login", json={"email": "ana@farmacia.com.br", "password": "secret123"})
    assert login.status_code == 200
    tokens = login.json()
    assert tokens["token_type"] == "Bearer"

    me = await client.get("/auth/me", headers={"Authorization": f"Bearer {tokens['access_token']}"})
    assert me.json()["email"] == "ana@farmacia.com.br"
    assert me.json()["role"] == "staff"

    refreshed = await client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert refreshed.status_code == 200


@pytest.mark.asyncio
async def test_login_wrong_password(client, staff_user):
    response = await client.post("/auth/login", json={"email": "ana@farmacia.com.br", "password": "nope"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_INVALID_CREDENTIALS"


@pytest.mark.asyncio
async def test_refresh_rejects_access_token(client, staff_headers):
    access = staff_headers["Authorization"].split(" ", 1)[1]
    response = await client.post("/auth/refresh", json={"refresh_token": access})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_change_password(client, staff_user, staff_headers):
    changed = await client.post(
        "/auth/change-password",
        json={"current_password": "secret123", "new_password": "novasenha"},
        headers=staff_headers,
    )
    assert changed.status_code == 204

    login = await client.post("/auth/login", json={"email": "ana@farmacia.com.br", "password": "novasenha"})
    assert login.status_code == 200


@pytest.mark.asyncio
async def test_invalid_token(client):
    response = await client.get("/auth/me", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_TOKEN_INVALID"


# ---------------------------------------------------------------------------
# Suppliers
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_supplier_crud(client, staff_headers, manager_headers):
    created = await client.post(
        "/api/v1/suppliers", json={"name": "Lab Norte", "email": "lab@norte.com.br"}, headers=staff_headers
    )
    assert created.status_code == 201
    supplier_id = created.json()["id"]

    updated = await client.patch(
        f"/api/v1/suppliers/{supplier_id}", json={"active": False}, headers=staff_headers
    )
    assert updated.json()["active"] is False

    active = await client.get("/api/v1/suppliers", params={"active_only": "true"}, headers=staff_headers)
    assert supplier_id not in [s["id"] for s in active.json()]

    assert (await client.delete(f"/api/v1/suppliers/{supplier_id}", headers=staff_headers)).status_code == 403
    assert (await client.delete(f"/api/v1/suppliers/{supplier_id}", headers=manager_headers)).status_code == 204


@pytest.mark.asyncio
async def test_supplier_invalid_email(client, staff_headers):
    response = await client.post(
        "/api/v1/suppliers", json={"name": "Lab", "email": "invalid"}, headers=staff_headers
    )
    assert response.status_code == 422
    assert response.json()["error"]["details"] == ["Supplier email is not valid"]


@pytest.mark.asyncio
async def test_supplier_in_use_cannot_be_deleted(client, supplier, staff_headers, manager_headers):
    await client.post(
        "/api/v1/invoices",
        data={"supplier_id": str(supplier.id), "invoice_number": "NF-1", "total_amount": "10"},
        headers=staff_headers,
    )

    response = await client.delete(f"/api/v1/suppliers/{supplier.id}", headers=manager_headers)

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "SUPPLIER_IN_USE"
    invoices = await client.get(f"/api/v1/suppliers/{supplier.id}/invoices", headers=staff_headers)
    assert [i["invoice_number"] for i in invoices.json()] == ["NF-1"]


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_user_admin_is_manager_only(client, staff_headers):
    response = await client.get("/api/v1/users", headers=staff_headers)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_manager_manages_users(client, manager_user, manager_headers):
    created = await client.post(
        "/api/v1/users",
        json={"name": "Caio", "email": "caio@farmacia.com.br", "password": "segredo1"},
        headers=manager_headers,
    )
    assert created.status_code == 201
    user_id = created.json()["id"]

    promoted = await client.patch(
        f"/api/v1/users/{user_id}/role", json={"role": "manager"}, headers=manager_headers
    )
    assert promoted.json()["role"] == "manager"

    listed = await client.get("/api/v1/users", headers=manager_headers)
    assert {u["email"] for u in listed.json()} == {"caio@farmacia.com.br", "marta@farmacia.com.br"}

    assert (await client.delete(f"/api/v1/users/{user_id}", headers=manager_headers)).status_code == 204
    own = await client.delete(f"/api/v1/users/{manager_user.id}", headers=manager_headers)
    assert own.status_code == 400


@pytest.mark.asyncio
async def test_user_with_invalid_email_is_rejected(client, manager_headers):
    response = await client.post(
        "/api/v1/users",
        json={"name": "Caio", "email": "not-an-email", "password": "segredo1"},
        headers=manager_headers,
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    listed = await client.get("/api/v1/users", headers=manager_headers)
    assert "not-an-email" not in {u["email"] for u in listed.json()}


# ---------------------------------------------------------------------------
# Internal jobs / health
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sweep_requires_secret(client, store, monkeypatch):
    monkeypatch.setattr(settings, "INTERNAL_JOB_SECRET", "s3cret")
    store.list_objects.return_value = [
        StoredObject(key="invoices/ghost/x.pdf", last_modified=utcnow() - timedelta(days=1)),
    ]

    denied = await client.post("/internal/jobs/sweep-orphaned-attachments")
    assert denied.status_code == 403

    response = await client.post(
        "/internal/jobs/sweep-orphaned-attachments", headers={"X-Internal-Secret": "s3cret"}
    )
    assert response.status_code == 200
    assert response.json()["keys"] == ["invoices/ghost/x.pdf"]


@pytest.mark.asyncio
async def test_health(client, store):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["checks"] == {"db": "ok", "storage": "ok"}
    assert "X-Request-ID" in response.headers
