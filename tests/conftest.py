import uuid
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pharmapay.config import settings
from pharmapay.database import Base, build_engine, get_db, utcnow
from pharmapay.main import app
from pharmapay.models.supplier import Supplier
from pharmapay.models.user import User
from pharmapay.schemas.auth import SessionUser
from pharmapay.services.auth_service import create_access_token, hash_password
from pharmapay.services.storage import get_object_store

PUBLIC_URL = "http://localhost:54321"


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'pharmapay-test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


# ---------------------------------------------------------------------------
# Object storage
# ---------------------------------------------------------------------------


@pytest.fixture
def store():
    """Object store double: every bucket exists and every call succeeds."""
    store = MagicMock()
    store.public_url = PUBLIC_URL
    store.upload.side_effect = lambda bucket, key, *args, **kwargs: key
    store.get_public_url.side_effect = (
        lambda bucket, key: f"{PUBLIC_URL}/storage/v1/object/public/{bucket}/{key}"
    )
    store.create_signed_url.side_effect = lambda bucket, key, expires_in=3600: (
        f"{PUBLIC_URL}/storage/v1/object/sign/{bucket}/{key}?token=signed&ttl={expires_in}"
    )
    store.remove.return_value = None
    store.list_objects.return_value = []
    return store


@pytest.fixture
def two_buckets(monkeypatch):
    """Configure a primary bucket distinct from the default fallback."""
    monkeypatch.setattr(settings, "STORAGE_BUCKET", "pharmacy-docs")
    monkeypatch.setattr(settings, "STORAGE_DEFAULT_BUCKET", "invoices")
    return ["pharmacy-docs", "invoices"]


# ---------------------------------------------------------------------------
# Users and suppliers
# ---------------------------------------------------------------------------


async def _add_user(session_factory, name: str, email: str, role: str) -> SessionUser:
    async with session_factory() as s:
        user = User(
            id=uuid.uuid4(),
            name=name,
            email=email,
            password_hash=hash_password("secret123"),
            role=role,
            active=True,
            created_at=utcnow(),
        )
        s.add(user)
        await s.commit()
        return SessionUser(id=str(user.id), display_name=name, email=email, role=role)


@pytest.fixture
async def staff_user(session_factory) -> SessionUser:
    return await _add_user(session_factory, "Ana Staff", "ana@farmacia.com.br", "staff")


@pytest.fixture
async def manager_user(session_factory) -> SessionUser:
    return await _add_user(session_factory, "Marta Manager", "marta@farmacia.com.br", "manager")


@pytest.fixture
async def supplier(session_factory) -> Supplier:
    async with session_factory() as s:
        supplier = Supplier(
            id=uuid.uuid4(),
            name="Distribuidora Saude",
            email="vendas@saude.com.br",
            active=True,
            created_at=utcnow(),
            updated_at=utcnow(),
        )
        s.add(supplier)
        await s.commit()
        return supplier


@pytest.fixture
def invoice_fields(supplier):
    return {
        "supplier_id": str(supplier.id),
        "invoice_number": "NF-1001",
        "total_amount": Decimal("150.00"),
    }


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


def auth_headers_for(user: SessionUser) -> dict:
    token = create_access_token(
        user_id=user.id, name=user.display_name, role=user.role, email=user.email
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def staff_headers(staff_user):
    return auth_headers_for(staff_user)


@pytest.fixture
def manager_headers(manager_user):
    return auth_headers_for(manager_user)


@pytest.fixture
async def client(session_factory, store):
    async def _get_test_db():
        async with session_factory() as s:
            try:
                yield s
                await s.commit()
            except Exception:
                await s.rollback()
                raise

    app.dependency_overrides[get_db] = _get_test_db
    app.dependency_overrides[get_object_store] = lambda: store
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
