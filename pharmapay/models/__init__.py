"""Central model registry: import all models so Alembic autodiscover works."""

from pharmapay.database import Base  # noqa: F401

from pharmapay.models.user import User  # noqa: F401
from pharmapay.models.supplier import Supplier  # noqa: F401
from pharmapay.models.invoice import Invoice, InvoiceEvent  # noqa: F401
