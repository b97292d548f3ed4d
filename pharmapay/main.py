import asyncio
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from pharmapay.config import settings
from pharmapay.database import close_db, get_db, init_db
from pharmapay.logging_config import setup_logging
from pharmapay.middleware.correlation import CorrelationIdMiddleware
from pharmapay.schemas.common import error_body
from pharmapay.services.errors import (
    AttachmentNotSavedError,
    ConflictError,
    DuplicateInvoiceWarning,
    InvoiceNotFoundError,
    PharmaPayError,
    StorageNotFoundError,
    SupplierInUseError,
    SupplierNotFoundError,
    TransitionError,
    UploadError,
    UserNotFoundError,
    ValidationError,
)
from pharmapay.services.storage import ObjectStore, get_object_store

# Import models so they are registered with Base.metadata
import pharmapay.models  # noqa: F401

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("starting_pharmapay", env=settings.ENVIRONMENT)
    await init_db()
    yield
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Exception handlers: every error leaves as
# {"error": {"code": "...", "message": "...", "details"?: ...}}
# ---------------------------------------------------------------------------

# Most specific first; the first isinstance match wins.
_STATUS_BY_ERROR: list[tuple[type[PharmaPayError], int]] = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (StorageNotFoundError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (AttachmentNotSavedError, status.HTTP_502_BAD_GATEWAY),
    (UploadError, status.HTTP_502_BAD_GATEWAY),
    (DuplicateInvoiceWarning, status.HTTP_409_CONFLICT),
    (TransitionError, status.HTTP_409_CONFLICT),
    (ConflictError, status.HTTP_409_CONFLICT),
    (SupplierInUseError, status.HTTP_409_CONFLICT),
    (InvoiceNotFoundError, status.HTTP_404_NOT_FOUND),
    (SupplierNotFoundError, status.HTTP_404_NOT_FOUND),
    (UserNotFoundError, status.HTTP_404_NOT_FOUND),
]


def _error_details(exc: PharmaPayError):
    if isinstance(exc, ValidationError):
        return exc.errors
    if isinstance(exc, AttachmentNotSavedError):
        return {"invoice_id": exc.invoice_id}
    if isinstance(exc, DuplicateInvoiceWarning):
        return {"supplier_id": exc.supplier_id, "invoice_number": exc.invoice_number}
    if isinstance(exc, TransitionError):
        return {"current_status": exc.current}
    return None


@app.exception_handler(PharmaPayError)
async def pharmapay_exception_handler(request: Request, exc: PharmaPayError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in _STATUS_BY_ERROR if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    if status_code >= 500:
        logger.error("request_failed", code=exc.code, error=exc.message)
    return JSONResponse(
        status_code=status_code,
        content=error_body(exc.code, exc.message, _error_details(exc)),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, str):
        detail = error_body("HTTP_ERROR", detail)
    elif isinstance(detail, dict) and "error" not in detail:
        detail = {"error": detail}
    return JSONResponse(status_code=exc.status_code, content=detail, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content=error_body(
            "VALIDATION_ERROR",
            "Request validation failed",
            jsonable_encoder(exc.errors()),
        ),
    )


app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "X-Request-ID"],
)


@app.get("/health", tags=["System"])
async def health(
    response: Response,
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
):
    health_status = {"status": "healthy", "version": settings.APP_VERSION, "checks": {}}

    try:
        await db.execute(text("SELECT 1"))
        health_status["checks"]["db"] = "ok"
    except Exception as e:
        logger.error("health_check_db_failed", error=str(e))
        health_status["checks"]["db"] = "error"
        health_status["status"] = "unhealthy"

    try:
        await asyncio.to_thread(store.s3.head_bucket, Bucket=settings.STORAGE_BUCKET)
        health_status["checks"]["storage"] = "ok"
    except Exception as e:
        logger.error("health_check_storage_failed", error=str(e))
        health_status["checks"]["storage"] = "error"
        health_status["status"] = "unhealthy"

    if health_status["status"] == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return health_status


# --- Routers ---
from pharmapay.routes.auth import router as auth_router  # noqa: E402
from pharmapay.routes.invoices import router as invoices_router  # noqa: E402
from pharmapay.routes.suppliers import router as suppliers_router  # noqa: E402
from pharmapay.routes.users import router as users_router  # noqa: E402
from pharmapay.jobs.scheduled import router as jobs_router  # noqa: E402

app.include_router(auth_router, prefix="/auth", tags=["Auth"])
app.include_router(invoices_router, prefix="/api/v1/invoices", tags=["Invoices"])
app.include_router(suppliers_router, prefix="/api/v1/suppliers", tags=["Suppliers"])
app.include_router(users_router, prefix="/api/v1/users", tags=["Users"])
app.include_router(jobs_router, prefix="/internal/jobs", tags=["Internal Jobs"])
