"""
AuditChain - Tamper-Evident Audit Ledger

Main application entry point.

Every recorded action lands in a per-tenant hash chain. Anyone holding an
export bundle can check it without trusting this service.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .api.routes import router as chains_router
from .core import (
    ChainNotFound,
    ContentionError,
    ExportCancelled,
    ExportFailed,
    IntegrityViolation,
    LedgerError,
    StorageUnavailable,
    ValidationError,
)
from .observability import (
    setup_logging,
    get_logger,
    RequestContextMiddleware,
    check_health,
    get_metrics,
)
from .services import LedgerServices, build_services

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)

RETRY_AFTER_SECONDS = "1"

# Most specific first: the handler walks this list in order
_STATUS_BY_ERROR: list[tuple[type, int]] = [
    (ValidationError, 422),
    (ContentionError, 409),
    (StorageUnavailable, 503),
    (IntegrityViolation, 409),
    (ChainNotFound, 404),
    (ExportCancelled, 409),
    (ExportFailed, 500),
]


def _status_for(error: LedgerError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status_code
    return 500


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    """Map ledger errors onto HTTP with a stable machine-readable code."""
    status_code = _status_for(exc)
    body = {"code": exc.code, "detail": str(exc)}
    headers = {}

    if getattr(exc, "retryable", False):
        body["retryable"] = True
        headers["Retry-After"] = RETRY_AFTER_SECONDS
    if isinstance(exc, IntegrityViolation) and exc.result is not None:
        body["verification"] = exc.result.model_dump(mode="json")

    if status_code >= 500:
        logger.error("Request failed", code=exc.code, error=str(exc))
    return JSONResponse(status_code=status_code, content=body, headers=headers or None)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"code": ValidationError.code, "detail": jsonable_encoder(exc.errors())},
    )


def create_app(services: Optional[LedgerServices] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Pre-built services (tests). When omitted they are built
            from the environment at startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        if owned:
            app.state.services = build_services()
        ledger = app.state.services

        ledger.dispatcher.start()  # Starts background thread if enabled

        logger.info(
            "Application startup complete",
            store_type=type(ledger.store).__name__,
            chain_count=len(ledger.store.list_chains()),
            dispatch_enabled=ledger.dispatcher.config.enabled,
        )

        yield

        if owned:
            ledger.close()
            logger.info("Ledger store closed")
        else:
            ledger.dispatcher.stop()

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="AuditChain",
        description="""
## Tamper-Evident Audit Ledger

Append-only, per-tenant hash chains for compliance-grade audit trails.

### Core Principles

- **Append-only**: Entries cannot be altered or deleted
- **Chained**: Each entry commits to its predecessor's hash
- **Verifiable**: Any range can be replayed and checked
- **Portable**: Export bundles verify offline with a public key

### API Design

**Commands** (write operations):
- POST an event to append it to its chain
- POST a date range to export a signed bundle

**Queries** (read operations):
- Chain headers, entries, integrity and deep verification

### Storage Backends

- **InMemoryLedgerStore**: Development/testing (default)
- **PostgresLedgerStore**: Production with full durability

Set `DATABASE_URL` or `DATABASE_HOST` environment variables to use PostgreSQL.
        """,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    if services is not None:
        app.state.services = services

    # Add request context middleware for logging
    app.add_middleware(RequestContextMiddleware)

    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.include_router(chains_router)

    @app.get("/health", tags=["System"])
    async def health():
        """
        Basic health check endpoint.

        Returns 200 if the service is running.
        For detailed health, use /health/detailed
        """
        return {"status": "healthy", "service": "auditchain"}

    @app.get("/health/detailed", tags=["System"])
    def health_detailed(request: Request):
        """
        Detailed health check.

        Checks:
        - Service liveness
        - Ledger store connectivity
        - Shallow integrity of every chain

        Returns 200 if healthy, 503 if unhealthy.
        """
        ledger = request.app.state.services
        health_status = check_health(store=ledger.store, verifier=ledger.verifier)

        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics(request: Request):
        """
        Get application metrics.

        Returns counters and latency percentiles, plus the side-effect
        queue state.
        """
        summary = get_metrics().get_summary()
        summary["dispatcher"] = request.app.state.services.dispatcher.status()
        return summary

    return app


app = create_app()
