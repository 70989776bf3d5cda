"""FastAPI application factory"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from hostel_billing.api.middleware import RequestIDMiddleware, MetricsMiddleware
from hostel_billing.api.v1 import jobs, payment_requests, rents
from hostel_billing.domain.exceptions import (
    ConflictError,
    DomainException,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from hostel_billing.infrastructure.observability.logging import setup_logging
from hostel_billing.config import settings

# Setup structured logging
setup_logging(settings.log_level, settings.service_name)

# Most specific first; InvalidTransitionError is a ConflictError
_STATUS_CODES = (
    (ValidationError, 422),
    (ConflictError, 409),
    (NotFoundError, 404),
    (PermissionDeniedError, 403),
)


def status_for(error: DomainException) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
    status_code = status_for(exc)
    request_id = getattr(request.state, "request_id", "unknown")
    if status_code >= 500:
        logging.error(f"Unhandled domain error: {exc}", extra={"request_id": request_id})
        return JSONResponse(status_code=status_code, content={"detail": "Internal server error"})
    logging.warning(f"{exc.__class__.__name__}: {exc}", extra={"request_id": request_id, "status": status_code})
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Hostel Billing Gateway",
        description="Rent generation, payment requests and payment reconciliation service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.add_exception_handler(DomainException, domain_exception_handler)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(jobs.router, prefix="/v1", tags=["jobs"])
    app.include_router(payment_requests.router, prefix="/v1", tags=["payment-requests"])
    app.include_router(rents.router, prefix="/v1", tags=["rents"])

    return app


app = create_app()
