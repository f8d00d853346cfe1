"""Ledger error taxonomy and the FastAPI handlers that render it.

Every error leaves the service in one envelope (see create_error_response);
internal details stay in the logs.

Every business-rule violation is raised before the enclosing ledger
transaction commits, so an error response always means "nothing changed".
"""

import logging
import traceback
from typing import Union

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class NurseryLedgerError(Exception):
    """Base exception for ledger errors. Unclassified subclasses map to 500."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
        details: dict | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details
        super().__init__(self.message)


class BusinessLogicError(NurseryLedgerError):
    """Malformed or out-of-range input."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        error_code: str = "VALIDATION_FAILED",
    ):
        details = {"field": field, "reason": message} if field else None
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code=error_code,
            details=details,
        )


class ResourceNotFoundError(NurseryLedgerError):
    """Exception for resources not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="RESOURCE_NOT_FOUND",
            details={"resource": resource, "id": identifier},
        )


class ConflictError(NurseryLedgerError):
    """State conflict: insufficient quantity, archived batch, key reuse."""

    def __init__(
        self,
        message: str,
        error_code: str = "CONFLICT",
        details: dict | None = None,
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_code=error_code,
            details=details,
        )


class PermissionDeniedError(NurseryLedgerError):
    """Exception for permission denied and tenant mismatches."""

    def __init__(self, message: str = "Permission denied"):
        super().__init__(
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            error_code="PERMISSION_DENIED",
        )


class TenantContextError(NurseryLedgerError):
    """Exception for tenant context errors."""

    def __init__(self, message: str = "Tenant context required"):
        super().__init__(
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            error_code="TENANT_CONTEXT_REQUIRED",
        )


class TransientStoreError(NurseryLedgerError):
    """Contention or outage in the batch store. Safe to retry."""

    def __init__(self, message: str = "Batch store temporarily unavailable"):
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="TRANSIENT_STORE_ERROR",
            details={"retryable": True},
        )


class OutcomeUnknownError(TransientStoreError):
    """The enclosing request timeout fired; the mutation may or may not have committed."""

    def __init__(self, message: str = "Operation timed out; outcome unknown"):
        super().__init__(message)
        self.status_code = status.HTTP_504_GATEWAY_TIMEOUT
        self.error_code = "OUTCOME_UNKNOWN"
        self.details = {"retryable": True, "requires_idempotency_key": True}


# ── Envelope ─────────────────────────────────────────────────

def create_error_response(
    status_code: int,
    message: str,
    error_code: str = "ERROR",
    details: Union[dict, list, None] = None,
    headers: dict | None = None,
) -> JSONResponse:
    """Render the ledger error envelope.

        {"error": {"code": "INSUFFICIENT_QUANTITY",
                   "message": "Cannot dump 80 units: only 70 available",
                   "details": {"batch_id": "...", "available": 70}}}

    `details` is omitted when empty.
    """
    error = {"code": error_code, "message": message}
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"error": error}, headers=headers)


def _request_context(request: Request) -> dict:
    return {"path": request.url.path, "method": request.method}


# ── Handlers ─────────────────────────────────────────────────

async def ledger_exception_handler(request: Request, exc: NurseryLedgerError) -> JSONResponse:
    """Domain errors carry their own status, code and details."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}",
        extra={"error_code": exc.error_code, **_request_context(request)},
    )
    return create_error_response(
        status_code=exc.status_code,
        message=exc.message,
        error_code=exc.error_code,
        details=exc.details,
    )


async def http_exception_handler(
    request: Request,
    exc: Union[HTTPException, StarletteHTTPException],
) -> JSONResponse:
    """Auth and routing errors raised as HTTPException (401, 403, 404 on unknown paths)."""
    if exc.status_code >= 500:
        logger.error(f"HTTP {exc.status_code}: {exc.detail}", extra=_request_context(request))
    return create_error_response(
        status_code=exc.status_code,
        message=str(exc.detail),
        error_code=f"HTTP_{exc.status_code}",
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request,
    exc: Union[RequestValidationError, ValidationError],
) -> JSONResponse:
    """Request bodies that fail schema validation: one entry per offending field."""
    logger.warning(f"Invalid request body on {request.url.path}", extra=_request_context(request))
    errors = [
        {
            "field": " -> ".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message="Validation error",
        error_code="VALIDATION_ERROR",
        details={"errors": errors},
    )


async def integrity_exception_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    """Constraint violations that slipped past the ledger's own checks.

    Unique violations (a batch number or idempotency key taken by a
    concurrent writer) are conflicts; anything else is bad input.
    """
    logger.error(f"Integrity error on {request.url.path}: {exc.orig}", extra=_request_context(request))
    reason = str(exc.orig).lower()
    if "unique" in reason or "duplicate" in reason:
        return create_error_response(
            status_code=status.HTTP_409_CONFLICT,
            message="A record with this value already exists",
            error_code="DUPLICATE_RECORD",
        )
    if "check constraint" in reason or "ck_batches_quantity" in reason:
        return create_error_response(
            status_code=status.HTTP_409_CONFLICT,
            message="Batch quantity cannot go below zero",
            error_code="INSUFFICIENT_QUANTITY",
        )
    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message="Database constraint violation",
        error_code="INTEGRITY_ERROR",
    )


async def operational_exception_handler(request: Request, exc: OperationalError) -> JSONResponse:
    """Store unreachable or locked beyond the retry budget."""
    logger.error(f"Batch store unavailable on {request.url.path}: {exc}", extra=_request_context(request))
    return create_error_response(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        message="Batch store temporarily unavailable. Please retry.",
        error_code="TRANSIENT_STORE_ERROR",
        details={"retryable": True},
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unclassified: log the traceback, return a generic 500."""
    logger.error(
        f"Unhandled exception on {request.url.path}: {exc}",
        extra={**_request_context(request), "traceback": traceback.format_exc()},
        exc_info=True,
    )
    return create_error_response(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        error_code="INTERNAL_SERVER_ERROR",
    )


def register_exception_handlers(app):
    """Register all custom exception handlers with FastAPI app."""
    app.add_exception_handler(NurseryLedgerError, ledger_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(IntegrityError, integrity_exception_handler)
    app.add_exception_handler(OperationalError, operational_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
