"""
Gateway error taxonomy and the JSON error envelope returned by every route.

BusinessLogicError covers requests the gateway refuses (bad input, bad
token, unknown payment). ServiceError covers failures on our side or in a
collaborator (node, price oracle, database). Each class carries a default
code; HTTP status is looked up from the code.
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel
import logging
import time

logger = logging.getLogger(__name__)

class ErrorDetail(BaseModel):
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class StandardErrorResponse(BaseModel):
    """Body of every non-2xx response"""
    success: bool = False
    error: ErrorDetail
    timestamp: float

class ErrorCodes:
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_TOKEN = "INVALID_TOKEN"
    INVALID_INPUT = "INVALID_INPUT"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"

    CONFLICT = "CONFLICT"

    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"

    DATABASE_ERROR = "DATABASE_ERROR"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"

HTTP_STATUS = {
    ErrorCodes.UNAUTHORIZED: 401,
    ErrorCodes.INVALID_TOKEN: 400,
    ErrorCodes.INVALID_INPUT: 400,
    ErrorCodes.VALIDATION_ERROR: 400,
    ErrorCodes.PAYMENT_NOT_FOUND: 404,
    ErrorCodes.NOT_FOUND: 404,
    ErrorCodes.RATE_LIMITED: 429,
    ErrorCodes.CONFLICT: 500,
    ErrorCodes.UPSTREAM_UNAVAILABLE: 503,
    ErrorCodes.CIRCUIT_BREAKER_OPEN: 503,
    ErrorCodes.DATABASE_ERROR: 503,
    ErrorCodes.INTERNAL_SERVER_ERROR: 500,
}

class BusinessLogicError(Exception):
    code = ErrorCodes.INVALID_INPUT

    def __init__(self, message: str, code: str = None, field: str = None, context: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.code = code or type(self).code
        self.field = field
        self.context = context or {}

class ServiceError(Exception):
    code = ErrorCodes.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, code: str = None, original_error: Exception = None):
        super().__init__(message)
        self.message = message
        self.code = code or type(self).code
        self.original_error = original_error

class InvalidInputError(BusinessLogicError):
    code = ErrorCodes.INVALID_INPUT

class InvalidTokenError(InvalidInputError):
    code = ErrorCodes.INVALID_TOKEN

class PaymentNotFoundError(BusinessLogicError):
    code = ErrorCodes.PAYMENT_NOT_FOUND

class ConflictError(ServiceError):
    """Index or account collision. Never retried."""
    code = ErrorCodes.CONFLICT

class UpstreamUnavailableError(ServiceError):
    """Ledger node or price oracle failure"""
    code = ErrorCodes.UPSTREAM_UNAVAILABLE

class StorageError(ServiceError):
    code = ErrorCodes.DATABASE_ERROR

def error_response(code: str, message: str, field: str = None, context: Dict[str, Any] = None,
                   status_code: int = None) -> JSONResponse:
    body = StandardErrorResponse(
        error=ErrorDetail(code=code, message=message, field=field, context=context or None),
        timestamp=time.time(),
    )
    return JSONResponse(status_code=status_code or HTTP_STATUS.get(code, 500), content=body.model_dump())

async def rejected_request_handler(request: Request, exc: BusinessLogicError):
    logger.info(f"Rejected {request.method} {request.url.path}: {exc.code} {exc.message}")
    return error_response(exc.code, exc.message, field=exc.field, context=exc.context)

async def gateway_failure_handler(request: Request, exc: ServiceError):
    cause = f" (caused by {exc.original_error!r})" if exc.original_error else ""
    logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}{cause}")
    return error_response(exc.code, exc.message)

async def validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", []))
    message = first.get("msg", "invalid value")
    return error_response(ErrorCodes.VALIDATION_ERROR, f"{field}: {message}", field=field)

async def http_error_handler(request: Request, exc: HTTPException):
    code = {401: ErrorCodes.UNAUTHORIZED, 404: ErrorCodes.NOT_FOUND, 429: ErrorCodes.RATE_LIMITED}.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)
    response = error_response(code, str(exc.detail), status_code=exc.status_code)
    if exc.headers:
        response.headers.update(exc.headers)
    return response

async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    # Internals are not exposed to clients
    return error_response(ErrorCodes.INTERNAL_SERVER_ERROR, "internal error")

def add_error_handlers(app):
    app.add_exception_handler(BusinessLogicError, rejected_request_handler)
    app.add_exception_handler(ServiceError, gateway_failure_handler)
    app.add_exception_handler(RequestValidationError, validation_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
