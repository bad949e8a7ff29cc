"""
Error taxonomy and the uniform error envelope.

Services raise the exceptions defined here; the handlers registered by
``register_exception_handlers`` render every failure as

    {"error": {"code": ..., "message": ..., "details": ...}}

Expected outcomes (validation, authorization, state, conflict) are logged at
INFO. Dependency and internal failures are logged at ERROR with a short error
id, and only a generic message plus that id leaves the service.
"""

import enum
import logging
import uuid
from typing import Optional, Dict, Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from telehealth.core.logging import SecureLogger

logger = logging.getLogger(__name__)


class ErrorCode(str, enum.Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    INTERNAL_ERROR = "INTERNAL_ERROR"


STATUS_BY_CODE = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorCode.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.INVALID_STATUS_TRANSITION: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

GENERIC_ERROR_MESSAGE = "An error occurred processing your request"


class ConsultationError(Exception):
    """Base class for every failure the service reports to callers."""

    code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def status_code(self) -> int:
        return STATUS_BY_CODE[self.code]

    @property
    def expected(self) -> bool:
        return self.status_code < 500


class ValidationError(ConsultationError):
    code = ErrorCode.VALIDATION_ERROR


class TimeWindowError(ValidationError):
    """Join attempted outside the window around the scheduled start."""


class UnauthorizedError(ConsultationError):
    code = ErrorCode.UNAUTHORIZED


class ForbiddenError(ConsultationError):
    code = ErrorCode.FORBIDDEN


class NotFoundError(ConsultationError):
    code = ErrorCode.NOT_FOUND


class ConflictError(ConsultationError):
    code = ErrorCode.CONFLICT


class InvalidStatusTransitionError(ConsultationError):
    code = ErrorCode.INVALID_STATUS_TRANSITION

    def __init__(self, from_status, to_status):
        from_value = getattr(from_status, "value", from_status)
        to_value = getattr(to_status, "value", to_status)
        super().__init__(
            f"Cannot transition from {from_value} to {to_value}",
            {"from": from_value, "to": to_value}
        )
        self.from_status = from_status
        self.to_status = to_status


class ProviderError(ConsultationError):
    """An external provider call failed."""
    code = ErrorCode.INTERNAL_ERROR


class VideoProviderError(ProviderError):
    pass


class PaymentProviderError(ProviderError):
    pass


class ErrorSanitizer:
    """Builds client-safe error bodies"""

    @staticmethod
    def _generate_error_id() -> str:
        """Generate a unique error ID for tracking"""
        return str(uuid.uuid4())[:8]

    @staticmethod
    def error_body(code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": code.value, "message": message}
        if details:
            error["details"] = details
        return {"error": error}

    @staticmethod
    def internal_error_body(error_id: str) -> Dict[str, Any]:
        return ErrorSanitizer.error_body(
            ErrorCode.INTERNAL_ERROR,
            GENERIC_ERROR_MESSAGE,
            {"errorId": error_id}
        )


def _consultation_id(request: Request) -> Optional[str]:
    return request.path_params.get("consultation_id")


def _code_for_http_status(status_code: int) -> ErrorCode:
    for code, mapped in STATUS_BY_CODE.items():
        if mapped == status_code:
            return code
    return ErrorCode.VALIDATION_ERROR if status_code < 500 else ErrorCode.INTERNAL_ERROR


def _log_unexpected(request: Request, exc: Exception, error_id: str, exc_info: bool):
    SecureLogger.log(
        logger,
        logging.ERROR,
        f"[{error_id}] {request.method} {request.url.path} failed "
        f"(consultation={_consultation_id(request)}): {type(exc).__name__}: {exc}",
        exc_info=exc_info
    )


async def consultation_error_handler(request: Request, exc: ConsultationError) -> JSONResponse:
    if exc.expected:
        logger.info(
            f"{request.method} {request.url.path} -> {exc.code.value} "
            f"(consultation={_consultation_id(request)}): {exc.message}"
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorSanitizer.error_body(exc.code, exc.message, exc.details)
        )

    error_id = ErrorSanitizer._generate_error_id()
    _log_unexpected(request, exc, error_id, exc_info=False)
    return JSONResponse(status_code=exc.status_code, content=ErrorSanitizer.internal_error_body(error_id))


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        fields.append({"field": ".".join(location), "message": error.get("msg")})

    logger.info(f"{request.method} {request.url.path} -> VALIDATION_ERROR: {len(fields)} invalid field(s)")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorSanitizer.error_body(ErrorCode.VALIDATION_ERROR, "Invalid request", {"fields": fields})
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = _code_for_http_status(exc.status_code)
    message = exc.detail if isinstance(exc.detail, str) else code.value
    headers = getattr(exc, "headers", None)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorSanitizer.error_body(code, message),
        headers=headers
    )


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """
    Last line of defence: anything no handler claimed becomes a sanitized
    INTERNAL_ERROR envelope.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            error_id = ErrorSanitizer._generate_error_id()
            _log_unexpected(request, e, error_id, exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content=ErrorSanitizer.internal_error_body(error_id)
            )


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(ConsultationError, consultation_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_middleware(ErrorHandlingMiddleware)
