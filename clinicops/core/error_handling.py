"""
Error taxonomy and HTTP mapping.

Domain services raise the exceptions below; the handlers registered on
the FastAPI app turn them into JSON responses. Anything else is logged in
full and returned as a generic 500 carrying an error id.
"""

import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from clinicops.core.logging import log_error

logger = logging.getLogger(__name__)


class ClinicOpsError(Exception):
    """Base class for errors surfaced to callers of the domain services."""

    code = "error"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "error": self.message,
            "code": self.code,
            "type": type(self).__name__,
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ClinicOpsError):
    code = "validation_error"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class NotFoundError(ValidationError):
    code = "not_found"
    http_status = status.HTTP_404_NOT_FOUND


class ConflictKind:
    DOCTOR_BUSY = "DOCTOR_BUSY"
    BLOCKED = "BLOCKED"
    SCHEDULE_LOCKED = "SCHEDULE_LOCKED"


class ConflictError(ClinicOpsError):
    code = "conflict"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, kind: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=kind, details=details)
        self.kind = kind


class AuthorizationError(ClinicOpsError):
    code = "access_denied"
    http_status = status.HTTP_403_FORBIDDEN


class StateError(ClinicOpsError):
    code = "invalid_state"
    http_status = status.HTTP_409_CONFLICT


class TransportFailure(ClinicOpsError):
    """A channel transport could not deliver. Handled inside the dispatcher."""

    code = "transport_failure"
    http_status = status.HTTP_502_BAD_GATEWAY

    def __init__(self, channel: str, message: str):
        super().__init__(message, details={"channel": channel})
        self.channel = channel


class ErrorSanitizer:
    """Sanitizes errors to prevent information leakage"""

    @staticmethod
    def sanitize_error(error: Exception) -> Dict[str, Any]:
        if isinstance(error, ClinicOpsError):
            body = error.to_dict()
            body["status_code"] = error.http_status
            return body

        if isinstance(error, HTTPException):
            return {
                "error": error.detail,
                "status_code": error.status_code,
                "type": "http_exception"
            }

        return {
            "error": "An error occurred processing your request",
            "status_code": 500,
            "type": "internal_error",
            "error_id": ErrorSanitizer._generate_error_id()
        }

    @staticmethod
    def _generate_error_id() -> str:
        return str(uuid.uuid4())[:8]


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Catches anything the route handlers let escape and sanitizes it."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            sanitized = ErrorSanitizer.sanitize_error(e)
            error_id = sanitized.setdefault("error_id", ErrorSanitizer._generate_error_id())
            log_error(
                f"Unhandled exception [{error_id}]: {type(e).__name__}: {str(e)}",
                logger_name="error_handler",
                exc_info=True
            )
            return JSONResponse(
                status_code=sanitized["status_code"],
                content=sanitized
            )


async def clinicops_error_handler(request: Request, exc: ClinicOpsError) -> JSONResponse:
    logger.info(f"{request.method} {request.url.path} rejected: {exc.code}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ClinicOpsError, clinicops_error_handler)
    app.add_middleware(ErrorHandlingMiddleware)
