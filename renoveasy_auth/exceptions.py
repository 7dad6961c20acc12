import logging
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .i18n import http_status_for, render_error

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    # Input
    INVALID_PHONE_FORMAT = "INVALID_PHONE_FORMAT"
    INVALID_COUNTRY_CODE = "INVALID_COUNTRY_CODE"
    INVALID_CODE_LENGTH = "INVALID_CODE_LENGTH"
    # Flow
    CODE_NOT_FOUND = "CODE_NOT_FOUND"
    CODE_EXPIRED = "CODE_EXPIRED"
    CODE_MISMATCH = "CODE_MISMATCH"
    TOO_MANY_ATTEMPTS = "TOO_MANY_ATTEMPTS"
    # Defence
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    SUSPECTED_ABUSE = "SUSPECTED_ABUSE"
    # Identity
    USER_NOT_FOUND = "USER_NOT_FOUND"
    USER_TYPE_ALREADY_SELECTED = "USER_TYPE_ALREADY_SELECTED"
    INVALID_USER_TYPE = "INVALID_USER_TYPE"
    # Token
    TOKEN_MALFORMED = "TOKEN_MALFORMED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    TOKEN_SIGNATURE_INVALID = "TOKEN_SIGNATURE_INVALID"
    REFRESH_REUSE_DETECTED = "REFRESH_REUSE_DETECTED"
    # External
    SMS_SEND_FAILED = "SMS_SEND_FAILED"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    INTERNAL = "INTERNAL"


class AuthError(Exception):
    """Domain error carrying a stable code; text is rendered by the i18n table."""

    def __init__(self, code: ErrorCode, **details: Any):
        self.code = code
        self.details: Dict[str, Any] = details
        super().__init__(f"{code.value} {details}" if details else code.value)

    @property
    def status_code(self) -> int:
        return http_status_for(self.code.value)

    def message(self, lang: Optional[str] = None) -> str:
        return render_error(self.code.value, self.details, lang)


class DecryptError(Exception):
    """Raised when an OTP record cannot be decrypted (unknown key, tag or AD mismatch)."""


class SmsDeliveryError(Exception):
    """Raised by SMS providers when a message could not be handed to the carrier."""


def create_error_response(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> dict:
    """Create a standardized error response"""
    return {
        "success": False,
        "data": None,
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
        },
    }


def create_success_response(data: dict, message: Optional[str] = None) -> dict:
    """Create a standardized success response"""
    return {
        "success": True,
        "message": message,
        "data": data,
        "error": None,
    }


def _jsonable(details: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for key, value in details.items():
        out[key] = value.isoformat() if hasattr(value, "isoformat") else value
    return out


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    details = _jsonable(exc.details)
    headers = None
    if exc.code is ErrorCode.RATE_LIMIT_EXCEEDED and "retry_after_s" in details:
        headers = {"Retry-After": str(details["retry_after_s"])}
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(exc.code.value, render_error(exc.code.value, details), details),
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Custom exception handler for HTTPException"""
    # Convert 403 from HTTPBearer to 401 for missing authentication
    if exc.status_code == 403 and "Not authenticated" in str(exc.detail):
        return JSONResponse(
            status_code=401,
            content=create_error_response(ErrorCode.TOKEN_MALFORMED.value, render_error(ErrorCode.TOKEN_MALFORMED.value)),
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response("HTTP_ERROR", str(exc.detail)),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=create_error_response(ErrorCode.INTERNAL.value, render_error(ErrorCode.INTERNAL.value)),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(p) for p in err.get("loc", ()) if p != "body") for err in exc.errors()]
    return JSONResponse(
        status_code=422,
        content=create_error_response("VALIDATION_ERROR", "Invalid request | 请求无效", {"fields": fields}),
    )
