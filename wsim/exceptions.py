"""
Custom exception classes and FastAPI exception handlers.

The service layer raises domain-specific errors without importing HTTP
concepts; the handlers registered here translate them into the standard
error body used by every endpoint family:

    {"error": "<machine-readable code>", "message": "<human text>"}

Exception hierarchy:
    WalletAPIError (base)
    ├── BadRequestError           — missing/malformed input (400)
    ├── NotAuthenticatedError     — missing/invalid/expired credentials (401)
    ├── ForbiddenError            — resource owned by someone else (403)
    ├── NotFoundError             — resource doesn't exist (404)
    ├── ConflictError             — duplicate email / bound device (409)
    ├── UpstreamBankError         — bank unreachable while starting enrollment (502)
    ├── StepUpStateError          — step-up already resolved or expired (400)
    ├── PaymentError              — mobile payment protocol, fixed code table
    └── EnrollmentCallbackError   — OIDC callback failure, becomes a redirect
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Base exception
# ---------------------------------------------------------------------------

class WalletAPIError(Exception):
    """Base exception for all wallet domain errors."""

    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(self, detail: str = "An error occurred"):
        self.detail = detail
        super().__init__(self.detail)


# ---------------------------------------------------------------------------
# Domain exceptions
# ---------------------------------------------------------------------------

class BadRequestError(WalletAPIError):
    status_code = 400
    error_code = "bad_request"


class NotAuthenticatedError(WalletAPIError):
    """Raised when credentials are missing, invalid, expired or reused."""

    status_code = 401
    error_code = "unauthorized"

    def __init__(self, detail: str = "Authentication required"):
        super().__init__(detail)


class ForbiddenError(WalletAPIError):
    """Raised when a user attempts to act on a resource they don't own."""

    status_code = 403
    error_code = "forbidden"

    def __init__(self, detail: str = "You do not have access to this resource"):
        super().__init__(detail)


class NotFoundError(WalletAPIError):
    status_code = 404
    error_code = "not_found"


class ConflictError(WalletAPIError):
    status_code = 409
    error_code = "conflict"

    def __init__(self, detail: str, error_code: str = "conflict"):
        self.error_code = error_code
        super().__init__(detail)


class UpstreamBankError(WalletAPIError):
    """Raised when a bank call needed to answer the request fails."""

    status_code = 502

    def __init__(self, detail: str, error_code: str = "bank_error"):
        self.error_code = error_code
        super().__init__(detail)


class StepUpStateError(WalletAPIError):
    """
    Raised when a step-up request can no longer be resolved.

    error_code is "invalid_state" for an already-resolved request and
    "expired" when the approval window has passed.
    """

    status_code = 400

    def __init__(self, detail: str, error_code: str = "invalid_state"):
        self.error_code = error_code
        super().__init__(detail)


# Mobile payment protocol codes and their HTTP statuses.
PAYMENT_ERROR_STATUS = {
    "PAYMENT_NOT_FOUND": 404,
    "PAYMENT_EXPIRED": 410,
    "PAYMENT_ALREADY_PROCESSED": 409,
    "CARD_NOT_FOUND": 404,
    "CARD_TOKEN_ERROR": 502,
    "UNAUTHORIZED": 401,
    "FORBIDDEN": 403,
    "INVALID_REQUEST": 400,
    "INVALID_API_KEY": 401,
}


class PaymentError(WalletAPIError):
    """
    Raised by the payment approval engine.

    Attributes:
        error_code: One of the PAYMENT_ERROR_STATUS keys.
        status_code: The HTTP status mapped from error_code.
    """

    def __init__(self, error_code: str, detail: str):
        if error_code not in PAYMENT_ERROR_STATUS:
            raise ValueError(f"Unknown payment error code: {error_code}")
        self.error_code = error_code
        self.status_code = PAYMENT_ERROR_STATUS[error_code]
        super().__init__(detail)


class EnrollmentCallbackError(WalletAPIError):
    """
    Raised when an enrollment callback cannot complete.

    Never rendered as JSON: the enrollment routers turn it into a redirect
    carrying `code` (and `message` when present) so the browser or the
    mobile app can show a stable, machine-readable failure.
    """

    def __init__(self, code: str, message: str | None = None):
        self.code = code
        self.message = message
        self.error_code = code
        super().__init__(message or code)


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------

def error_body(error_code: str, message: str) -> dict:
    return {"error": error_code, "message": message}


def validation_message(exc: RequestValidationError) -> str:
    """First validation error as "field: problem" (body prefix dropped)."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    if location:
        message = f"{location}: {message}"
    return message


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register exception handlers with the FastAPI application.

    Domain errors keep their own status and code; request validation
    failures become 400 bad_request; anything unexpected is logged and
    answered with a generic 500 so internals never leak to callers.
    """

    @app.exception_handler(WalletAPIError)
    async def wallet_error_handler(
        request: Request, exc: WalletAPIError
    ) -> JSONResponse:
        headers = None
        if exc.status_code == 401:
            headers = {"WWW-Authenticate": "Bearer"}
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.error_code, exc.detail),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content=error_body("bad_request", validation_message(exc)),
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=error_body("server_error", "An unexpected error occurred"),
        )
