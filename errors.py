"""
Error taxonomy and the JSON envelope every failure is rendered into.

Every error response has the shape
    {"success": false, "error": "<CODE>", "message": "<human text>"}
and stack traces never reach the client.

Status codes:
- 400: ValidationError (bad input), SignatureError (forged callback)
- 401: AuthError (missing/invalid/expired token, bad credentials)
- 403: ForbiddenError (valid identity, insufficient entitlement or role)
- 404: NotFoundError (plan, subscription, order, user)
- 409: ConflictError (trial already used, active subscription exists, duplicates)
- 502: PaymentProviderError (provider network/provider-side failure, retryable)
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("libretv")


class AppError(Exception):
    """Base application error carrying a machine-readable code."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.code, "message": self.message}
        if self.details:
            body["data"] = self.details
        return body


class ValidationError(AppError):
    def __init__(self, message: str, code: str = "VALIDATION_ERROR", details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, status.HTTP_400_BAD_REQUEST, details)


class AuthError(AppError):
    def __init__(self, message: str = "Authentication required", code: str = "INVALID_TOKEN"):
        super().__init__(code, message, status.HTTP_401_UNAUTHORIZED)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Permission denied", code: str = "FORBIDDEN"):
        super().__init__(code, message, status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str, code: str = "NOT_FOUND"):
        super().__init__(code, message, status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str, code: str = "CONFLICT", details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, status.HTTP_409_CONFLICT, details)


class PaymentProviderError(AppError):
    """Provider unreachable or rejected the call. Callers may retry."""

    retryable = True

    def __init__(self, message: str, code: str = "PROVIDER_ERROR", status_code: int = status.HTTP_502_BAD_GATEWAY):
        super().__init__(code, message, status_code)


class SignatureError(AppError):
    # message stays generic; verification detail goes to the server log only
    def __init__(self):
        super().__init__("INVALID_CALLBACK", "Callback rejected", status.HTTP_400_BAD_REQUEST)


# --- Ledger-specific errors ---------------------------------------------------

class PlanNotFound(NotFoundError):
    def __init__(self, plan_id=None):
        super().__init__(f"Subscription plan {plan_id} not found" if plan_id else "Subscription plan not found",
                         code="PLAN_NOT_FOUND")


class NoPlanAvailable(NotFoundError):
    def __init__(self):
        super().__init__("No active monthly plan is available for the trial", code="NO_PLAN_AVAILABLE")


class TrialAlreadyUsed(ConflictError):
    def __init__(self):
        super().__init__("The free trial has already been used", code="TRIAL_ALREADY_USED")


class ActiveSubscriptionExists(ConflictError):
    def __init__(self, subscription: Optional[dict] = None):
        super().__init__(
            "An active subscription already exists",
            code="ACTIVE_SUBSCRIPTION_EXISTS",
            details={"subscription": subscription} if subscription else None,
        )


class InvalidToken(AuthError):
    def __init__(self, message: str = "Invalid or expired token"):
        super().__init__(message, code="INVALID_TOKEN")


class SubscriptionRequired(ForbiddenError):
    def __init__(self):
        super().__init__("A valid subscription is required to access this content", code="SUBSCRIPTION_REQUIRED")


# --- Envelope ---------------------------------------------------------------

def ok(data: Any = None, message: str = "OK") -> dict:
    body = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    return body


# --- Handlers -----------------------------------------------------------------

def _envelope(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": code, "message": message})


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def _app_error(request: Request, exc: AppError):
        logger.warning("%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg', 'invalid input')}" if field else first.get("msg", "invalid input")
        return _envelope(status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR", message)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        return _envelope(exc.status_code, "HTTP_ERROR", str(exc.detail))

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return _envelope(status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR", "An unexpected error occurred")
