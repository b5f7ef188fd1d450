from typing import Any, Dict, Optional
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from aurelia.common.utils import build_error, json_error
from aurelia.common.constants import request_id_ctx
from aurelia.common.logging_setup import get_logger

logger = get_logger("aurelia.errors")


class AppError(Exception):
    """Base error for domain failures. Handlers render it with its code and status."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "APP_ERROR"
    retryable: bool = False

    def __init__(self, message: str, *, code: Optional[str] = None,
                 status_code: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"


class InvalidTransitionError(ValidationError):
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot transition order from {current} to {target}",
            details={"current": current, "target": target},
        )
        self.current = current
        self.target = target


class AmountMismatchError(ValidationError):
    """Gateway reported a different amount than the ledger expects. Audited separately."""

    code = "AMOUNT_MISMATCH"

    def __init__(self, expected, received, *, payment_id: Optional[int] = None):
        super().__init__(
            f"Amount mismatch: expected {expected}, received {received}",
            details={"expected": str(expected), "received": str(received), "payment_id": payment_id},
        )
        self.expected = expected
        self.received = received


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found" if identifier is None else f"{resource} {identifier} not found"
        super().__init__(message, details={"resource": resource, "id": str(identifier) if identifier is not None else None})


class ConflictError(AppError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"


class OrderStateConflictError(ConflictError):
    code = "ORDER_STATE_CONFLICT"


class SignatureVerificationError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "INVALID_SIGNATURE"


class ConfigurationError(AppError):
    code = "CONFIGURATION_ERROR"


class GatewayError(AppError):
    """Failure talking to the payment gateway."""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "GATEWAY_ERROR"
    retryable = True

    def __init__(self, message: str, *, gateway_status: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)
        self.gateway_status = gateway_status


class GatewayAuthError(GatewayError):
    code = "GATEWAY_AUTH_FAILED"


class GatewayNotFoundError(GatewayError):
    code = "GATEWAY_NOT_FOUND"
    retryable = False


class GatewayRateLimitedError(GatewayError):
    code = "GATEWAY_RATE_LIMITED"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class GatewayUnavailableError(GatewayError):
    code = "GATEWAY_UNAVAILABLE"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class GatewayRequestError(GatewayError):
    code = "GATEWAY_BAD_REQUEST"
    retryable = False


def is_retryable_error(exc: BaseException) -> bool:
    """Domain errors say for themselves; anything unexpected (db, network) is worth another try."""
    if isinstance(exc, AppError):
        return exc.retryable
    return isinstance(exc, Exception)


async def app_error_handler(request: Request, exc: AppError):
    rid = request_id_ctx.get(None)
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "request.app_error",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error_code": exc.code,
            "error_message": exc.message,
        },
    )
    payload = build_error(code=exc.code, details={"message": exc.message, **exc.details}, request_id=rid)
    return json_error(payload, status_code=exc.status_code)


async def fallback_handler(request: Request, exc: Exception):

    rid = request_id_ctx.get(None)

    logger.error(
        "unexpected.exception",
        extra={
            "path": request.url.path,
            "method": request.method,
        },
        exc_info=exc,
    )

    payload = build_error(code="SERVER_ERROR", details={"message": "Internal Server Error"}, request_id=rid)
    return json_error(payload, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    rid = request_id_ctx.get(None)
    logger.warning(
        "request.validation_failed",
        extra={
            "errors": exc.errors(),
            "path": request.url.path,
        },
    )

    payload = build_error(code="UNPROCESSABLE_ENTITY", details={"message": "invalid request"}, request_id=rid)
    return json_error(payload, status_code=status.HTTP_422_UNPROCESSABLE_CONTENT)


async def http_exception_handler(request: Request, exc: HTTPException):

    rid = request_id_ctx.get(None)
    payload = build_error(code=f"HTTP_{exc.status_code}", details={"message": exc.detail}, request_id=rid)
    return json_error(payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


def register_all_exceptions(app: FastAPI):

    app.add_exception_handler(
        Exception, # catch all unidentified/unhandled exceptions
        fallback_handler
    )

    app.add_exception_handler(
        AppError,
        app_error_handler
    )

    app.add_exception_handler(
        RequestValidationError,
        validation_exception_handler
    )

    app.add_exception_handler(
        HTTPException,
        http_exception_handler
    )
