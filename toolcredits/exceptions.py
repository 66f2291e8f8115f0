from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)

class ToolCreditsException(Exception):
    """Base exception for the credit service."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

        # Log the exception for monitoring
        logger.error(f"{self.__class__.__name__}: {message}", extra={"details": self.details})

class InsufficientCreditsError(ToolCreditsException):
    """Raised when user has insufficient credits for operation."""

    def __init__(self, required: int, available: int, user_id: str = None):
        message = f"Insufficient credits. Required: {required}, Available: {available}"
        details = {
            "required": required,
            "balance": available,
            "user_id": user_id
        }
        super().__init__(message, details)

class ProfileNotFoundError(ToolCreditsException):
    """Raised when a user has no credit profile."""

    def __init__(self, user_id: str):
        super().__init__(f"Profile not found for user {user_id}", {"user_id": user_id})

class NotFoundError(ToolCreditsException):
    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} not found", {"resource": resource, "id": identifier})

class ValidationFailed(ToolCreditsException):
    """Raised when request input is rejected."""

    def __init__(self, reason: str, **details):
        super().__init__(reason, details)

class AuthenticationError(ToolCreditsException):
    """Raised when authentication fails."""

    def __init__(self, reason: str = "Authentication required"):
        super().__init__(reason, {"auth_failure_reason": reason})

class TokenExpiredError(AuthenticationError):
    """Raised when JWT token has expired."""

    def __init__(self):
        super().__init__("Authentication token has expired")

class InvalidTokenError(AuthenticationError):
    """Raised when JWT token is invalid."""

    def __init__(self, reason: str = "Invalid token"):
        super().__init__(f"Invalid authentication token: {reason}")

class PermissionDenied(ToolCreditsException):
    def __init__(self, reason: str = "Forbidden"):
        super().__init__(reason)

class WebhookValidationError(ToolCreditsException):
    """Raised when webhook signature validation fails."""

    def __init__(self, provider: str, reason: str = "Invalid signature"):
        message = f"Webhook validation failed for {provider}: {reason}"
        details = {"provider": provider, "validation_error": reason}
        super().__init__(message, details)

class ConfigurationError(ToolCreditsException):
    """Raised when a required provider key or setting is missing."""

    def __init__(self, setting: str, reason: str):
        message = f"Configuration error for '{setting}': {reason}"
        details = {"setting": setting, "reason": reason}
        super().__init__(message, details)

class ExternalServiceError(ToolCreditsException):
    """Raised when external service calls fail."""

    def __init__(self, service: str, error: str, status_code: int = None):
        message = f"External service '{service}' error: {error}"
        details = {
            "service": service,
            "upstream_status": status_code
        }
        super().__init__(message, details)

# Exception to HTTP status code mapping
STATUS_CODE_MAPPING = {
    InsufficientCreditsError: status.HTTP_402_PAYMENT_REQUIRED,
    ProfileNotFoundError: status.HTTP_404_NOT_FOUND,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ValidationFailed: status.HTTP_400_BAD_REQUEST,
    AuthenticationError: status.HTTP_401_UNAUTHORIZED,
    TokenExpiredError: status.HTTP_401_UNAUTHORIZED,
    InvalidTokenError: status.HTTP_401_UNAUTHORIZED,
    PermissionDenied: status.HTTP_403_FORBIDDEN,
    WebhookValidationError: status.HTTP_400_BAD_REQUEST,
    ConfigurationError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ExternalServiceError: status.HTTP_502_BAD_GATEWAY,
}

def status_code_for(exc: ToolCreditsException) -> int:
    return STATUS_CODE_MAPPING.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)

def error_body(exc: ToolCreditsException) -> Dict[str, Any]:
    """`{"error": message, **details}` body returned by every endpoint on failure."""
    return {"error": exc.message, "error_type": exc.__class__.__name__, **exc.details}

async def tool_credits_exception_handler(request: Request, exc: ToolCreditsException) -> JSONResponse:
    return JSONResponse(status_code=status_code_for(exc), content=error_body(exc))

async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unexpected error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "An unexpected error occurred", "error_type": "InternalServerError"},
    )

async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict):
        content = {"error": exc.detail.get("status", "error"), **exc.detail}
    else:
        content = {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))

async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid request", "error_type": "ValidationFailed", "errors": errors},
    )
