"""
Error Handling Utilities
Provides sanitized error messages and consistent error responses.
"""

import logging
from enum import Enum

from fastapi import HTTPException, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.integrations.exceptions import (
    CredentialDisabled,
    CrossTenantConflictError,
    IntegrationError,
    MappingError,
    NotConnected,
    ProviderPermanentError,
    ProviderTransientError,
    RefreshPermanentError,
    RefreshTransientError,
    UnsupportedCapabilityError,
    WebhookSignatureError,
)

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Error codes for frontend handling."""

    # Connection lifecycle
    NOT_CONNECTED = "not_connected"
    CONNECTION_DISABLED = "connection_disabled"
    RECONNECT_REQUIRED = "reconnect_required"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    PROVIDER_REJECTED = "provider_rejected"

    # Sync
    MAPPING_FAILED = "mapping_failed"
    CROSS_TENANT_CONFLICT = "cross_tenant_conflict"
    UNSUPPORTED_OPERATION = "unsupported_operation"

    # Webhooks
    INVALID_SIGNATURE = "invalid_signature"

    # General errors
    VALIDATION_ERROR = "validation_error"
    INTERNAL_ERROR = "internal_error"
    SERVICE_UNAVAILABLE = "service_unavailable"


# User-friendly error messages
ERROR_MESSAGES = {
    ErrorCode.NOT_CONNECTED: "This accounting provider is not connected. Please connect it first.",
    ErrorCode.CONNECTION_DISABLED: "This accounting connection has been disabled. Please reconnect your account.",
    ErrorCode.RECONNECT_REQUIRED: "The accounting provider revoked access. Please reconnect your account.",
    ErrorCode.PROVIDER_UNAVAILABLE: "The accounting provider is temporarily unavailable. Please try again in a moment.",
    ErrorCode.PROVIDER_REJECTED: "The accounting provider rejected the request.",
    ErrorCode.MAPPING_FAILED: "Some provider data could not be read.",
    ErrorCode.CROSS_TENANT_CONFLICT: "This record is already linked to another organization.",
    ErrorCode.UNSUPPORTED_OPERATION: "This operation is not supported for this provider.",
    ErrorCode.INVALID_SIGNATURE: "Invalid signature.",
    ErrorCode.VALIDATION_ERROR: "Invalid request. Please check your input and try again.",
    ErrorCode.INTERNAL_ERROR: "An unexpected error occurred. Please try again later.",
    ErrorCode.SERVICE_UNAVAILABLE: "Service temporarily unavailable. Please try again in a moment.",
}


def sanitize_error_message(
    exception: Exception,
    error_code: ErrorCode,
    log_details: bool = True,
) -> str:
    """
    Sanitize error message for user-facing responses.

    Logs full exception details internally but returns user-friendly message.

    Args:
        exception: The exception that occurred
        error_code: Error code for categorization
        log_details: Whether to log full exception details

    Returns:
        User-friendly error message
    """
    if log_details:
        logger.error(
            "Error [%s]: %s",
            error_code.value,
            str(exception),
            exc_info=exception,
        )

    return ERROR_MESSAGES.get(error_code, ERROR_MESSAGES[ErrorCode.INTERNAL_ERROR])


def get_error_code_for_exception(exception: Exception) -> tuple[ErrorCode, int]:
    """
    Map exception types to error codes and HTTP status codes.

    Args:
        exception: The exception that occurred

    Returns:
        Tuple of (error_code, http_status_code)
    """
    if isinstance(exception, NotConnected):
        return ErrorCode.NOT_CONNECTED, status.HTTP_404_NOT_FOUND

    if isinstance(exception, CredentialDisabled):
        return ErrorCode.CONNECTION_DISABLED, status.HTTP_409_CONFLICT

    if isinstance(exception, RefreshPermanentError):
        return ErrorCode.RECONNECT_REQUIRED, status.HTTP_401_UNAUTHORIZED

    if isinstance(exception, (RefreshTransientError, ProviderTransientError)):
        return ErrorCode.PROVIDER_UNAVAILABLE, status.HTTP_503_SERVICE_UNAVAILABLE

    if isinstance(exception, ProviderPermanentError):
        return ErrorCode.PROVIDER_REJECTED, status.HTTP_502_BAD_GATEWAY

    if isinstance(exception, MappingError):
        return ErrorCode.MAPPING_FAILED, status.HTTP_422_UNPROCESSABLE_ENTITY

    if isinstance(exception, CrossTenantConflictError):
        return ErrorCode.CROSS_TENANT_CONFLICT, status.HTTP_409_CONFLICT

    if isinstance(exception, UnsupportedCapabilityError):
        return ErrorCode.UNSUPPORTED_OPERATION, status.HTTP_400_BAD_REQUEST

    if isinstance(exception, WebhookSignatureError):
        return ErrorCode.INVALID_SIGNATURE, status.HTTP_401_UNAUTHORIZED

    if isinstance(exception, ValueError):
        return ErrorCode.VALIDATION_ERROR, status.HTTP_400_BAD_REQUEST

    # Default to internal error
    return ErrorCode.INTERNAL_ERROR, status.HTTP_500_INTERNAL_SERVER_ERROR


async def integration_exception_handler(_request, exc: IntegrationError) -> JSONResponse:
    """
    Handler for the integration taxonomy.

    Expected conditions (not connected, disabled, provider down) are logged
    at warning level without a traceback.
    """
    error_code, http_status = get_error_code_for_exception(exc)
    logger.warning(
        "Integration error [%s] org=%s provider=%s: %s",
        error_code.value,
        exc.org_id,
        exc.provider,
        exc.message,
    )
    message = sanitize_error_message(exc, error_code, log_details=False)

    return JSONResponse(
        status_code=http_status,
        content={
            "error_code": error_code.value,
            "message": message,
        },
    )


async def global_exception_handler(_request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for FastAPI.

    Catches all unhandled exceptions and returns sanitized error responses.
    Excludes HTTPException (intentional responses) and ValidationError (FastAPI validation).
    """
    # Don't handle HTTPException - those are intentional responses
    if isinstance(exc, HTTPException):
        raise exc

    # Don't handle RequestValidationError - FastAPI handles this
    if isinstance(exc, RequestValidationError):
        raise exc

    error_code, http_status = get_error_code_for_exception(exc)
    message = sanitize_error_message(exc, error_code)

    return JSONResponse(
        status_code=http_status,
        content={
            "error_code": error_code.value,
            "message": message,
        },
    )
