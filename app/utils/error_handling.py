"""
Error Handling Module for Allotment

This module provides centralized error handling with:
- Custom exception hierarchy for caller and infrastructure errors
- Standardized error responses
- Error logging

Business denials (unknown feature, not entitled, limit reached) are never
raised; they are returned as denied entitlement results.
"""

from enum import Enum
from typing import Any, Dict, Optional, Union
from uuid import UUID
import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import (
    SQLAlchemyError,
    IntegrityError,
    OperationalError,
)
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.utils.clock import utcnow

# Configure logging
logger = logging.getLogger("allotment.errors")


class ErrorCode(str, Enum):
    """Standardized error codes for the application"""

    # Validation Errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_WEBHOOK_URL = "INVALID_WEBHOOK_URL"
    INVALID_QUANTITY = "INVALID_QUANTITY"

    # Authorization Errors (401/403)
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    # Resource Errors (404/409)
    NOT_FOUND = "NOT_FOUND"
    FEATURE_NOT_FOUND = "FEATURE_NOT_FOUND"
    PACKAGE_NOT_FOUND = "PACKAGE_NOT_FOUND"
    PRINCIPAL_NOT_FOUND = "PRINCIPAL_NOT_FOUND"
    WEBHOOK_NOT_FOUND = "WEBHOOK_NOT_FOUND"
    DELIVERY_NOT_FOUND = "DELIVERY_NOT_FOUND"
    ALERT_NOT_FOUND = "ALERT_NOT_FOUND"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"

    # Business Logic Errors (422)
    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"
    WEBHOOK_INACTIVE = "WEBHOOK_INACTIVE"

    # Storage Errors (409/500/503)
    DATABASE_ERROR = "DATABASE_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"

    # Internal Errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppException(Exception):
    """Base exception for all application exceptions"""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.field = field
        self.original_error = original_error
        self.timestamp = utcnow()
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response"""
        result = {
            "code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat() + "Z",
        }
        if self.field:
            result["field"] = self.field
        if self.details:
            result["details"] = self.details
        return result


# ============================================================================
# Validation Exceptions
# ============================================================================

class ValidationException(AppException):
    """Base validation exception"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
            field=field,
        )


class InvalidWebhookUrlException(ValidationException):
    """Webhook URL is malformed or points at a private address"""

    def __init__(self, url: str, reason: str):
        super().__init__(
            message=f"Invalid webhook URL: {reason}",
            field="url",
            code=ErrorCode.INVALID_WEBHOOK_URL,
            details={"url": url, "reason": reason},
        )


class InvalidQuantityException(ValidationException):
    """Usage quantity must be a positive integer"""

    def __init__(self, quantity: Any):
        super().__init__(
            message=f"Invalid quantity: {quantity}. Quantity must be at least 1.",
            field="quantity",
            code=ErrorCode.INVALID_QUANTITY,
            details={"provided_quantity": quantity},
        )


# ============================================================================
# Resource Exceptions
# ============================================================================

class NotFoundException(AppException):
    """Resource not found exception"""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[Union[str, UUID]] = None,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND,
    ):
        if message is None:
            if resource_id:
                message = f"{resource_type} with ID '{resource_id}' not found"
            else:
                message = f"{resource_type} not found"
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": str(resource_id) if resource_id else None},
        )


class FeatureNotFoundException(NotFoundException):
    """Feature code is not in the catalog"""

    def __init__(self, feature_code: str):
        super().__init__(
            resource_type="Feature",
            message=f"Feature '{feature_code}' does not exist.",
            code=ErrorCode.FEATURE_NOT_FOUND,
        )


class PackageNotFoundException(NotFoundException):
    """Package code is unknown or inactive"""

    def __init__(self, package_code: str):
        super().__init__(
            resource_type="Package",
            message=f"Package '{package_code}' not found",
            code=ErrorCode.PACKAGE_NOT_FOUND,
        )


class PrincipalNotFoundException(NotFoundException):
    """Workspace or namespace does not exist"""

    def __init__(self, kind: str, principal_id: Union[str, UUID]):
        super().__init__(
            resource_type=kind.capitalize(),
            resource_id=principal_id,
            code=ErrorCode.PRINCIPAL_NOT_FOUND,
        )


class WebhookNotFoundException(NotFoundException):
    """Webhook not found"""

    def __init__(self, webhook_id: Union[str, UUID]):
        super().__init__(
            resource_type="Webhook",
            resource_id=webhook_id,
            code=ErrorCode.WEBHOOK_NOT_FOUND,
        )


class DeliveryNotFoundException(NotFoundException):
    """Webhook delivery not found"""

    def __init__(self, delivery_id: Union[str, UUID]):
        super().__init__(
            resource_type="Webhook delivery",
            resource_id=delivery_id,
            code=ErrorCode.DELIVERY_NOT_FOUND,
        )


class AlertNotFoundException(NotFoundException):
    """Usage alert not found"""

    def __init__(self, alert_id: Union[str, UUID]):
        super().__init__(
            resource_type="Usage alert",
            resource_id=alert_id,
            code=ErrorCode.ALERT_NOT_FOUND,
        )


class ConflictException(AppException):
    """Resource conflict exception"""

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        code: ErrorCode = ErrorCode.RESOURCE_CONFLICT,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        if resource_type:
            _details["resource_type"] = resource_type
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=_details,
        )


# ============================================================================
# Business Logic Exceptions
# ============================================================================

class BusinessRuleException(AppException):
    """Business rule violation exception"""

    def __init__(
        self,
        message: str,
        rule: Optional[str] = None,
        code: ErrorCode = ErrorCode.BUSINESS_RULE_VIOLATION,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        if rule:
            _details["violated_rule"] = rule
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=_details,
        )


class WebhookInactiveException(BusinessRuleException):
    """Manual retry refused because the webhook circuit is open"""

    def __init__(self, webhook_id: Union[str, UUID]):
        super().__init__(
            message="Cannot retry delivery for inactive webhook",
            rule="WEBHOOK_ACTIVE",
            code=ErrorCode.WEBHOOK_INACTIVE,
            details={"webhook_id": str(webhook_id)},
        )


# ============================================================================
# Exception Handlers
# ============================================================================

# Status codes raised as plain HTTPException (service key guard, routing)
HTTP_STATUS_CODES = {
    400: ErrorCode.INVALID_INPUT,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.INVALID_INPUT,
    409: ErrorCode.RESOURCE_CONFLICT,
    422: ErrorCode.VALIDATION_ERROR,
}


def create_error_response(
    code: ErrorCode,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
    field: Optional[str] = None,
) -> JSONResponse:
    """Build the {"detail": {...}} envelope shared by every error response"""
    body: Dict[str, Any] = {
        "code": code.value,
        "message": message,
        "timestamp": utcnow().isoformat() + "Z",
    }
    if field:
        body["field"] = field
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content={"detail": body})


def _request_context(request: Request) -> Dict[str, Any]:
    return {"path": request.url.path, "method": request.method}


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Caller errors log at warning; anything 5xx logs at error with the cause"""
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        level,
        f"{exc.code.value}: {exc.message}",
        extra={**_request_context(request), "code": exc.code.value, "details": exc.details},
        exc_info=exc.original_error,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    logger.warning(f"HTTP {exc.status_code}: {message}", extra=_request_context(request))
    return create_error_response(
        code=HTTP_STATUS_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR),
        message=message,
        status_code=exc.status_code,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request validation failures; the first offending field is surfaced as `field`"""
    errors = [
        {
            # Drop the "body"/"query"/"path" prefix so field names match the API docs
            "field": ".".join(str(loc) for loc in error["loc"][1:]) or str(error["loc"][0]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.warning(
        f"Request validation failed with {len(errors)} error(s)",
        extra={**_request_context(request), "errors": errors},
    )
    return create_error_response(
        code=ErrorCode.VALIDATION_ERROR,
        message="Request validation failed",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        details={"errors": errors},
        field=errors[0]["field"] if errors else None,
    )


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Storage failures propagate out of the services and end here"""
    if isinstance(exc, IntegrityError):
        code, status_code, message = (
            ErrorCode.DATA_INTEGRITY_ERROR,
            status.HTTP_409_CONFLICT,
            "Request conflicts with existing entitlement data",
        )
    elif isinstance(exc, OperationalError):
        code, status_code, message = (
            ErrorCode.CONNECTION_ERROR,
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "Entitlement storage is unavailable",
        )
    else:
        code, status_code, message = (
            ErrorCode.DATABASE_ERROR,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "A database error occurred",
        )

    logger.error(
        f"{type(exc).__name__}: {exc}",
        extra=_request_context(request),
        exc_info=True,
    )
    return create_error_response(code=code, message=message, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.critical(
        f"Unhandled {type(exc).__name__}: {exc}",
        extra=_request_context(request),
        exc_info=True,
    )
    return create_error_response(
        code=ErrorCode.INTERNAL_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


__all__ = [
    # Base
    "AppException",
    "ErrorCode",

    # Validation
    "ValidationException",
    "InvalidWebhookUrlException",
    "InvalidQuantityException",

    # Resource
    "NotFoundException",
    "FeatureNotFoundException",
    "PackageNotFoundException",
    "PrincipalNotFoundException",
    "WebhookNotFoundException",
    "DeliveryNotFoundException",
    "AlertNotFoundException",
    "ConflictException",

    # Business Logic
    "BusinessRuleException",
    "WebhookInactiveException",

    # Handlers
    "setup_exception_handlers",
    "create_error_response",
]
