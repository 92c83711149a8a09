from fastapi import HTTPException
from datetime import datetime, timezone
from uuid import uuid4
from typing import Any, Dict, Optional


class APIException(HTTPException):
    """Custom API exception with enhanced error details"""

    def __init__(
        self,
        status_code: int,
        message: str = "An unexpected API error occurred",
        detail: Optional[Any] = None,
        error_code: Optional[str] = None,
        correlation_id: Optional[str] = None,
        **kwargs
    ):
        self.message = message
        self.detail = detail or message
        self.error_code = error_code or f"ERR_{status_code}"
        self.correlation_id = correlation_id or str(uuid4())
        self.timestamp = datetime.now(timezone.utc).isoformat()

        super().__init__(status_code=status_code, detail=self.detail, **kwargs)

    def __str__(self) -> str:
        return self.message


class ValidationException(APIException):
    """Exception for schema validation errors"""

    def __init__(self, message: str = "Validation failed", errors: Optional[Dict[str, Any]] = None):
        self.errors = errors or {}
        super().__init__(
            status_code=422,
            message=message,
            error_code="VALIDATION_ERROR"
        )


class BadRequestException(APIException):
    """Exception for semantically invalid requests"""

    def __init__(self, message: str = "Bad request", error_code: str = "BAD_REQUEST"):
        super().__init__(
            status_code=400,
            message=message,
            error_code=error_code
        )


class CheckoutException(BadRequestException):
    """Checkout rejected before anything was written (empty cart, stock, availability)"""

    EMPTY_CART = "EMPTY_CART"
    GUEST_EMAIL_REQUIRED = "GUEST_EMAIL_REQUIRED"
    INVALID_CART_ITEMS = "INVALID_CART_ITEMS"
    PRODUCT_UNAVAILABLE = "PRODUCT_UNAVAILABLE"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"

    def __init__(self, message: str, error_code: str, product_id: Optional[str] = None, available: Optional[int] = None):
        self.product_id = product_id
        self.available = available
        super().__init__(message=message, error_code=error_code)


class AuthenticationException(APIException):
    """Exception for authentication errors"""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            status_code=401,
            message=message,
            error_code="AUTH_ERROR",
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthorizationException(APIException):
    """Exception for authorization errors"""

    def __init__(self, message: str = "Access denied"):
        super().__init__(
            status_code=403,
            message=message,
            error_code="AUTHORIZATION_ERROR"
        )


class NotFoundException(APIException):
    """Exception for resource not found errors"""

    def __init__(self, message: str = "Resource not found", resource: Optional[str] = None):
        self.resource = resource
        super().__init__(
            status_code=404,
            message=message,
            error_code="NOT_FOUND"
        )


class ConflictException(APIException):
    """Exception for conflict errors"""

    def __init__(self, message: str = "Resource conflict", error_code: str = "CONFLICT_ERROR"):
        super().__init__(
            status_code=409,
            message=message,
            error_code=error_code
        )


class PaymentException(APIException):
    """Payment could not be completed.

    The provider's own reason is kept on ``provider_message`` and only
    surfaced to admin callers.
    """

    def __init__(self, message: str = "Payment failed", provider_message: Optional[str] = None, status_code: int = 400):
        self.provider_message = provider_message
        super().__init__(
            status_code=status_code,
            message=message,
            error_code="PAYMENT_ERROR"
        )


class DatabaseException(APIException):
    """Exception for database errors"""

    def __init__(self, message: str = "Database error occurred"):
        super().__init__(
            status_code=500,
            message=message,
            error_code="DATABASE_ERROR"
        )


class ExternalServiceException(APIException):
    """Exception for external service errors"""

    def __init__(
        self,
        message: str = "External service error",
        service: Optional[str] = None,
        provider_message: Optional[str] = None,
        error_code: str = "EXTERNAL_SERVICE_ERROR",
    ):
        self.service = service
        self.provider_message = provider_message
        super().__init__(
            status_code=502,
            message=message,
            error_code=error_code
        )


class ShipmentException(ExternalServiceException):
    """Label purchase or carrier lookup failed; no order fields were written"""

    def __init__(self, message: str = "Failed to create shipment", provider_message: Optional[str] = None):
        super().__init__(
            message=message,
            service="shippo",
            provider_message=provider_message,
            error_code="SHIPMENT_ERROR"
        )


def with_provider_detail(exc: APIException) -> APIException:
    """Attach the provider's raw message as the response detail (admin callers)."""
    provider_message = getattr(exc, "provider_message", None)
    if provider_message:
        exc.detail = provider_message
    return exc
