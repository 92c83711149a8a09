from .api_exceptions import (
    APIException,
    ValidationException,
    BadRequestException,
    CheckoutException,
    AuthenticationException,
    AuthorizationException,
    NotFoundException,
    ConflictException,
    PaymentException,
    DatabaseException,
    ExternalServiceException,
    ShipmentException,
    with_provider_detail,
)

from .handlers import (
    api_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    sqlalchemy_exception_handler,
    general_exception_handler
)

from .utils import (
    get_correlation_id,
    format_error_response
)

__all__ = [
    # Exceptions
    "APIException",
    "ValidationException",
    "BadRequestException",
    "CheckoutException",
    "AuthenticationException",
    "AuthorizationException",
    "NotFoundException",
    "ConflictException",
    "PaymentException",
    "DatabaseException",
    "ExternalServiceException",
    "ShipmentException",
    "with_provider_detail",

    # Handlers
    "api_exception_handler",
    "http_exception_handler",
    "validation_exception_handler",
    "sqlalchemy_exception_handler",
    "general_exception_handler",

    # Utils
    "get_correlation_id",
    "format_error_response"
]
