from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy.exc import SQLAlchemyError

from core.logging import structured_logger
from .api_exceptions import APIException, CheckoutException
from .utils import format_error_response, get_correlation_id


async def api_exception_handler(request: Request, exc: APIException) -> JSONResponse:
    """Handle custom API exceptions"""
    extra = {}
    if isinstance(exc, CheckoutException) and exc.product_id:
        extra["product_id"] = exc.product_id
        if exc.available is not None:
            extra["available"] = exc.available
    if getattr(exc, "errors", None):
        extra["errors"] = exc.errors

    if exc.status_code >= 500:
        structured_logger.error(
            message=exc.message,
            endpoint=request.url.path,
            metadata={
                "error_code": exc.error_code,
                "correlation_id": exc.correlation_id,
                "provider_message": getattr(exc, "provider_message", None),
            },
        )

    return JSONResponse(
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
        content={
            "success": False,
            "message": exc.message,
            "error_code": exc.error_code,
            "correlation_id": exc.correlation_id,
            "timestamp": exc.timestamp,
            "detail": exc.detail if exc.detail != exc.message else None,
            **extra,
        }
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle standard HTTP exceptions"""
    return JSONResponse(
        status_code=exc.status_code,
        content=format_error_response(
            message=str(exc.detail),
            status_code=exc.status_code,
            error_code=f"HTTP_{exc.status_code}",
        )
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle validation errors"""
    errors = {}
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"][1:])  # Skip 'body' prefix
        errors[field or "body"] = error["msg"]

    return JSONResponse(
        status_code=422,
        content=format_error_response(
            message="Validation failed",
            status_code=422,
            error_code="VALIDATION_ERROR",
            errors=errors,
        )
    )


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Handle SQLAlchemy database errors"""
    correlation_id = get_correlation_id()

    structured_logger.error(
        message="Database error",
        endpoint=request.url.path,
        metadata={"correlation_id": correlation_id},
        exception=exc,
    )

    return JSONResponse(
        status_code=500,
        content=format_error_response(
            message="A database error occurred",
            status_code=500,
            error_code="DATABASE_ERROR",
            correlation_id=correlation_id,
        )
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions"""
    correlation_id = get_correlation_id()

    structured_logger.critical(
        message="Unexpected error",
        endpoint=request.url.path,
        metadata={"correlation_id": correlation_id},
        exception=exc,
    )

    return JSONResponse(
        status_code=500,
        content=format_error_response(
            message="An unexpected error occurred",
            status_code=500,
            error_code="INTERNAL_ERROR",
            correlation_id=correlation_id,
        )
    )
