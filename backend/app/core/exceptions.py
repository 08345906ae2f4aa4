"""
Custom exceptions and error handlers for consistent error responses.

Maps the dispatch core error taxonomy (transient network, invalid transition,
conflict, data invalid, not found) onto standardized error codes.
"""

import logging
from fastapi import HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class InvalidTransitionError(AppException):
    """Raised when an emergency call is asked to move to a status it cannot reach."""

    def __init__(self, call_id: str, current: str, target: str):
        super().__init__(
            message=f"Cannot move call {call_id} from {current} to {target}",
            error_code="ERR_DISPATCH_001",
            status_code=status.HTTP_409_CONFLICT,
            details={"call_id": call_id, "current": current, "target": target}
        )


class VehicleConflictError(AppException):
    """Raised when a vehicle is already claimed by another active call."""

    def __init__(self, vehicle_id: str, call_id: str = None):
        super().__init__(
            message=f"Vehicle {vehicle_id} is already claimed by another call",
            error_code="ERR_DISPATCH_002",
            status_code=status.HTTP_409_CONFLICT,
            details={"vehicle_id": vehicle_id, "call_id": call_id}
        )


class NoVehicleAvailableError(AppException):
    """Raised when auto-selection finds no live, unclaimed vehicle."""

    def __init__(self, call_id: str):
        super().__init__(
            message=f"No live vehicle available for call {call_id}",
            error_code="ERR_DISPATCH_003",
            status_code=status.HTTP_409_CONFLICT,
            details={"call_id": call_id}
        )


class DataInvalidError(AppException):
    """Raised for out-of-range coordinates and other invalid input data."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_DATA_001",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class TransientNetworkError(AppException):
    """Raised when the datastore or a provider cannot be reached in time."""

    def __init__(self, message: str = "Upstream temporarily unavailable", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_NET_001",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        404: "ERR_NOT_FOUND",
        409: "ERR_CONFLICT",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        }
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": jsonable_encoder(exc.errors())
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception: %s", type(exc).__name__)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
