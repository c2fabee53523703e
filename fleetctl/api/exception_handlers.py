"""
Exception Handlers for FastAPI Application
"""

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from fleetctl.core.exceptions import (
    DeploymentInProgressError,
    FleetControllerError,
    InvalidPlanError,
    RollbackFailedError,
)
from fleetctl.utils.logger import get_logger

from .api_dependencies import create_error_response

logger = get_logger(__name__)

STATUS_CODES = {
    InvalidPlanError: 422,
    DeploymentInProgressError: 409,
    RollbackFailedError: 500,
}


async def http_exception_handler(request: Request, exc) -> JSONResponse:
    """Handle HTTP exceptions with standardized error response"""
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(exc.status_code, str(exc.detail)).model_dump(),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle validation errors with per-field messages"""
    error_details = []

    for error in exc.errors():
        field_path = " -> ".join(str(loc) for loc in error["loc"])
        if error["type"] == "missing":
            error_details.append(f"Missing required field: '{field_path}'")
        else:
            error_details.append(f"Invalid value for '{field_path}': {error['msg']}")

    return JSONResponse(
        status_code=422,
        content=create_error_response(
            422, "Invalid request body", "; ".join(error_details)
        ).model_dump(),
    )


async def controller_exception_handler(
    request: Request, exc: FleetControllerError
) -> JSONResponse:
    """Map controller errors onto HTTP status codes"""
    status_code = STATUS_CODES.get(type(exc), 500 if not exc.recoverable else 400)
    if status_code >= 500:
        logger.error(f"Controller error: {exc}", error_type=exc.error_type)

    return JSONResponse(
        status_code=status_code,
        content=create_error_response(
            status_code, str(exc), error_type=exc.error_type
        ).model_dump(),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle general exceptions with logging"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content=create_error_response(500, "Internal server error", str(exc)).model_dump(),
    )
