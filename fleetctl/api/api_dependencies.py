"""
API Dependencies and Global State Management
"""

import uuid
from datetime import datetime
from typing import Optional

from fastapi import HTTPException

from fleetctl.core.fleet_controller import FleetController

from .response_model import ErrorResponse

# Global variables for dependency injection
controller: Optional[FleetController] = None
service_start_time: datetime = datetime.now()


def create_error_response(
    error_code: int,
    message: str,
    detail: str = "",
    error_type: str = "",
    request_id: str = "",
) -> ErrorResponse:
    """Create standardized error response"""
    return ErrorResponse(
        error_code=error_code,
        message=message,
        detail=detail,
        error_type=error_type,
        request_id=request_id or str(uuid.uuid4()),
    )


def get_controller() -> FleetController:
    """Get fleet controller dependency with proper error handling"""
    if controller is None:
        raise HTTPException(
            status_code=503,
            detail="Service unavailable: Fleet controller not initialized",
        )
    return controller


def initialize_dependencies(fleet_controller: Optional[FleetController]) -> None:
    """Install (or clear) the controller served by the API"""
    global controller, service_start_time
    controller = fleet_controller
    service_start_time = datetime.now()


def get_uptime() -> str:
    uptime = datetime.now() - service_start_time
    return str(uptime).split(".")[0]  # Remove microseconds
