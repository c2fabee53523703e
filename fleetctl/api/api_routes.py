"""
FastAPI Application Factory
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from fleetctl.config.config_manager import get_config
from fleetctl.core.exceptions import FleetControllerError
from fleetctl.service.service_components import ServiceComponents
from fleetctl.utils.logger import get_logger

from . import (
    api_dependencies,
    core_endpoints,
    deployment_endpoints,
    exception_handlers,
    fleet_endpoints,
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the controller if none was installed, run it for the app's lifetime"""
    if api_dependencies.controller is None:
        controller = ServiceComponents().initialize_all(get_config())
        api_dependencies.initialize_dependencies(controller)

    controller = api_dependencies.controller
    logger.info("Fleet controller API starting up", fleet=controller.fleet.fleet_name)
    await controller.start()
    try:
        yield
    finally:
        await controller.stop()
        logger.info("Fleet controller API shutting down")


def create_app(api_prefix: str = "") -> FastAPI:
    """Create and configure FastAPI application"""
    api_config = {
        "title": "Fleet Capacity Controller API",
        "description": "Autoscaling, Spot/On-Demand placement and rolling deployments",
        "version": get_config().api_version,
        "lifespan": lifespan,
    }

    # Add root_path only if api_prefix is provided
    if api_prefix and api_prefix.strip():
        api_config["root_path"] = api_prefix

    app = FastAPI(**api_config)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register exception handlers
    app.add_exception_handler(HTTPException, exception_handlers.http_exception_handler)
    app.add_exception_handler(
        RequestValidationError, exception_handlers.validation_exception_handler
    )
    app.add_exception_handler(
        FleetControllerError, exception_handlers.controller_exception_handler
    )
    app.add_exception_handler(Exception, exception_handlers.general_exception_handler)

    # Include routers
    app.include_router(core_endpoints.router, tags=["Core"])
    app.include_router(fleet_endpoints.router, tags=["Fleet"])
    app.include_router(deployment_endpoints.router, tags=["Deployments"])

    return app


# Global app variable
app: Optional[FastAPI] = None


def initialize_app_with_config(api_prefix: str = "") -> FastAPI:
    """Initialize app with configuration"""
    global app
    app = create_app(api_prefix)
    return app
