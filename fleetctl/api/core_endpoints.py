"""
Core Service Endpoints (Service Info, Health, Metrics)
"""

from datetime import datetime

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST

from fleetctl.config.config_manager import get_config
from fleetctl.core.fleet_controller import FleetController

from .api_dependencies import get_controller, get_uptime
from .response_model import HealthResponse, ServiceInfoResponse

router = APIRouter()


@router.get("/", response_model=ServiceInfoResponse)
async def service_info(controller: FleetController = Depends(get_controller)):
    """Get service information and status"""
    return ServiceInfoResponse(
        service="Fleet Capacity Controller",
        version=get_config().api_version,
        fleet_name=controller.fleet.fleet_name,
        status="running" if controller.is_running else "stopped",
        uptime=get_uptime(),
        endpoints={
            "service_info": "/",
            "health_check": "/health",
            "fleet_snapshot": "/fleet",
            "scaling_decisions": "/fleet/decisions",
            "start_deployment": "POST /deployments",
            "current_deployment": "/deployments/current",
            "cancel_deployment": "POST /deployments/current/cancel",
            "deployment_history": "/deployments/history",
            "prometheus_metrics": "/metrics",
            "api_documentation": "/docs",
        },
        timestamp=datetime.now().isoformat(),
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(controller: FleetController = Depends(get_controller)):
    """Controller health. 206 while the fleet has not converged."""
    snapshot = controller.snapshot()
    converged = (
        snapshot.running_count == snapshot.desired_count
        and snapshot.pending_count == 0
    )

    response = HealthResponse(
        status="healthy" if converged else "degraded",
        version=get_config().api_version,
        timestamp=datetime.now().isoformat(),
        uptime=get_uptime(),
        controller_running=controller.is_running,
        fleet_converged=converged,
        unit_health=controller.health_gate.get_stats(),
        deployment_stats=controller.orchestrator.get_deployment_stats(),
    )

    if not converged:
        return JSONResponse(status_code=206, content=response.model_dump())
    return response


@router.get("/metrics")
async def prometheus_metrics(controller: FleetController = Depends(get_controller)):
    """Prometheus metrics in text exposition format"""
    return Response(
        content=controller.exporter.get_metrics(), media_type=CONTENT_TYPE_LATEST
    )
