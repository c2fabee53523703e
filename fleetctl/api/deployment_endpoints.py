"""
Deployment Endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, Query

from fleetctl.core.deployment_orchestrator import DeploymentPlan
from fleetctl.core.fleet_controller import FleetController

from .api_dependencies import get_controller
from .response_model import (
    CancelRequest,
    DeploymentHistoryResponse,
    DeploymentRequest,
    DeploymentResponse,
)

router = APIRouter(prefix="/deployments")


@router.post("", response_model=DeploymentResponse, status_code=202)
async def start_deployment(
    request: DeploymentRequest,
    controller: FleetController = Depends(get_controller),
):
    """Validate a plan and start rolling it out in the background.

    422 for an invalid plan, 409 while another deployment holds the lock.
    """
    overrides = request.model_dump(exclude={"target_version", "secrets"})
    plan = DeploymentPlan.from_settings(
        request.target_version, controller.config.deployment, **overrides
    )
    plan.secrets = dict(request.secrets)

    state = await controller.request_deployment(plan)
    return DeploymentResponse(**state.to_dict())


@router.get("/current", response_model=DeploymentResponse)
async def current_deployment(controller: FleetController = Depends(get_controller)):
    state = controller.orchestrator.active
    if state is None:
        raise HTTPException(status_code=404, detail="No deployment in progress")
    return DeploymentResponse(**state.to_dict())


@router.post("/current/cancel", response_model=DeploymentResponse, status_code=202)
async def cancel_deployment(
    request: CancelRequest = CancelRequest(),
    controller: FleetController = Depends(get_controller),
):
    """Cancel the active deployment; it rolls back to the previous version"""
    state = controller.orchestrator.active
    if state is None:
        raise HTTPException(status_code=404, detail="No deployment in progress")
    if not controller.cancel_deployment(request.reason):
        raise HTTPException(
            status_code=409,
            detail=f"Deployment {state.deployment_id} can no longer be cancelled",
        )
    return DeploymentResponse(**state.to_dict())


@router.get("/history", response_model=DeploymentHistoryResponse)
async def deployment_history(
    limit: int = Query(20, ge=1, le=100),
    controller: FleetController = Depends(get_controller),
):
    history = controller.orchestrator.get_history(limit)
    return DeploymentHistoryResponse(
        deployments=[DeploymentResponse(**entry) for entry in history],
        stats=controller.orchestrator.get_deployment_stats(),
    )
