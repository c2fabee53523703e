"""
Fleet state and scaling decision endpoints
"""

from fastapi import APIRouter, Depends, Query

from fleetctl.core.fleet_controller import FleetController

from .api_dependencies import get_controller
from .response_model import DecisionHistoryResponse, FleetResponse

router = APIRouter()


@router.get("/fleet", response_model=FleetResponse)
async def get_fleet(controller: FleetController = Depends(get_controller)):
    """Current fleet snapshot with cooldowns and any deferred decision"""
    snapshot = controller.snapshot().to_dict()
    deferred = controller.deferred_decision

    return FleetResponse(
        **snapshot,
        cooldowns=controller.planner.cooldown_status(),
        deferred_decision=deferred.to_dict() if deferred else None,
        alarms=controller.alarm_states,
    )


@router.get("/fleet/decisions", response_model=DecisionHistoryResponse)
async def get_decisions(
    limit: int = Query(20, ge=1, le=1000),
    include_holds: bool = False,
    controller: FleetController = Depends(get_controller),
):
    """Recent planner decisions, newest last"""
    decisions = [
        d
        for d in controller.planner.get_scaling_history(limit=1000)
        if include_holds or d["direction"] != "hold"
    ][-limit:]
    return DecisionHistoryResponse(decisions=decisions, total=len(decisions))
