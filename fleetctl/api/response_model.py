from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# Request Models
class DeploymentRequest(BaseModel):
    """Deployment plan submitted by an operator.

    Omitted fields fall back to the configured deployment settings. Range
    checks happen in DeploymentPlan.validate so they surface as plan errors.
    """

    target_version: str
    batch_size: Optional[int] = None
    health_check_grace_period: Optional[float] = None
    rollback_on_failure: Optional[bool] = None
    stabilization_window: Optional[float] = None
    batch_timeout: Optional[float] = None
    deployment_timeout: Optional[float] = None
    rollback_attempts: Optional[int] = None
    batch_retries: Optional[int] = None
    secrets: Dict[str, str] = Field(
        default_factory=dict,
        description="Environment variable name -> secret identifier",
    )


class CancelRequest(BaseModel):
    reason: str = "cancelled by operator"


# Response Models
class ErrorResponse(BaseModel):
    """Standard error response model"""

    error_code: int
    message: str
    detail: str = ""
    error_type: str = ""
    request_id: str = ""
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())


class ServiceInfoResponse(BaseModel):
    """Service information response"""

    service: str
    version: str
    fleet_name: str
    status: str
    uptime: str
    endpoints: Dict[str, str]
    timestamp: str


class HealthResponse(BaseModel):
    """Health check response"""

    status: str
    version: str
    timestamp: str
    uptime: str
    controller_running: bool
    fleet_converged: bool
    unit_health: Dict[str, int]
    deployment_stats: Dict[str, Any]


class PoolResponse(BaseModel):
    weight: int
    base: int
    priority: int
    current_count: int
    running_count: int
    pending_count: int


class FleetResponse(BaseModel):
    """Fleet snapshot"""

    fleet_name: str
    desired_count: int
    running_count: int
    pending_count: int
    min_count: int
    max_count: int
    current_version: Optional[str]
    active_deployment_id: Optional[str]
    pools: Dict[str, PoolResponse]
    timestamp: float
    cooldowns: Dict[str, float]
    deferred_decision: Optional[Dict[str, Any]] = None
    alarms: Dict[str, str] = Field(default_factory=dict)


class DecisionHistoryResponse(BaseModel):
    decisions: List[Dict[str, Any]]
    total: int


class DeploymentResponse(BaseModel):
    """One deployment's state"""

    deployment_id: str
    status: str
    plan: Dict[str, Any]
    previous_version: Optional[str]
    batches: List[Dict[str, Any]]
    transitions: List[Dict[str, Any]]
    error: Optional[str]
    started_at: float
    finished_at: Optional[float]


class DeploymentHistoryResponse(BaseModel):
    deployments: List[DeploymentResponse]
    stats: Dict[str, Any]
