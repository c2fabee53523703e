"""
Controller exception taxonomy.

Everything below FleetControllerError except RollbackFailedError is
recoverable: the reconcile loop or the orchestrator handles it and the
fleet keeps running.
"""

import time
from typing import Any, Dict, Optional


class FleetControllerError(Exception):
    """Base exception for all controller errors."""

    recoverable = True

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}
        self.timestamp = time.time()
        self.error_type = self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_type": self.error_type,
            "message": str(self),
            "context": self.context,
            "recoverable": self.recoverable,
            "timestamp": self.timestamp,
        }


class NoSamplesError(FleetControllerError):
    """The planner's evaluation window holds no samples."""

    def __init__(self, window: float, **kwargs):
        self.window = window
        super().__init__(
            f"No utilization samples in the last {window:g}s", **kwargs
        )


class InvalidPlanError(FleetControllerError):
    """A deployment plan failed validation."""

    def __init__(self, reason: str, **kwargs):
        self.reason = reason
        super().__init__(f"Invalid deployment plan: {reason}", **kwargs)


class DeploymentInProgressError(FleetControllerError):
    """Another deployment holds the fleet's deployment lock."""

    def __init__(self, active_deployment_id: str, **kwargs):
        self.active_deployment_id = active_deployment_id
        super().__init__(
            f"Deployment {active_deployment_id} is still in progress", **kwargs
        )


class BatchHealthTimeoutError(FleetControllerError):
    """A batch did not become healthy within its timeout."""

    def __init__(
        self,
        unit_ids,
        timeout: float,
        unhealthy_units=None,
        **kwargs,
    ):
        self.unit_ids = list(unit_ids)
        self.timeout = timeout
        self.unhealthy_units = list(unhealthy_units or [])

        if self.unhealthy_units:
            message = (
                f"Batch failed health checks: "
                f"{', '.join(self.unhealthy_units)} unhealthy"
            )
        else:
            message = f"Batch not healthy after {timeout:g}s"

        super().__init__(message, **kwargs)


class RollbackFailedError(FleetControllerError):
    """Rollback could not restore the previous version. Needs an operator."""

    recoverable = False

    def __init__(self, deployment_id: str, attempts: int, cause: str = "", **kwargs):
        self.deployment_id = deployment_id
        self.attempts = attempts
        self.cause = cause

        message = f"Rollback of deployment {deployment_id} failed after {attempts} attempts"
        if cause:
            message += f": {cause}"

        super().__init__(message, **kwargs)


class ProviderError(FleetControllerError):
    """A compute, load balancer or metrics backend call failed."""

    def __init__(self, operation: str, detail: str = "", **kwargs):
        self.operation = operation
        self.detail = detail

        message = f"Provider operation '{operation}' failed"
        if detail:
            message += f": {detail}"

        super().__init__(message, **kwargs)
