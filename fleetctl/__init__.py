"""
fleetctl - fleet-capacity controller.

Autoscaling, Spot/On-Demand placement and health-gated rolling deployments
for a containerized service fleet.
"""

__version__ = "0.1.0"
