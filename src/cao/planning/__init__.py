"""Operation planning helpers."""

from .planner import PlannedBatch, REQUIRED_PARAMS, missing_params, plan_operations

__all__ = ["PlannedBatch", "REQUIRED_PARAMS", "missing_params", "plan_operations"]
