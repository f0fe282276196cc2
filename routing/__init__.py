# routing/__init__.py
from .model_router import FailureHistory, ModelRouter, RouteTrace, RoutingPlan

__all__ = ["FailureHistory", "ModelRouter", "RouteTrace", "RoutingPlan"]
