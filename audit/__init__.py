# audit/__init__.py
"""Append-only generation audit log and the cost views built on it."""

from .cost_monitor import BudgetConfig, CostAlert, CostMonitor, CostStats
from .generation_logger import ExecutionContext, GenerationLogger

__all__ = [
    "BudgetConfig",
    "CostAlert",
    "CostMonitor",
    "CostStats",
    "ExecutionContext",
    "GenerationLogger",
]
