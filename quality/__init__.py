# quality/__init__.py
"""Rule checking, quality scoring and repair of generated prose."""

from .evaluator import QualityEvaluator
from .repair_engine import RepairEngine
from .rule_checker import RuleChecker, rule_score

__all__ = ["QualityEvaluator", "RepairEngine", "RuleChecker", "rule_score"]
