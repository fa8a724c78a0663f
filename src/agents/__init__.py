"""Agent modules for AI-assisted plan extraction and reconciliation."""
from agents.extractors.plan import AnthropicPlanExtractor, PlanExtractor
from agents.reconcile import build_data_points, reconcile_with_rule_based, verify_snapshot

__all__ = [
    "AnthropicPlanExtractor",
    "PlanExtractor",
    "build_data_points",
    "reconcile_with_rule_based",
    "verify_snapshot",
]
