"""Pricing — service catalog, multipliers and the pure quote calculator."""

from proposal_engine.pricing.calculator import (
    apply_urgency,
    build_line_items,
    calculate_line_item_total,
    calculate_net_sqft,
    calculate_tier_pricing,
    compute_pricing,
    round_money,
)
from proposal_engine.pricing.catalog import (
    CONDITION_MULTIPLIERS,
    SERVICE_CATALOG,
    TIER_MULTIPLIERS,
    URGENCY_MULTIPLIERS,
)

__all__ = [
    "apply_urgency",
    "build_line_items",
    "calculate_line_item_total",
    "calculate_net_sqft",
    "calculate_tier_pricing",
    "compute_pricing",
    "round_money",
    "CONDITION_MULTIPLIERS",
    "SERVICE_CATALOG",
    "TIER_MULTIPLIERS",
    "URGENCY_MULTIPLIERS",
]
