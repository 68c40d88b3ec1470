"""
Pricing Calculator — measurements and selected services in, priced quote out.

compute_pricing() is a pure function: the same inputs always produce the same
PricingState.  The discount amount is supplied by the discount resolver and is
only clamped here, never recomputed.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional, Union

from proposal_engine.config import get_settings
from proposal_engine.exceptions import InvalidInputError
from proposal_engine.models.enums import PricingTier, SurfaceCondition, UrgencyLevel
from proposal_engine.models.schemas import LineItem, Measurements, PricingState, TierPricing
from proposal_engine.pricing.catalog import (
    CONDITION_MULTIPLIERS,
    SERVICE_CATALOG,
    TIER_MULTIPLIERS,
    URGENCY_MULTIPLIERS,
)

logger = logging.getLogger(__name__)


def round_money(value: float) -> float:
    """Round a currency amount to cents."""
    return round(value + 0.0, 2)


def calculate_line_item_total(quantity: float, unit_price: float) -> float:
    return round_money(max(0.0, quantity) * unit_price)


def calculate_net_sqft(total_sqft: float, deduction_sqft: float) -> float:
    return max(0.0, max(0.0, total_sqft) - max(0.0, deduction_sqft))


def build_line_items(
    measurements: Measurements,
    selected_service_ids: Iterable[str],
) -> list[LineItem]:
    """One line item per selected catalog service with a non-zero quantity."""
    items: list[LineItem] = []
    for service_id in selected_service_ids:
        service = SERVICE_CATALOG.get(service_id)
        if service is None:
            logger.debug(f"Skipping unknown service id '{service_id}'")
            continue

        quantity = float(getattr(measurements, service.measurement_field))
        if quantity <= 0:
            continue

        items.append(LineItem(
            service_id=service.id,
            name=service.name,
            description=service.description,
            quantity=quantity,
            unit=service.unit,
            unit_price=service.unit_price,
            total=calculate_line_item_total(quantity, service.unit_price),
        ))
    return items


def calculate_tier_pricing(
    subtotal: float,
    surface_condition: SurfaceCondition,
    tax_rate: float,
) -> TierPricing:
    """Comparison totals for every tier under the same condition and tax."""
    condition = CONDITION_MULTIPLIERS[SurfaceCondition(surface_condition)]
    return TierPricing(**{
        tier.value: round_money(subtotal * multiplier * condition * (1 + tax_rate))
        for tier, multiplier in TIER_MULTIPLIERS.items()
    })


def apply_urgency(amount: float, urgency: Union[UrgencyLevel, str]) -> float:
    """Rush-job display price. Not part of the authoritative total."""
    return round_money(amount * URGENCY_MULTIPLIERS[UrgencyLevel(urgency)])


def _validate_rates(tax_rate: float, deposit_percent: float, total_discount_amount: float) -> None:
    if not 0 <= tax_rate <= 1:
        raise InvalidInputError(
            f"tax_rate must be between 0 and 1, got {tax_rate}", {"tax_rate": tax_rate}
        )
    if not 0 <= deposit_percent <= 100:
        raise InvalidInputError(
            f"deposit_percent must be between 0 and 100, got {deposit_percent}",
            {"deposit_percent": deposit_percent},
        )
    if total_discount_amount < 0:
        raise InvalidInputError(
            "total_discount_amount cannot be negative",
            {"total_discount_amount": total_discount_amount},
        )


def compute_pricing(
    measurements: Union[Measurements, dict[str, Any]],
    selected_service_ids: Iterable[str],
    custom_line_items: Iterable[Union[LineItem, dict[str, Any]]] = (),
    tier: Union[PricingTier, str] = PricingTier.STANDARD,
    surface_condition: Union[SurfaceCondition, str] = SurfaceCondition.GOOD,
    tax_rate: Optional[float] = None,
    deposit_percent: Optional[float] = None,
    total_discount_amount: float = 0.0,
) -> PricingState:
    """
    Price a proposal.

    tax_rate and deposit_percent default to the organization settings.
    Raises InvalidInputError when either is out of range.
    """
    settings = get_settings()
    tax_rate = settings.default_tax_rate if tax_rate is None else tax_rate
    deposit_percent = settings.default_deposit_percent if deposit_percent is None else deposit_percent
    _validate_rates(tax_rate, deposit_percent, total_discount_amount)

    if not isinstance(measurements, Measurements):
        measurements = Measurements.model_validate(measurements or {})
    tier = PricingTier(tier)
    surface_condition = SurfaceCondition(surface_condition)

    line_items = build_line_items(measurements, selected_service_ids)
    line_items.extend(
        item if isinstance(item, LineItem) else LineItem.model_validate(item)
        for item in custom_line_items
    )

    subtotal = round_money(sum(item.total for item in line_items))
    tiered_subtotal = subtotal * TIER_MULTIPLIERS[tier]
    condition_multiplier = CONDITION_MULTIPLIERS[surface_condition]
    condition_adjustment = round_money(tiered_subtotal * (condition_multiplier - 1))
    adjusted_subtotal = round_money(tiered_subtotal * condition_multiplier)

    discount_amount = round_money(min(total_discount_amount, adjusted_subtotal))
    after_discount = round_money(max(0.0, adjusted_subtotal - discount_amount))
    tax_amount = round_money(after_discount * tax_rate)
    total = round_money(after_discount + tax_amount)
    deposit_amount = round_money(total * deposit_percent / 100)

    return PricingState(
        subtotal=subtotal,
        condition_adjustment=condition_adjustment,
        adjusted_subtotal=adjusted_subtotal,
        discount_amount=discount_amount,
        tax_amount=tax_amount,
        total=total,
        deposit_amount=deposit_amount,
        tier_pricing=calculate_tier_pricing(subtotal, surface_condition, tax_rate),
        line_items=line_items,
    )
