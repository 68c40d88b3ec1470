"""
Discount Rules — per-source eligibility and amount calculation.

Each DiscountSource variant has its own rule function; evaluate_source()
dispatches on the variant with an exhaustive match.  Rules never raise for a
business rejection: they return a SourceEvaluation with a RejectionCode and a
human-readable reason.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional, assert_never

from proposal_engine.models.enums import (
    CustomerRestriction,
    DiscountSourceType,
    DiscountType,
    RejectionCode,
    VolumeMeasurement,
)
from proposal_engine.models.schemas import (
    AutoRuleCondition,
    AutoRuleSource,
    CustomerContext,
    DayOfWeekCondition,
    DiscountSource,
    FirstOrderCondition,
    LoyaltySource,
    ManualSource,
    OrderMinimumCondition,
    PromoCodeSource,
    ReferralSource,
    RepeatCustomerCondition,
    SeasonalMonthsCondition,
    SeasonalSource,
    ServiceComboCondition,
    ServiceQuantityCondition,
    SourceEvaluation,
    VolumeSource,
    VolumeTier,
)
from proposal_engine.pricing.calculator import round_money

logger = logging.getLogger(__name__)

# Lower value wins a savings tie (more specific source first)
SOURCE_PRIORITY: dict[DiscountSourceType, int] = {
    DiscountSourceType.PROMO_CODE: 0,
    DiscountSourceType.LOYALTY: 1,
    DiscountSourceType.VOLUME: 2,
    DiscountSourceType.SEASONAL: 3,
    DiscountSourceType.MANUAL: 4,
    DiscountSourceType.REFERRAL: 5,
    DiscountSourceType.AUTO_RULE: 6,
}


def calculate_discount(
    discount_type: DiscountType,
    value: float,
    subtotal: float,
    max_amount: Optional[float] = None,
) -> float:
    """Discount amount in currency, never more than the subtotal."""
    if subtotal <= 0 or value <= 0:
        return 0.0
    if DiscountType(discount_type) == DiscountType.PERCENT:
        amount = subtotal * value / 100
        if max_amount is not None:
            amount = min(amount, max_amount)
    else:
        amount = min(value, subtotal)
    return round_money(min(amount, subtotal))


# ── Result helpers ───────────────────────────────────────

def _reject(source: DiscountSource, code: RejectionCode, reason: str) -> SourceEvaluation:
    return SourceEvaluation(
        source_id=source.id,
        source_type=DiscountSourceType(source.source_type),
        name=source.name,
        description=source.description,
        eligible=False,
        code=code,
        reason=reason,
        discount_type=source.discount_type,
        discount_value=source.discount_value,
        stackable=source.stackable,
    )


def _accept(
    source: DiscountSource,
    subtotal: float,
    discount_type: Optional[DiscountType] = None,
    discount_value: Optional[float] = None,
    name: Optional[str] = None,
    description: Optional[str] = None,
) -> SourceEvaluation:
    discount_type = discount_type or source.discount_type
    discount_value = source.discount_value if discount_value is None else discount_value
    return SourceEvaluation(
        source_id=source.id,
        source_type=DiscountSourceType(source.source_type),
        name=name or source.name,
        description=source.description if description is None else description,
        eligible=True,
        discount_type=discount_type,
        discount_value=discount_value,
        max_discount_amount=source.max_discount_amount,
        estimated_savings=calculate_discount(
            discount_type, discount_value, subtotal, source.max_discount_amount
        ),
        stackable=source.stackable,
    )


def _window_rejection(
    source: DiscountSource,
    now: datetime,
    starts_at: Optional[datetime],
    expires_at: Optional[datetime],
    label: str,
) -> Optional[SourceEvaluation]:
    if starts_at is not None and now < starts_at:
        return _reject(source, RejectionCode.NOT_STARTED, f"This {label} is not active yet")
    if expires_at is not None and now > expires_at:
        return _reject(source, RejectionCode.EXPIRED, f"This {label} has expired")
    return None


def _services_match(applicable: list[str], selected: list[str]) -> bool:
    return not applicable or bool(set(applicable) & set(selected))


# ── Per-variant rules ────────────────────────────────────

def _evaluate_promo(source: PromoCodeSource, subtotal: float, ctx: CustomerContext) -> SourceEvaluation:
    if not source.is_active:
        return _reject(source, RejectionCode.INACTIVE, "Invalid or expired discount code")

    window = _window_rejection(source, ctx.current_time(), source.starts_at, source.expires_at, "discount code")
    if window:
        return window

    if source.max_uses_total is not None and source.uses_total >= source.max_uses_total:
        return _reject(source, RejectionCode.EXHAUSTED, "This discount code has reached its usage limit")

    if source.max_uses_per_customer is not None:
        used = ctx.promo_usage.get(source.id, 0)
        if used >= source.max_uses_per_customer:
            return _reject(source, RejectionCode.CUSTOMER_LIMIT, "You have already used this discount code")

    if subtotal < source.min_order_amount:
        return _reject(
            source, RejectionCode.MIN_ORDER, f"Minimum order of ${source.min_order_amount:,.2f} required"
        )

    if source.customer_restriction == CustomerRestriction.NEW_ONLY and not ctx.is_new_customer:
        return _reject(source, RejectionCode.CUSTOMER_TYPE, "This discount code is only valid for new customers")
    if source.customer_restriction == CustomerRestriction.EXISTING_ONLY and ctx.is_new_customer:
        return _reject(
            source, RejectionCode.CUSTOMER_TYPE, "This discount code is only valid for existing customers"
        )

    if source.access_code and (ctx.access_code or "").strip() != source.access_code:
        return _reject(source, RejectionCode.INVALID_CODE, "Invalid access code for this discount code")

    if not _services_match(source.applicable_services, ctx.selected_services):
        return _reject(
            source, RejectionCode.SERVICE_MISMATCH, "This discount code does not apply to the selected services"
        )

    return _accept(source, subtotal)


def _evaluate_loyalty(source: LoyaltySource, subtotal: float, ctx: CustomerContext) -> SourceEvaluation:
    if not source.is_active:
        return _reject(source, RejectionCode.INACTIVE, "Loyalty program is not active")
    if source.tier_discount_percent <= 0:
        tier = source.tier_name or "Current"
        return _reject(source, RejectionCode.NO_TIER_DISCOUNT, f"{tier} tier has no member discount")
    return _accept(
        source,
        subtotal,
        discount_type=DiscountType.PERCENT,
        discount_value=source.tier_discount_percent,
        description=source.description or f"{source.tier_discount_percent:g}% loyalty discount",
    )


def find_volume_tier(tiers: list[VolumeTier], value: float) -> Optional[VolumeTier]:
    """The tier containing ``value``; tiers are sorted by ``min``."""
    match: Optional[VolumeTier] = None
    for tier in tiers:
        if value >= tier.min and (tier.max is None or value <= tier.max):
            match = tier
    return match


def _evaluate_volume(source: VolumeSource, subtotal: float, ctx: CustomerContext) -> SourceEvaluation:
    if not source.is_active:
        return _reject(source, RejectionCode.INACTIVE, "Volume discount is not active")

    is_sqft = source.measurement == VolumeMeasurement.TOTAL_SQFT
    value = ctx.total_sqft if is_sqft else subtotal
    tier = find_volume_tier(source.tiers, value)
    if tier is None or tier.discount_percent <= 0:
        paying = [t for t in source.tiers if t.discount_percent > 0]
        if paying:
            threshold = f"{paying[0].min:,.0f} sq ft" if is_sqft else f"${paying[0].min:,.2f}"
            reason = f"Volume discount starts at {threshold}"
        else:
            reason = "No volume discount tiers configured"
        return _reject(source, RejectionCode.BELOW_THRESHOLD, reason)

    measured = f"{value:,.0f} sq ft" if is_sqft else f"${value:,.2f}"
    return _accept(
        source,
        subtotal,
        discount_type=DiscountType.PERCENT,
        discount_value=tier.discount_percent,
        name=f"{tier.label or 'Volume'} Discount",
        description=f"{tier.discount_percent:g}% off for {measured}",
    )


def _evaluate_seasonal(source: SeasonalSource, subtotal: float, ctx: CustomerContext) -> SourceEvaluation:
    if not source.is_active:
        return _reject(source, RejectionCode.INACTIVE, "This promotion is no longer active")

    window = _window_rejection(source, ctx.current_time(), source.starts_at, source.expires_at, "promotion")
    if window:
        return window

    if source.min_order_amount is not None and subtotal < source.min_order_amount:
        return _reject(
            source, RejectionCode.MIN_ORDER, f"Minimum order of ${source.min_order_amount:,.2f} required"
        )

    if not _services_match(source.applicable_services, ctx.selected_services):
        return _reject(
            source, RejectionCode.SERVICE_MISMATCH, "This promotion does not apply to the selected services"
        )

    return _accept(source, subtotal, description=source.banner_text or source.description)


def _evaluate_manual(source: ManualSource, subtotal: float, ctx: CustomerContext) -> SourceEvaluation:
    if not source.is_active or source.discount_value <= 0:
        return _reject(source, RejectionCode.NOT_ELIGIBLE, "Manual discount has no value")
    return _accept(source, subtotal)


def _evaluate_referral(source: ReferralSource, subtotal: float, ctx: CustomerContext) -> SourceEvaluation:
    if not source.is_active or source.discount_value <= 0:
        return _reject(source, RejectionCode.INACTIVE, "Referral discount is not active")
    if not ctx.is_new_customer:
        return _reject(source, RejectionCode.NOT_ELIGIBLE, "Referral discounts apply to new customers only")
    if ctx.customer_id and ctx.customer_id == source.referrer_customer_id:
        return _reject(source, RejectionCode.NOT_ELIGIBLE, "Customers cannot use their own referral code")
    return _accept(source, subtotal)


def in_month_range(month: int, start_month: int, end_month: int) -> bool:
    if start_month <= end_month:
        return start_month <= month <= end_month
    return month >= start_month or month <= end_month


def unmet_condition(condition: AutoRuleCondition, subtotal: float, ctx: CustomerContext) -> Optional[str]:
    """Why ``condition`` does not hold for this proposal, or None when it does."""
    match condition:
        case OrderMinimumCondition():
            if subtotal < condition.min_amount:
                return f"Minimum order of ${condition.min_amount:,.2f} required"
        case FirstOrderCondition():
            if not ctx.is_new_customer:
                return "Only valid on a first order"
        case RepeatCustomerCondition():
            if ctx.is_new_customer or ctx.total_orders < condition.min_orders:
                return f"Requires at least {condition.min_orders} previous order(s)"
        case ServiceComboCondition():
            selected = set(ctx.selected_services)
            required = set(condition.required_services)
            met = required <= selected if condition.require_all else bool(required & selected)
            if not met:
                joiner = " and " if condition.require_all else " or "
                return f"Requires {joiner.join(condition.required_services)}"
        case ServiceQuantityCondition():
            quantity = ctx.service_quantities.get(condition.service, 0.0)
            if quantity < condition.min_quantity:
                return f"Requires at least {condition.min_quantity:,g} of {condition.service}"
        case SeasonalMonthsCondition():
            month = ctx.current_time().month
            if not in_month_range(month, condition.start_month, condition.end_month):
                return "Outside the promotion months"
        case DayOfWeekCondition():
            # isoweekday: Monday=1 … Sunday=7
            if ctx.current_time().isoweekday() % 7 not in condition.days:
                return "Not available today"
        case _:
            assert_never(condition)
    return None


def _evaluate_auto_rule(source: AutoRuleSource, subtotal: float, ctx: CustomerContext) -> SourceEvaluation:
    if not source.is_active or source.discount_value <= 0:
        return _reject(source, RejectionCode.INACTIVE, "This automatic discount is not active")

    window = _window_rejection(source, ctx.current_time(), source.starts_at, source.expires_at, "discount")
    if window:
        return window

    reason = unmet_condition(source.condition, subtotal, ctx)
    if reason:
        return _reject(source, RejectionCode.CONDITION_NOT_MET, reason)
    return _accept(source, subtotal)


def evaluate_source(source: DiscountSource, subtotal: float, ctx: CustomerContext) -> SourceEvaluation:
    """Eligibility and estimated savings of one source against ``subtotal``."""
    match source:
        case PromoCodeSource():
            result = _evaluate_promo(source, subtotal, ctx)
        case LoyaltySource():
            result = _evaluate_loyalty(source, subtotal, ctx)
        case VolumeSource():
            result = _evaluate_volume(source, subtotal, ctx)
        case SeasonalSource():
            result = _evaluate_seasonal(source, subtotal, ctx)
        case ManualSource():
            result = _evaluate_manual(source, subtotal, ctx)
        case ReferralSource():
            result = _evaluate_referral(source, subtotal, ctx)
        case AutoRuleSource():
            result = _evaluate_auto_rule(source, subtotal, ctx)
        case _:
            assert_never(source)

    if not result.eligible:
        logger.debug(f"Discount {source.name} ({source.source_type}) rejected: {result.reason}")
    return result


def rank_evaluations(evaluations: Iterable[SourceEvaluation]) -> list[SourceEvaluation]:
    """Descending savings; ties broken by source specificity."""
    return sorted(
        evaluations,
        key=lambda e: (-e.estimated_savings, SOURCE_PRIORITY[e.source_type]),
    )


def conflicts_with(candidate: SourceEvaluation, applied: Iterable[SourceEvaluation]) -> Optional[SourceEvaluation]:
    """The first applied source ``candidate`` cannot stack with, if any."""
    for other in applied:
        if other.source_type == candidate.source_type:
            return other
        if not other.stackable or not candidate.stackable:
            return other
    return None
