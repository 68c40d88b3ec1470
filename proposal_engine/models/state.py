"""
Proposal wizard state — one object per proposal being edited, owned by the caller.

Design rules:
  1. Form data (measurements, services, tier, ...) is only changed through the
     mutating methods below.
  2. Every mutation re-derives ``pricing`` with the pure compute_pricing().
  3. Any mutation marks the state dirty until mark_saved() is called.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from proposal_engine.config import get_settings
from proposal_engine.exceptions import InvalidInputError, NotFoundError
from proposal_engine.models.enums import PricingTier, SurfaceCondition
from proposal_engine.models.schemas import (
    AppliedDiscount,
    DiscountResolution,
    LineItem,
    Measurements,
    PricingState,
)
from proposal_engine.pricing.calculator import compute_pricing, round_money

WIZARD_STEPS = ["client", "site", "measurements", "services", "pricing", "review"]


def _default_tax_rate() -> float:
    return get_settings().default_tax_rate


def _default_deposit() -> float:
    return get_settings().default_deposit_percent


class ProposalState(BaseModel):
    """Form data plus the pricing derived from it."""

    proposal_id: Optional[str] = None
    current_step: int = 0

    # ── Form data ────────────────────────────────────────
    measurements: Measurements = Field(default_factory=Measurements)
    selected_services: list[str] = []
    custom_line_items: list[LineItem] = []
    tier: PricingTier = PricingTier.STANDARD
    surface_condition: SurfaceCondition = SurfaceCondition.GOOD
    tax_rate: float = Field(default_factory=_default_tax_rate, ge=0, le=1)
    deposit_percent: float = Field(default_factory=_default_deposit, ge=0, le=100)
    applied_discounts: list[AppliedDiscount] = []

    # ── Derived ──────────────────────────────────────────
    pricing: PricingState = Field(default_factory=PricingState)

    # ── Save tracking ────────────────────────────────────
    is_dirty: bool = False
    last_saved_at: Optional[datetime] = None

    def model_post_init(self, __context: Any) -> None:
        self.pricing = self._compute()

    # ── Pricing ──────────────────────────────────────────

    @property
    def total_discount_amount(self) -> float:
        return round_money(sum(d.discount_amount for d in self.applied_discounts))

    def _compute(self) -> PricingState:
        return compute_pricing(
            measurements=self.measurements,
            selected_service_ids=self.selected_services,
            custom_line_items=self.custom_line_items,
            tier=self.tier,
            surface_condition=self.surface_condition,
            tax_rate=self.tax_rate,
            deposit_percent=self.deposit_percent,
            total_discount_amount=self.total_discount_amount,
        )

    def _changed(self) -> None:
        self.pricing = self._compute()
        self.is_dirty = True

    # ── Measurements & services ──────────────────────────

    def set_measurement(self, field: str, value: float) -> None:
        if field not in Measurements.model_fields:
            raise InvalidInputError(f"Unknown measurement field: {field}", {"field": field})
        setattr(self.measurements, field, value)
        self._changed()

    def toggle_service(self, service_id: str) -> bool:
        """Select or deselect a service. Returns True when it is now selected."""
        if service_id in self.selected_services:
            self.selected_services.remove(service_id)
            selected = False
        else:
            self.selected_services.append(service_id)
            selected = True
        self._changed()
        return selected

    def add_custom_line_item(self, item: Union[LineItem, dict[str, Any]]) -> LineItem:
        line = item if isinstance(item, LineItem) else LineItem.model_validate(item)
        self.custom_line_items.append(line)
        self._changed()
        return line

    def update_custom_line_item(self, item_id: str, **changes: Any) -> LineItem:
        for index, existing in enumerate(self.custom_line_items):
            if existing.id == item_id:
                updated = LineItem.model_validate({**existing.model_dump(), **changes, "id": item_id})
                self.custom_line_items[index] = updated
                self._changed()
                return updated
        raise NotFoundError("Line item", item_id)

    def remove_custom_line_item(self, item_id: str) -> None:
        remaining = [i for i in self.custom_line_items if i.id != item_id]
        if len(remaining) == len(self.custom_line_items):
            raise NotFoundError("Line item", item_id)
        self.custom_line_items = remaining
        self._changed()

    def set_tier(self, tier: Union[PricingTier, str]) -> None:
        self.tier = PricingTier(tier)
        self._changed()

    def set_condition(self, condition: Union[SurfaceCondition, str]) -> None:
        self.surface_condition = SurfaceCondition(condition)
        self._changed()

    # ── Discounts ────────────────────────────────────────

    def apply_discount(self, discount: AppliedDiscount) -> None:
        """Apply a discount, replacing any earlier one from the same source."""
        self.applied_discounts = [
            d for d in self.applied_discounts if d.source_id != discount.source_id
        ] + [discount]
        self._changed()

    def remove_discount(self, source_id: str) -> None:
        self.applied_discounts = [d for d in self.applied_discounts if d.source_id != source_id]
        self._changed()

    def clear_discounts(self) -> None:
        self.applied_discounts = []
        self._changed()

    def apply_resolution(self, resolution: DiscountResolution) -> None:
        self.applied_discounts = list(resolution.applied_discounts)
        self._changed()

    # ── Step navigation ──────────────────────────────────

    def set_step(self, step: int) -> int:
        self.current_step = max(0, min(step, len(WIZARD_STEPS) - 1))
        return self.current_step

    def next_step(self) -> int:
        return self.set_step(self.current_step + 1)

    def prev_step(self) -> int:
        return self.set_step(self.current_step - 1)

    @property
    def step_name(self) -> str:
        return WIZARD_STEPS[self.current_step]

    def mark_saved(self, now: Optional[datetime] = None) -> None:
        self.is_dirty = False
        self.last_saved_at = now or datetime.now(timezone.utc)
