"""
Tests: Proposal wizard state container.

Run with:
    pytest proposal_engine/tests/test_state.py -v
"""

from datetime import datetime, timezone

import pytest

from proposal_engine.exceptions import InvalidInputError, NotFoundError
from proposal_engine.models.enums import DiscountSourceType, DiscountType
from proposal_engine.models.schemas import AppliedDiscount, DiscountResolution
from proposal_engine.models.state import WIZARD_STEPS, ProposalState


def _discount(source_id: str, amount: float) -> AppliedDiscount:
    return AppliedDiscount(
        source_id=source_id,
        source_type=DiscountSourceType.MANUAL,
        source_name="Manual Discount",
        discount_type=DiscountType.FIXED,
        discount_value=amount,
        discount_amount=amount,
    )


@pytest.fixture
def state():
    s = ProposalState(tax_rate=0.0, deposit_percent=50)
    s.set_measurement("total_sqft", 10_000)
    s.toggle_service("sealcoating")
    return s


class TestPricingRecompute:
    def test_new_state_is_clean_and_empty(self):
        s = ProposalState()
        assert s.pricing.total == 0
        assert s.is_dirty is False

    def test_mutation_recomputes_and_marks_dirty(self, state):
        assert state.is_dirty is True
        assert state.pricing.subtotal == pytest.approx(2200.0)
        assert state.pricing.deposit_amount == pytest.approx(1100.0)

    def test_toggle_service(self, state):
        assert state.toggle_service("sealcoating") is False
        assert state.pricing.total == 0
        assert state.toggle_service("sealcoating") is True
        assert state.pricing.subtotal == pytest.approx(2200.0)

    def test_unknown_measurement_field(self, state):
        with pytest.raises(InvalidInputError):
            state.set_measurement("swimming_pools", 2)

    def test_tier_and_condition(self, state):
        state.set_tier("premium")
        state.set_condition("poor")
        assert state.pricing.adjusted_subtotal == pytest.approx(2200 * 1.35 * 1.30)

    def test_custom_line_items(self, state):
        item = state.add_custom_line_item({
            "service_id": "custom", "name": "Curb repair", "quantity": 1,
            "unit": "job", "unit_price": 300, "total": 300,
        })
        assert state.pricing.subtotal == pytest.approx(2500.0)

        state.update_custom_line_item(item.id, total=400, unit_price=400)
        assert state.pricing.subtotal == pytest.approx(2600.0)

        state.remove_custom_line_item(item.id)
        assert state.pricing.subtotal == pytest.approx(2200.0)

    def test_missing_line_item(self, state):
        with pytest.raises(NotFoundError):
            state.remove_custom_line_item("nope")
        with pytest.raises(NotFoundError):
            state.update_custom_line_item("nope", total=1)


class TestDiscounts:
    def test_apply_replaces_same_source(self, state):
        state.apply_discount(_discount("m1", 100))
        state.apply_discount(_discount("m1", 200))
        assert len(state.applied_discounts) == 1
        assert state.pricing.discount_amount == 200
        assert state.pricing.total == pytest.approx(2000.0)

    def test_remove_and_clear(self, state):
        state.apply_discount(_discount("m1", 100))
        state.apply_discount(_discount("m2", 50))
        state.remove_discount("m1")
        assert state.total_discount_amount == 50
        state.clear_discounts()
        assert state.pricing.discount_amount == 0

    def test_apply_resolution(self, state):
        resolution = DiscountResolution(
            original_subtotal=2200,
            applied_discounts=[_discount("s1", 220)],
            total_discount_amount=220,
            final_subtotal=1980,
        )
        state.apply_resolution(resolution)
        assert state.pricing.discount_amount == 220
        assert state.pricing.total == pytest.approx(1980.0)


class TestNavigation:
    def test_steps_clamped(self):
        s = ProposalState()
        assert s.prev_step() == 0
        assert s.next_step() == 1
        assert s.set_step(99) == len(WIZARD_STEPS) - 1
        assert s.step_name == "review"
        assert s.set_step(-4) == 0
        assert s.step_name == "client"

    def test_mark_saved(self, state):
        saved_at = datetime(2026, 10, 1, tzinfo=timezone.utc)
        state.mark_saved(saved_at)
        assert state.is_dirty is False
        assert state.last_saved_at == saved_at
