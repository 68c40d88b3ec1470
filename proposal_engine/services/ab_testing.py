"""
A/B Testing — discount experiments with sticky variant assignment.

Lifecycle: draft → running ⇄ paused → completed.  A user keeps the first
variant they were assigned; the (test_id, user_id) unique index settles
concurrent first assignments in favour of the first write.

Result counters live in their own rows keyed by (test_id, variant_id) and
only move by increments.  Recording a result never rewrites the test
document, so it cannot undo a concurrent pause or participant count.
"""

from __future__ import annotations

import logging
import math
import random
from datetime import datetime, timezone
from typing import Callable, Optional

from proposal_engine.exceptions import (
    AtomicIncrementUnavailable,
    DuplicateRowError,
    InvalidInputError,
    InvalidTransitionError,
    NotFoundError,
)
from proposal_engine.models.enums import ABTestStatus
from proposal_engine.models.schemas import ABTest, ABTestAssignment, ABTestVariant, VariantInput
from proposal_engine.persistence.repository import Repository, get_repository
from proposal_engine.pricing.calculator import round_money

logger = logging.getLogger(__name__)

TEST_TABLE = "ab_tests"
ASSIGNMENT_TABLE = "ab_test_assignments"
STATS_TABLE = "ab_test_variant_stats"

COUNTER_FIELDS = ("impressions", "conversions", "total_revenue", "total_discount")

# (minimum z, confidence %) from strictest down
Z_THRESHOLDS = [(2.576, 99.0), (1.96, 95.0), (1.645, 90.0), (1.28, 80.0)]


def calculate_significance(control: ABTestVariant, test: ABTestVariant) -> float:
    """Two-proportion z-test reported as a confidence level in percent."""
    n1, n2 = control.impressions, test.impressions
    if n1 == 0 or n2 == 0:
        return 0.0

    p1 = control.conversion_rate / 100
    p2 = test.conversion_rate / 100
    pooled = (p1 * n1 + p2 * n2) / (n1 + n2)
    se = math.sqrt(pooled * (1 - pooled) * (1 / n1 + 1 / n2))
    if se == 0:
        return 0.0

    return confidence_for_z(abs(p2 - p1) / se)


def confidence_for_z(z: float) -> float:
    for threshold, confidence in Z_THRESHOLDS:
        if z >= threshold:
            return confidence
    return min(80.0, z * 30)


def _variant_from_input(data: VariantInput) -> ABTestVariant:
    return ABTestVariant(**data.model_dump())


def _empty_stats(test_id: str, variant_id: str) -> dict:
    return {
        "test_id": test_id,
        "variant_id": variant_id,
        **{field: 0 for field in COUNTER_FIELDS},
        "conversion_rate": 0.0,
        "avg_order_value": 0.0,
    }


def _derived(stats: dict) -> dict:
    impressions = stats.get("impressions") or 0
    conversions = stats.get("conversions") or 0
    revenue = stats.get("total_revenue") or 0.0
    return {
        "conversion_rate": round(conversions / impressions * 100, 4) if impressions else 0.0,
        "avg_order_value": round_money(revenue / conversions) if conversions else 0.0,
    }


def _apply_stats(variant: ABTestVariant, stats: dict) -> None:
    variant.impressions = int(stats.get("impressions") or 0)
    variant.conversions = int(stats.get("conversions") or 0)
    variant.total_revenue = round_money(stats.get("total_revenue") or 0.0)
    variant.total_discount = round_money(stats.get("total_discount") or 0.0)
    for field, value in _derived(stats).items():
        setattr(variant, field, value)


class ABTestingService:
    """Experiment lifecycle, assignment and result tracking."""

    def __init__(self, repository: Optional[Repository] = None, rng: Callable[[], float] = random.random):
        self.repo = repository or get_repository()
        self.rng = rng
        self.repo.ensure_unique(ASSIGNMENT_TABLE, ("test_id", "user_id"))
        self.repo.ensure_unique(STATS_TABLE, ("test_id", "variant_id"))

    # ── Storage ──────────────────────────────────────────

    def get_test(self, test_id: str) -> ABTest:
        row = self.repo.fetch_one(TEST_TABLE, {"id": test_id})
        if row is None:
            raise NotFoundError("A/B test", test_id)
        return self._with_stats(ABTest.model_validate(row))

    def list_tests(self, org_id: str, status: Optional[ABTestStatus] = None) -> list[ABTest]:
        filters = {"org_id": org_id}
        if status is not None:
            filters["status"] = ABTestStatus(status).value
        rows = self.repo.fetch_many(TEST_TABLE, filters, order_by="created_at", descending=True)
        return [self._with_stats(ABTest.model_validate(r)) for r in rows]

    def _with_stats(self, test: ABTest) -> ABTest:
        stats = {r["variant_id"]: r for r in self.repo.fetch_many(STATS_TABLE, {"test_id": test.id})}
        for variant in test.all_variants():
            if variant.id in stats:
                _apply_stats(variant, stats[variant.id])
        return test

    def _save(self, test: ABTest, *fields: str) -> ABTest:
        """Write only the named lifecycle fields back to the test document."""
        self.repo.update(TEST_TABLE, {"id": test.id}, test.model_dump(mode="json", include=set(fields)))
        return test

    def _transition(self, test_id: str, allowed: set[ABTestStatus], target: ABTestStatus) -> ABTest:
        test = self.get_test(test_id)
        if test.status not in allowed:
            raise InvalidTransitionError("A/B test", test.status.value, target.value)
        test.status = target
        return test

    # ── Lifecycle ────────────────────────────────────────

    def create_test(
        self,
        org_id: str,
        name: str,
        control: VariantInput,
        variants: list[VariantInput],
        description: str = "",
        test_type: str = "discount_value",
        target_audience: str = "all",
        min_sample_size: int = 100,
        confidence_level: float = 95.0,
    ) -> ABTest:
        if not variants:
            raise InvalidInputError("An A/B test needs at least one test variant")
        allocation = control.traffic_allocation + sum(v.traffic_allocation for v in variants)
        if allocation > 100:
            raise InvalidInputError(
                f"Traffic allocation totals {allocation:g}%, must not exceed 100%", {"allocation": allocation}
            )

        test = ABTest(
            org_id=org_id,
            name=name,
            description=description,
            test_type=test_type,
            target_audience=target_audience,
            control_variant=_variant_from_input(control),
            test_variants=[_variant_from_input(v) for v in variants],
            min_sample_size=min_sample_size,
            confidence_level=confidence_level,
        )
        self.repo.insert(TEST_TABLE, test.model_dump(mode="json"))
        for variant in test.all_variants():
            self.repo.insert(STATS_TABLE, _empty_stats(test.id, variant.id))
        logger.info(f"Created A/B test '{name}' ({test.id}) with {len(variants) + 1} variants")
        return test

    def start(self, test_id: str) -> ABTest:
        test = self._transition(test_id, {ABTestStatus.DRAFT, ABTestStatus.PAUSED}, ABTestStatus.RUNNING)
        test.start_date = test.start_date or datetime.now(timezone.utc)
        logger.info(f"A/B test {test_id} running")
        return self._save(test, "status", "start_date")

    def pause(self, test_id: str) -> ABTest:
        test = self._transition(test_id, {ABTestStatus.RUNNING}, ABTestStatus.PAUSED)
        logger.info(f"A/B test {test_id} paused")
        return self._save(test, "status")

    def resume(self, test_id: str) -> ABTest:
        test = self._transition(test_id, {ABTestStatus.PAUSED}, ABTestStatus.RUNNING)
        logger.info(f"A/B test {test_id} resumed")
        return self._save(test, "status")

    def complete(self, test_id: str, winning_variant_id: Optional[str] = None) -> ABTest:
        test = self._transition(
            test_id, {ABTestStatus.RUNNING, ABTestStatus.PAUSED}, ABTestStatus.COMPLETED
        )
        if winning_variant_id is not None:
            winner = test.variant(winning_variant_id)
            if winner is None:
                raise InvalidInputError(
                    f"Unknown variant {winning_variant_id} for test {test_id}",
                    {"variant_id": winning_variant_id},
                )
            test.winning_variant = winner.id
            if winner.id != test.control_variant.id:
                test.statistical_significance = calculate_significance(test.control_variant, winner)
        test.end_date = datetime.now(timezone.utc)
        logger.info(f"A/B test {test_id} completed, winner: {test.winning_variant or 'none'}")
        return self._save(test, "status", "winning_variant", "statistical_significance", "end_date")

    def delete(self, test_id: str) -> None:
        test = self.get_test(test_id)
        if test.status == ABTestStatus.RUNNING:
            raise InvalidTransitionError("A/B test", test.status.value, "deleted")
        self.repo.delete(ASSIGNMENT_TABLE, {"test_id": test_id})
        self.repo.delete(STATS_TABLE, {"test_id": test_id})
        self.repo.delete(TEST_TABLE, {"id": test_id})
        logger.info(f"Deleted A/B test {test_id}")

    # ── Assignment ───────────────────────────────────────

    def _existing_assignment(self, test_id: str, user_id: str) -> Optional[ABTestAssignment]:
        row = self.repo.fetch_one(ASSIGNMENT_TABLE, {"test_id": test_id, "user_id": user_id})
        return ABTestAssignment.model_validate(row) if row else None

    def _pick_variant(self, test: ABTest) -> ABTestVariant:
        draw = self.rng() * 100
        cumulative = 0.0
        for variant in test.all_variants():
            cumulative += variant.traffic_allocation
            if draw < cumulative:
                return variant
        return test.control_variant

    def _count_participant(self, test_id: str) -> None:
        try:
            self.repo.increment(TEST_TABLE, {"id": test_id}, {"total_participants": 1})
        except AtomicIncrementUnavailable:
            logger.warning(f"Atomic increment unavailable; counting participant on {test_id} non-atomically")
            row = self.repo.fetch_one(TEST_TABLE, {"id": test_id}) or {}
            self.repo.update(TEST_TABLE, {"id": test_id}, {"total_participants": row.get("total_participants", 0) + 1})

    def get_variant_for_user(self, test_id: str, user_id: str) -> Optional[ABTestVariant]:
        """
        The user's variant.  Existing assignments always win; new ones are
        only made while the test is running (otherwise None).
        """
        test = self.get_test(test_id)
        existing = self._existing_assignment(test_id, user_id)
        if existing is not None:
            return test.variant(existing.variant_id) or test.control_variant

        if test.status != ABTestStatus.RUNNING:
            return None

        variant = self._pick_variant(test)
        assignment = ABTestAssignment(test_id=test_id, user_id=user_id, variant_id=variant.id)
        try:
            self.repo.insert(ASSIGNMENT_TABLE, assignment.model_dump(mode="json"))
        except DuplicateRowError:
            # A concurrent request assigned first; keep theirs
            winner = self._existing_assignment(test_id, user_id)
            if winner is None:
                raise
            logger.debug(f"Assignment race on {test_id}/{user_id}; using first write")
            return test.variant(winner.variant_id) or test.control_variant

        self._count_participant(test_id)
        return variant

    # ── Results ──────────────────────────────────────────

    def _ensure_stats_row(self, test_id: str, variant_id: str) -> None:
        try:
            self.repo.insert(STATS_TABLE, _empty_stats(test_id, variant_id))
        except DuplicateRowError:
            logger.debug(f"Stats row for {test_id}/{variant_id} already created")

    def _bump_stats(self, test_id: str, variant_id: str, deltas: dict[str, float]) -> dict:
        keys = {"test_id": test_id, "variant_id": variant_id}
        try:
            row = self.repo.increment(STATS_TABLE, keys, deltas)
            if row is None:
                self._ensure_stats_row(test_id, variant_id)
                row = self.repo.increment(STATS_TABLE, keys, deltas) or {}
            return row
        except AtomicIncrementUnavailable:
            logger.warning(f"Atomic increment unavailable; recording results on {test_id} non-atomically")
            current = self.repo.fetch_one(STATS_TABLE, keys)
            if current is None:
                self._ensure_stats_row(test_id, variant_id)
                current = _empty_stats(test_id, variant_id)
            changes = {field: (current.get(field) or 0) + delta for field, delta in deltas.items()}
            self.repo.update(STATS_TABLE, keys, changes)
            return {**current, **changes}

    def _record(self, test_id: str, variant_id: str, deltas: dict[str, float]) -> ABTestVariant:
        test = self.get_test(test_id)
        variant = test.variant(variant_id)
        if variant is None:
            raise NotFoundError("A/B test variant", variant_id)

        stats = self._bump_stats(test_id, variant_id, deltas)
        # Only the derived fields are set; the counters moved by increment above
        self.repo.update(STATS_TABLE, {"test_id": test_id, "variant_id": variant_id}, _derived(stats))
        _apply_stats(variant, stats)
        return variant

    def record_impression(self, test_id: str, variant_id: str) -> ABTestVariant:
        return self._record(test_id, variant_id, {"impressions": 1})

    def record_conversion(
        self,
        test_id: str,
        variant_id: str,
        revenue: float,
        discount_amount: float = 0.0,
    ) -> ABTestVariant:
        if revenue < 0 or discount_amount < 0:
            raise InvalidInputError("revenue and discount_amount cannot be negative")
        return self._record(
            test_id,
            variant_id,
            {"conversions": 1, "total_revenue": revenue, "total_discount": discount_amount},
        )

    def significance_report(self, test_id: str) -> dict[str, float]:
        """Confidence of each test variant against the control."""
        test = self.get_test(test_id)
        return {v.id: calculate_significance(test.control_variant, v) for v in test.test_variants}
