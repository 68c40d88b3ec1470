"""
Tests: A/B test lifecycle, sticky assignment and significance.

Run with:
    pytest proposal_engine/tests/test_ab_testing.py -v
"""

import pytest

from proposal_engine.exceptions import InvalidInputError, InvalidTransitionError, NotFoundError
from proposal_engine.models.enums import ABTestStatus
from proposal_engine.models.schemas import ABTestAssignment, ABTestVariant, VariantInput
from proposal_engine.persistence.repository import InMemoryRepository
from proposal_engine.services.ab_testing import ABTestingService, calculate_significance, confidence_for_z


def _variant(impressions: int, conversions: int) -> ABTestVariant:
    rate = conversions / impressions * 100 if impressions else 0.0
    return ABTestVariant(
        name="v", traffic_allocation=50, impressions=impressions,
        conversions=conversions, conversion_rate=rate,
    )


class FixedDraws:
    """Returns queued values from random()."""

    def __init__(self, *values: float):
        self.values = list(values)

    def __call__(self) -> float:
        return self.values.pop(0)


@pytest.fixture
def repo():
    return InMemoryRepository()


def _create(service: ABTestingService, control_share: float = 50, test_share: float = 50):
    return service.create_test(
        "org-1",
        "Spring discount",
        control=VariantInput(name="10% off", discount_value=10, traffic_allocation=control_share),
        variants=[VariantInput(name="15% off", discount_value=15, traffic_allocation=test_share)],
    )


class TestSignificance:
    def test_empty_sample(self):
        assert calculate_significance(_variant(0, 0), _variant(100, 10)) == 0

    def test_zero_standard_error(self):
        assert calculate_significance(_variant(100, 0), _variant(100, 0)) == 0

    def test_identical_rates(self):
        assert calculate_significance(_variant(500, 50), _variant(500, 50)) == 0

    def test_strong_difference(self):
        assert calculate_significance(_variant(1000, 100), _variant(1000, 200)) == 99

    def test_band_boundaries(self):
        # p1=0.10, p2=0.14, n=1000 each: z ≈ 2.75 → 99; n=500 each: z ≈ 1.95 → 90
        assert calculate_significance(_variant(1000, 100), _variant(1000, 140)) == 99
        assert calculate_significance(_variant(500, 50), _variant(500, 70)) == 90

    @pytest.mark.parametrize("z, expected", [
        (2.576, 99), (2.575, 95), (1.96, 95), (1.959, 90),
        (1.645, 90), (1.644, 80), (1.28, 80), (1.0, 30), (0.0, 0),
    ])
    def test_z_boundaries(self, z, expected):
        assert confidence_for_z(z) == pytest.approx(expected)

    def test_weak_difference_scales_with_z(self):
        result = calculate_significance(_variant(100, 10), _variant(100, 11))
        assert 0 < result < 80


class TestLifecycle:
    def test_create_validates_allocation(self, repo):
        service = ABTestingService(repo)
        with pytest.raises(InvalidInputError):
            _create(service, 60, 50)
        with pytest.raises(InvalidInputError):
            service.create_test("org-1", "Empty", VariantInput(name="c", traffic_allocation=100), [])

    def test_status_flow(self, repo):
        service = ABTestingService(repo)
        test = _create(service)
        assert test.status == ABTestStatus.DRAFT

        with pytest.raises(InvalidTransitionError):
            service.pause(test.id)

        assert service.start(test.id).status == ABTestStatus.RUNNING
        assert service.pause(test.id).status == ABTestStatus.PAUSED
        assert service.resume(test.id).status == ABTestStatus.RUNNING

        with pytest.raises(InvalidTransitionError):
            service.delete(test.id)

        winner = test.test_variants[0]
        completed = service.complete(test.id, winning_variant_id=winner.id)
        assert completed.status == ABTestStatus.COMPLETED
        assert completed.winning_variant == winner.id
        assert completed.end_date is not None

        with pytest.raises(InvalidTransitionError):
            service.start(test.id)

        service.delete(test.id)
        with pytest.raises(NotFoundError):
            service.get_test(test.id)

    def test_complete_with_unknown_winner(self, repo):
        service = ABTestingService(repo)
        test = _create(service)
        service.start(test.id)
        with pytest.raises(InvalidInputError):
            service.complete(test.id, winning_variant_id="nope")

    def test_list_by_status(self, repo):
        service = ABTestingService(repo)
        running = _create(service)
        _create(service)
        service.start(running.id)
        assert [t.id for t in service.list_tests("org-1", ABTestStatus.RUNNING)] == [running.id]
        assert len(service.list_tests("org-1")) == 2


class TestAssignment:
    def test_draw_walks_cumulative_allocation(self, repo):
        service = ABTestingService(repo, rng=FixedDraws(0.30, 0.70))
        test = _create(service)
        service.start(test.id)

        assert service.get_variant_for_user(test.id, "u1").id == test.control_variant.id
        assert service.get_variant_for_user(test.id, "u2").id == test.test_variants[0].id

    def test_unallocated_traffic_falls_back_to_control(self, repo):
        service = ABTestingService(repo, rng=FixedDraws(0.95))
        test = _create(service, 40, 40)
        service.start(test.id)
        assert service.get_variant_for_user(test.id, "u1").id == test.control_variant.id

    def test_assignment_is_sticky(self, repo):
        service = ABTestingService(repo, rng=FixedDraws(0.90, 0.10, 0.10))
        test = _create(service)
        service.start(test.id)

        first = service.get_variant_for_user(test.id, "u1")
        assert first.id == test.test_variants[0].id
        for _ in range(2):
            assert service.get_variant_for_user(test.id, "u1").id == first.id
        assert service.get_test(test.id).total_participants == 1

    def test_existing_assignment_survives_pause(self, repo):
        service = ABTestingService(repo, rng=FixedDraws(0.90))
        test = _create(service)
        service.start(test.id)
        first = service.get_variant_for_user(test.id, "u1")
        service.pause(test.id)

        assert service.get_variant_for_user(test.id, "u1").id == first.id
        assert service.get_variant_for_user(test.id, "u2") is None

    def test_draft_test_assigns_nobody(self, repo):
        service = ABTestingService(repo)
        test = _create(service)
        assert service.get_variant_for_user(test.id, "u1") is None

    def test_concurrent_first_assignment_keeps_first_write(self, repo, monkeypatch):
        service = ABTestingService(repo, rng=FixedDraws(0.10))
        test = _create(service)
        service.start(test.id)

        # Another request stored its assignment between our read and our write
        other = test.test_variants[0]
        repo.insert(
            "ab_test_assignments",
            ABTestAssignment(test_id=test.id, user_id="u1", variant_id=other.id).model_dump(mode="json"),
        )
        lookups = []
        real_lookup = service._existing_assignment

        def stale_first_lookup(test_id, user_id):
            lookups.append(user_id)
            return None if len(lookups) == 1 else real_lookup(test_id, user_id)

        monkeypatch.setattr(service, "_existing_assignment", stale_first_lookup)

        assert service.get_variant_for_user(test.id, "u1").id == other.id
        assert len(repo.fetch_many("ab_test_assignments", {"test_id": test.id})) == 1

    def test_participant_count_without_atomic_increment(self):
        service = ABTestingService(InMemoryRepository(atomic_increments=False), rng=FixedDraws(0.1, 0.6))
        test = _create(service)
        service.start(test.id)
        service.get_variant_for_user(test.id, "u1")
        service.get_variant_for_user(test.id, "u2")
        assert service.get_test(test.id).total_participants == 2


class TestResults:
    def test_impressions_and_conversions(self, repo):
        service = ABTestingService(repo)
        test = _create(service)
        variant_id = test.test_variants[0].id

        for _ in range(4):
            service.record_impression(test.id, variant_id)
        variant = service.record_conversion(test.id, variant_id, revenue=1000, discount_amount=150)

        assert variant.impressions == 4
        assert variant.conversions == 1
        assert variant.conversion_rate == 25
        assert variant.avg_order_value == 1000
        assert variant.total_discount == 150

    def test_unknown_variant(self, repo):
        service = ABTestingService(repo)
        test = _create(service)
        with pytest.raises(NotFoundError):
            service.record_impression(test.id, "nope")

    def test_negative_revenue(self, repo):
        service = ABTestingService(repo)
        test = _create(service)
        with pytest.raises(InvalidInputError):
            service.record_conversion(test.id, test.control_variant.id, revenue=-5)

    def test_significance_report(self, repo):
        service = ABTestingService(repo)
        test = _create(service)
        report = service.significance_report(test.id)
        assert report == {test.test_variants[0].id: 0}

    def test_recording_keeps_concurrent_pause(self, repo, monkeypatch):
        service = ABTestingService(repo)
        test = _create(service)
        service.start(test.id)
        variant_id = test.test_variants[0].id
        real_get = service.get_test
        paused = []

        def paused_after_read(test_id):
            loaded = real_get(test_id)
            # Another request pauses the test while we are recording
            if not paused:
                paused.append(test_id)
                service.pause(test_id)
            return loaded

        monkeypatch.setattr(service, "get_test", paused_after_read)
        service.record_impression(test.id, variant_id)
        monkeypatch.undo()

        stored = service.get_test(test.id)
        assert stored.status == ABTestStatus.PAUSED
        assert stored.variant(variant_id).impressions == 1

    def test_recording_keeps_participant_count(self, repo):
        service = ABTestingService(repo, rng=FixedDraws(0.1))
        test = _create(service)
        service.start(test.id)
        service.get_variant_for_user(test.id, "u1")
        service.record_impression(test.id, test.control_variant.id)
        assert service.get_test(test.id).total_participants == 1

    def test_results_do_not_rewrite_test_document(self, repo):
        service = ABTestingService(repo)
        test = _create(service)
        before = repo.fetch_one("ab_tests", {"id": test.id})
        service.record_impression(test.id, test.control_variant.id)
        service.record_conversion(test.id, test.control_variant.id, revenue=200)
        assert repo.fetch_one("ab_tests", {"id": test.id}) == before

    def test_counts_without_atomic_increment(self):
        service = ABTestingService(InMemoryRepository(atomic_increments=False))
        test = _create(service)
        variant_id = test.test_variants[0].id
        for _ in range(3):
            service.record_impression(test.id, variant_id)
        service.record_conversion(test.id, variant_id, revenue=300, discount_amount=30)
        variant = service.get_test(test.id).variant(variant_id)
        assert variant.impressions == 3
        assert variant.conversions == 1
        assert variant.conversion_rate == pytest.approx(33.3333)
        assert variant.avg_order_value == 300

    def test_counters_are_created_for_tests_without_stats_rows(self, repo):
        service = ABTestingService(repo)
        test = _create(service)
        repo.delete("ab_test_variant_stats", {"test_id": test.id})
        assert service.record_impression(test.id, test.control_variant.id).impressions == 1
