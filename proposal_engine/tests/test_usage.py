"""
Tests: Usage counters, quota checks and the monthly reset.

Run with:
    pytest proposal_engine/tests/test_usage.py -v
"""

import math
from datetime import date, datetime, timedelta, timezone

import pytest

from proposal_engine.exceptions import InvalidInputError, QuotaExceededError
from proposal_engine.models.enums import QuotaAction, UsageEventType
from proposal_engine.models.schemas import OrgEntitlement, QuotaStatus, UsageEventInput
from proposal_engine.persistence.repository import InMemoryRepository
from proposal_engine.rules.rules_config import RulesConfigStore
from proposal_engine.services.usage_service import BYTES_PER_MB, UsageService, is_comped, months_before

OCT = datetime(2026, 10, 10, 9, 0, tzinfo=timezone.utc)
NOV = datetime(2026, 11, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def usage():
    return UsageService(InMemoryRepository(), RulesConfigStore())


def _track(service: UsageService, event: UsageEventType, times: int = 1, quantity: int = 1, now=OCT):
    for _ in range(times):
        service.track_event("org-1", event, quantity=quantity, now=now)


class TestQuotaStatus:
    def test_at_limit_is_exceeded(self):
        status = QuotaStatus.from_counts(10, 10)
        assert status.is_exceeded is True
        assert status.remaining == 0
        assert status.percent_used == 100

    def test_over_limit_is_capped(self):
        status = QuotaStatus.from_counts(15, 10)
        assert status.remaining == 0
        assert status.percent_used == 100

    def test_unlimited(self):
        status = QuotaStatus.from_counts(5000, -1)
        assert status.is_unlimited is True
        assert math.isinf(status.remaining)
        assert status.is_exceeded is False
        assert status.model_dump(mode="json")["remaining"] is None

    def test_zero_limit(self):
        status = QuotaStatus.from_counts(0, 0)
        assert status.is_exceeded is True
        assert status.percent_used == 100


class TestActionChecks:
    def test_free_plan_proposal_limit(self, usage):
        _track(usage, UsageEventType.PROPOSAL_CREATED, times=9)
        assert usage.can_perform_action("org-1", QuotaAction.CREATE_PROPOSAL, now=OCT).allowed is True

        _track(usage, UsageEventType.PROPOSAL_CREATED)
        check = usage.can_perform_action("org-1", QuotaAction.CREATE_PROPOSAL, now=OCT)
        assert check.allowed is False
        assert check.reason == "You've reached your proposal limit for this month"
        assert check.upgrade == "Upgrade your plan for higher limits"

    def test_enforce_quota_raises(self, usage):
        _track(usage, UsageEventType.AI_CALL, times=20)
        with pytest.raises(QuotaExceededError) as exc:
            usage.enforce_quota("org-1", QuotaAction.CALL_AI, now=OCT)
        assert exc.value.upgrade_message == "Upgrade your plan for higher limits"

    def test_quantity_larger_than_remaining(self, usage):
        _track(usage, UsageEventType.PROPOSAL_CREATED, times=8)
        assert usage.can_perform_action("org-1", QuotaAction.CREATE_PROPOSAL, 2, now=OCT).allowed is True
        assert usage.can_perform_action("org-1", QuotaAction.CREATE_PROPOSAL, 3, now=OCT).allowed is False

    def test_team_member_headcount(self, usage):
        check = usage.can_perform_action("org-1", QuotaAction.ADD_TEAM_MEMBER, now=OCT)
        assert check.allowed is False
        assert check.reason == "You've reached your team member limit"

    def test_storage_in_megabytes(self, usage):
        _track(usage, UsageEventType.STORAGE_UPLOAD, quantity=50 * BYTES_PER_MB)
        summary = usage.get_usage_summary("org-1", now=OCT)
        assert summary.storage.used == 50
        assert usage.can_perform_action("org-1", QuotaAction.UPLOAD_STORAGE, 40, now=OCT).allowed is True
        assert usage.can_perform_action("org-1", QuotaAction.UPLOAD_STORAGE, 60, now=OCT).allowed is False

    def test_email_limit_scales_with_proposals(self, usage):
        summary = usage.get_usage_summary("org-1", now=OCT)
        assert summary.emails.limit == 100

    def test_unlimited_plan(self, usage):
        usage.set_entitlement(OrgEntitlement(org_id="org-1", plan_id="enterprise"))
        _track(usage, UsageEventType.PROPOSAL_CREATED, times=50)
        assert usage.can_perform_action("org-1", QuotaAction.CREATE_PROPOSAL, 1000, now=OCT).allowed is True
        summary = usage.get_usage_summary("org-1", now=OCT)
        assert summary.emails.is_unlimited is True

    def test_plan_override(self, usage):
        usage.set_entitlement(OrgEntitlement(org_id="org-1", plan_id="free", plan_override="pro"))
        assert usage.get_plan_limits("org-1").proposals_per_month == 100

    def test_comped_org_bypasses(self, usage):
        _track(usage, UsageEventType.PROPOSAL_CREATED, times=10)
        usage.set_entitlement(OrgEntitlement(org_id="org-1", is_comped=True))
        assert usage.can_perform_action("org-1", QuotaAction.CREATE_PROPOSAL, now=OCT).allowed is True

    def test_expired_comp_does_not_bypass(self, usage):
        _track(usage, UsageEventType.PROPOSAL_CREATED, times=10)
        usage.set_entitlement(
            OrgEntitlement(org_id="org-1", is_comped=True, comped_until=OCT - timedelta(days=1))
        )
        assert usage.can_perform_action("org-1", QuotaAction.CREATE_PROPOSAL, now=OCT).allowed is False

    def test_is_comped_until_future(self):
        ent = OrgEntitlement(org_id="o", is_comped=True, comped_until=OCT + timedelta(days=1))
        assert is_comped(ent, OCT) is True
        assert is_comped(ent, OCT + timedelta(days=2)) is False

    def test_negative_quantity(self, usage):
        with pytest.raises(InvalidInputError):
            usage.can_perform_action("org-1", QuotaAction.CREATE_PROPOSAL, -1)


class TestTracking:
    def test_sent_proposals_not_counted_twice(self, usage):
        _track(usage, UsageEventType.PROPOSAL_CREATED)
        _track(usage, UsageEventType.PROPOSAL_SENT)
        assert usage.get_current_usage("org-1", now=OCT).proposals_this_month == 1
        assert len(usage.get_events("org-1")) == 2
        assert len(usage.get_events("org-1", UsageEventType.PROPOSAL_SENT)) == 1

    def test_team_members_added_and_removed(self, usage):
        _track(usage, UsageEventType.TEAM_MEMBER_ADDED, times=2)
        _track(usage, UsageEventType.TEAM_MEMBER_REMOVED, quantity=5)
        assert usage.get_current_usage("org-1", now=OCT).team_members_count == 2

    def test_storage_delete_never_negative(self, usage):
        _track(usage, UsageEventType.STORAGE_UPLOAD, quantity=100)
        _track(usage, UsageEventType.STORAGE_DELETE, quantity=500)
        assert usage.get_current_usage("org-1", now=OCT).storage_used_bytes == 0

    def test_fallback_without_atomic_increment(self):
        service = UsageService(InMemoryRepository(atomic_increments=False), RulesConfigStore())
        _track(service, UsageEventType.PROPOSAL_CREATED, times=3)
        _track(service, UsageEventType.STORAGE_DELETE, quantity=10)
        current = service.get_current_usage("org-1", now=OCT)
        assert current.proposals_this_month == 3
        assert current.storage_used_bytes == 0

    def test_negative_quantity(self, usage):
        with pytest.raises(InvalidInputError):
            usage.track_event("org-1", UsageEventType.AI_CALL, quantity=-2)

    def test_batch_moves_counters(self, usage):
        events = usage.track_events([
            UsageEventInput(org_id="org-1", event_type=UsageEventType.PROPOSAL_CREATED),
            {"org_id": "org-1", "event_type": "ai_call", "quantity": 3, "user_id": "u-1"},
            {"org_id": "org-2", "event_type": "email_sent"},
        ], now=OCT)

        assert [e.event_type for e in events] == [
            UsageEventType.PROPOSAL_CREATED, UsageEventType.AI_CALL, UsageEventType.EMAIL_SENT,
        ]
        first = usage.get_current_usage("org-1", now=OCT)
        assert first.proposals_this_month == 1
        assert first.ai_calls_this_month == 3
        assert usage.get_current_usage("org-2", now=OCT).emails_this_month == 1
        assert len(usage.get_events("org-1")) == 2

    def test_invalid_batch_records_nothing(self, usage):
        with pytest.raises(InvalidInputError) as exc:
            usage.track_events([
                {"org_id": "org-1", "event_type": "proposal_created"},
                {"org_id": "org-1", "event_type": "ai_call", "quantity": -1},
            ], now=OCT)
        assert exc.value.context["fields"] == ["1.quantity"]
        assert usage.get_events("org-1") == []
        assert usage.get_current_usage("org-1", now=OCT).proposals_this_month == 0


class TestMonthlyReset:
    def test_new_month_archives_and_zeroes(self, usage):
        _track(usage, UsageEventType.PROPOSAL_CREATED, times=4)
        _track(usage, UsageEventType.AI_CALL, times=2)
        _track(usage, UsageEventType.STORAGE_UPLOAD, quantity=2048)
        _track(usage, UsageEventType.TEAM_MEMBER_ADDED)

        current = usage.get_current_usage("org-1", now=NOV)
        assert current.period_start.isoformat() == "2026-11-01"
        assert current.proposals_this_month == 0
        assert current.ai_calls_this_month == 0
        assert current.storage_used_bytes == 2048
        assert current.team_members_count == 2

        rollups = {r.event_type: r for r in usage.get_rollups("org-1")}
        assert rollups[UsageEventType.PROPOSAL_CREATED].total_quantity == 4
        assert rollups[UsageEventType.AI_CALL].total_quantity == 2
        assert UsageEventType.EMAIL_SENT not in rollups
        assert rollups[UsageEventType.AI_CALL].period_start.isoformat() == "2026-10-01"

    def test_reset_frees_quota(self, usage):
        _track(usage, UsageEventType.PROPOSAL_CREATED, times=10)
        assert usage.can_perform_action("org-1", QuotaAction.CREATE_PROPOSAL, now=OCT).allowed is False
        assert usage.can_perform_action("org-1", QuotaAction.CREATE_PROPOSAL, now=NOV).allowed is True

    def test_reset_happens_once(self, usage):
        _track(usage, UsageEventType.PROPOSAL_CREATED, times=3)
        usage.get_current_usage("org-1", now=NOV)
        _track(usage, UsageEventType.PROPOSAL_CREATED, now=NOV)
        assert usage.get_current_usage("org-1", now=NOV).proposals_this_month == 1
        assert len(usage.get_rollups("org-1", UsageEventType.PROPOSAL_CREATED)) == 1


class TestTrends:
    def test_monthly_trend_from_rollups_and_live_counters(self, usage):
        _track(usage, UsageEventType.PROPOSAL_CREATED, times=4)
        _track(usage, UsageEventType.AI_CALL, times=2)
        _track(usage, UsageEventType.PROPOSAL_CREATED, now=NOV)
        _track(usage, UsageEventType.EMAIL_SENT, times=3, now=NOV)

        trends = usage.get_usage_trends("org-1", months=3, now=NOV)
        assert [t.period_start for t in trends] == [date(2026, 9, 1), date(2026, 10, 1), date(2026, 11, 1)]
        assert [(t.proposals, t.ai_calls, t.emails) for t in trends] == [(0, 0, 0), (4, 2, 0), (1, 0, 3)]

    def test_trend_ignores_other_orgs_and_older_months(self, usage):
        _track(usage, UsageEventType.PROPOSAL_CREATED, times=2)
        usage.track_event("org-2", UsageEventType.PROPOSAL_CREATED, now=OCT)
        trends = usage.get_usage_trends("org-1", months=1, now=NOV)
        assert len(trends) == 1
        assert trends[0].period_start == date(2026, 11, 1)
        assert trends[0].proposals == 0

    def test_months_must_be_positive(self, usage):
        with pytest.raises(InvalidInputError):
            usage.get_usage_trends("org-1", months=0)

    def test_months_before_crosses_year(self):
        assert months_before(date(2026, 1, 1), 2) == date(2025, 11, 1)
        assert months_before(date(2026, 3, 1), 0) == date(2026, 3, 1)
        assert months_before(date(2026, 3, 1), 14) == date(2025, 1, 1)

    def test_daily_counts(self, usage):
        for moment, quantity in [(OCT - timedelta(days=40), 5), (OCT - timedelta(days=1), 1), (OCT, 2)]:
            usage.track_event("org-1", UsageEventType.AI_CALL, quantity=quantity, now=moment)
        usage.track_event("org-1", UsageEventType.EMAIL_SENT, now=OCT)

        counts = usage.get_daily_counts("org-1", UsageEventType.AI_CALL, days=7, now=OCT)
        assert [c.day for c in counts] == [date(2026, 10, d) for d in range(4, 11)]
        assert [c.count for c in counts][-2:] == [1, 2]
        assert sum(c.count for c in counts) == 3
