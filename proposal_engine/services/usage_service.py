"""
Usage Service — plan quotas, usage counters and the monthly reset.

Counters live in one ``usage_current`` row per org.  The first read in a new
calendar month archives the rate counters into monthly rollups and zeroes
them; storage bytes and team-member headcount carry over.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, Optional, Union

from pydantic import ValidationError

from proposal_engine.config import get_settings
from proposal_engine.exceptions import (
    AtomicIncrementUnavailable,
    InvalidInputError,
    QuotaExceededError,
)
from proposal_engine.models.enums import QuotaAction, QuotaDimension, UsageEventType
from proposal_engine.models.schemas import (
    ActionCheck,
    CurrentUsage,
    DailyUsageCount,
    MonthlyUsageTrend,
    OrgEntitlement,
    QuotaStatus,
    UsageEvent,
    UsageEventInput,
    UsageRollup,
    UsageSummary,
)
from proposal_engine.persistence.repository import Repository, get_repository
from proposal_engine.rules.rules_config import PlanLimits, RulesConfigStore

logger = logging.getLogger(__name__)

USAGE_TABLE = "usage_current"
EVENT_TABLE = "usage_events"
ROLLUP_TABLE = "usage_rollups"
ENTITLEMENT_TABLE = "org_entitlements"

UPGRADE_MESSAGE = "Upgrade your plan for higher limits"
EMAILS_PER_PROPOSAL = 10
BYTES_PER_MB = 1024 * 1024

ACTION_DIMENSIONS: dict[QuotaAction, QuotaDimension] = {
    QuotaAction.CREATE_PROPOSAL: QuotaDimension.PROPOSALS,
    QuotaAction.CALL_AI: QuotaDimension.AI_CALLS,
    QuotaAction.SEND_EMAIL: QuotaDimension.EMAILS,
    QuotaAction.ADD_TEAM_MEMBER: QuotaDimension.TEAM_MEMBERS,
    QuotaAction.UPLOAD_STORAGE: QuotaDimension.STORAGE,
}

DIMENSION_LABELS: dict[QuotaDimension, str] = {
    QuotaDimension.PROPOSALS: "proposal",
    QuotaDimension.AI_CALLS: "AI call",
    QuotaDimension.EMAILS: "email",
    QuotaDimension.TEAM_MEMBERS: "team member",
    QuotaDimension.STORAGE: "storage",
}

MONTHLY_DIMENSIONS = {QuotaDimension.PROPOSALS, QuotaDimension.AI_CALLS, QuotaDimension.EMAILS}

# event -> (counter field, sign); -1 removes one member regardless of quantity
EVENT_COUNTERS: dict[UsageEventType, tuple[str, int]] = {
    UsageEventType.PROPOSAL_CREATED: ("proposals_this_month", 1),
    UsageEventType.AI_CALL: ("ai_calls_this_month", 1),
    UsageEventType.EMAIL_SENT: ("emails_this_month", 1),
    UsageEventType.TEAM_MEMBER_ADDED: ("team_members_count", 1),
    UsageEventType.TEAM_MEMBER_REMOVED: ("team_members_count", -1),
    UsageEventType.STORAGE_UPLOAD: ("storage_used_bytes", 1),
    UsageEventType.STORAGE_DELETE: ("storage_used_bytes", -1),
}

# Archived on the monthly reset
ROLLUP_COUNTERS: dict[str, UsageEventType] = {
    "proposals_this_month": UsageEventType.PROPOSAL_CREATED,
    "ai_calls_this_month": UsageEventType.AI_CALL,
    "emails_this_month": UsageEventType.EMAIL_SENT,
}

TREND_FIELDS: dict[UsageEventType, str] = {
    UsageEventType.PROPOSAL_CREATED: "proposals",
    UsageEventType.AI_CALL: "ai_calls",
    UsageEventType.EMAIL_SENT: "emails",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def month_start(moment: datetime) -> date:
    return date(moment.year, moment.month, 1)


def months_before(start: date, count: int) -> date:
    """First day of the month ``count`` months before ``start``'s month."""
    year, month = divmod(start.year * 12 + start.month - 1 - count, 12)
    return date(year, month + 1, 1)


def is_comped(entitlement: OrgEntitlement, now: Optional[datetime] = None) -> bool:
    """Comped with no end date, or an end date still in the future."""
    if not entitlement.is_comped:
        return False
    return entitlement.comped_until is None or entitlement.comped_until > (now or _utcnow())


def email_limit(limits: PlanLimits) -> int:
    if limits.proposals_per_month == -1:
        return -1
    return limits.proposals_per_month * EMAILS_PER_PROPOSAL


class UsageService:
    """Quota gate and usage counters backed by the repository."""

    def __init__(
        self,
        repository: Optional[Repository] = None,
        config_store: Optional[RulesConfigStore] = None,
    ):
        self.repo = repository or get_repository()
        self.config_store = config_store or RulesConfigStore()
        self.repo.ensure_unique(USAGE_TABLE, ("org_id",))
        self.repo.ensure_unique(ROLLUP_TABLE, ("org_id", "period_type", "period_start", "event_type"))

    # ── Entitlements ─────────────────────────────────────

    def get_entitlement(self, org_id: str) -> OrgEntitlement:
        row = self.repo.fetch_one(ENTITLEMENT_TABLE, {"org_id": org_id})
        if row is None:
            return OrgEntitlement(org_id=org_id, plan_id=get_settings().default_plan)
        return OrgEntitlement.model_validate(row)

    def set_entitlement(self, entitlement: OrgEntitlement) -> OrgEntitlement:
        self.repo.upsert(ENTITLEMENT_TABLE, {"org_id": entitlement.org_id}, entitlement.model_dump(mode="json"))
        logger.info(f"Org {entitlement.org_id} entitlement set to plan '{entitlement.plan_id}'")
        return entitlement

    def get_plan_limits(self, org_id: str) -> PlanLimits:
        entitlement = self.get_entitlement(org_id)
        plan_id = entitlement.plan_override or entitlement.plan_id
        return self.config_store.get_plan_catalog(org_id).limits_for(plan_id)

    # ── Current period ───────────────────────────────────

    def get_current_usage(self, org_id: str, now: Optional[datetime] = None) -> CurrentUsage:
        """Counters for the current month, resetting first if the month rolled over."""
        now = now or _utcnow()
        row = self.repo.fetch_one(USAGE_TABLE, {"org_id": org_id})
        if row is None:
            usage = CurrentUsage(org_id=org_id, period_start=month_start(now))
            self.repo.upsert(USAGE_TABLE, {"org_id": org_id}, usage.model_dump(mode="json"))
            return usage

        usage = CurrentUsage.model_validate(row)
        if usage.period_start != month_start(now):
            return self._reset_period(usage, now)
        return usage

    def _reset_period(self, usage: CurrentUsage, now: datetime) -> CurrentUsage:
        for field, event_type in ROLLUP_COUNTERS.items():
            quantity = getattr(usage, field)
            if quantity > 0:
                rollup = UsageRollup(
                    org_id=usage.org_id,
                    period_start=usage.period_start,
                    event_type=event_type,
                    total_quantity=quantity,
                )
                keys = rollup.model_dump(mode="json", exclude={"total_quantity"})
                self.repo.upsert(ROLLUP_TABLE, keys, rollup.model_dump(mode="json"))

        changes: dict[str, Any] = {field: 0 for field in ROLLUP_COUNTERS}
        changes["period_start"] = month_start(now).isoformat()
        self.repo.update(USAGE_TABLE, {"org_id": usage.org_id}, changes)
        logger.info(f"Usage period reset for org {usage.org_id} (archived {usage.period_start})")
        return usage.model_copy(update={**changes, "period_start": month_start(now)})

    # ── Tracking ─────────────────────────────────────────

    def track_event(
        self,
        org_id: str,
        event_type: UsageEventType,
        quantity: int = 1,
        user_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> UsageEvent:
        """Log the event and move the matching counter."""
        if quantity < 0:
            raise InvalidInputError("quantity cannot be negative", {"quantity": quantity})
        now = now or _utcnow()
        event_type = UsageEventType(event_type)
        event = UsageEvent(
            org_id=org_id,
            user_id=user_id,
            event_type=event_type,
            quantity=quantity,
            metadata=metadata or {},
            timestamp=now,
        )
        self.repo.insert(EVENT_TABLE, event.model_dump(mode="json"))

        counter = EVENT_COUNTERS.get(event_type)
        if counter is None:
            return event

        field, sign = counter
        delta = -1 if event_type == UsageEventType.TEAM_MEMBER_REMOVED else sign * quantity

        # Creates the row or rolls the period before counting
        self.get_current_usage(org_id, now)
        try:
            updated = self.repo.increment(USAGE_TABLE, {"org_id": org_id}, {field: delta})
            if updated is not None and updated.get(field, 0) < 0:
                self.repo.update(USAGE_TABLE, {"org_id": org_id}, {field: 0})
        except AtomicIncrementUnavailable:
            # Read-then-write: concurrent writers can lose updates here
            logger.warning(f"Atomic increment unavailable; updating {field} for org {org_id} non-atomically")
            row = self.repo.fetch_one(USAGE_TABLE, {"org_id": org_id}) or {}
            self.repo.update(USAGE_TABLE, {"org_id": org_id}, {field: max(0, (row.get(field) or 0) + delta)})
        return event

    def track_events(
        self,
        events: Iterable[Union[UsageEventInput, dict[str, Any]]],
        now: Optional[datetime] = None,
    ) -> list[UsageEvent]:
        """Track a batch.  Every entry is validated before any is recorded."""
        batch: list[UsageEventInput] = []
        invalid: list[str] = []
        for index, entry in enumerate(events):
            try:
                batch.append(UsageEventInput.model_validate(entry))
            except ValidationError as e:
                invalid.extend(".".join([str(index), *map(str, err["loc"])]) for err in e.errors())
        if invalid:
            raise InvalidInputError("Invalid usage event in batch", {"fields": invalid})

        now = now or _utcnow()
        tracked = [
            self.track_event(e.org_id, e.event_type, e.quantity, e.user_id, e.metadata, now)
            for e in batch
        ]
        logger.debug(f"Tracked {len(tracked)} usage events in one batch")
        return tracked

    # ── Quotas ───────────────────────────────────────────

    def get_usage_summary(self, org_id: str, now: Optional[datetime] = None) -> UsageSummary:
        usage = self.get_current_usage(org_id, now)
        limits = self.get_plan_limits(org_id)
        return UsageSummary(
            proposals=QuotaStatus.from_counts(usage.proposals_this_month, limits.proposals_per_month),
            ai_calls=QuotaStatus.from_counts(usage.ai_calls_this_month, limits.ai_calls_per_month),
            emails=QuotaStatus.from_counts(usage.emails_this_month, email_limit(limits)),
            storage=QuotaStatus.from_counts(
                round(usage.storage_used_bytes / BYTES_PER_MB, 2), limits.storage_mb
            ),
            team_members=QuotaStatus.from_counts(usage.team_members_count, limits.team_members),
        )

    def can_perform_action(
        self,
        org_id: str,
        action: QuotaAction,
        quantity: float = 1,
        now: Optional[datetime] = None,
    ) -> ActionCheck:
        """
        Whether ``quantity`` more units of ``action`` fit the org's plan.
        Storage quantities are in MB.
        """
        if quantity < 0:
            raise InvalidInputError("quantity cannot be negative", {"quantity": quantity})

        if is_comped(self.get_entitlement(org_id), now):
            return ActionCheck(allowed=True)

        dimension = ACTION_DIMENSIONS[QuotaAction(action)]
        status = self.get_usage_summary(org_id, now).for_dimension(dimension)
        if status.is_unlimited or status.remaining >= quantity:
            return ActionCheck(allowed=True)

        label = DIMENSION_LABELS[dimension]
        period = " for this month" if dimension in MONTHLY_DIMENSIONS else ""
        logger.info(f"Quota denied for org {org_id}: {dimension.value} {status.used}/{status.limit}")
        return ActionCheck(
            allowed=False,
            reason=f"You've reached your {label} limit{period}",
            upgrade=UPGRADE_MESSAGE,
        )

    def enforce_quota(
        self,
        org_id: str,
        action: QuotaAction,
        quantity: float = 1,
        now: Optional[datetime] = None,
    ) -> None:
        """Raise QuotaExceededError instead of returning a denial."""
        check = self.can_perform_action(org_id, action, quantity, now)
        if not check.allowed:
            raise QuotaExceededError(check.reason or "Quota exceeded", check.upgrade)

    # ── History ──────────────────────────────────────────

    def get_events(
        self,
        org_id: str,
        event_type: Optional[UsageEventType] = None,
        limit: int = 100,
    ) -> list[UsageEvent]:
        filters: dict[str, Any] = {"org_id": org_id}
        if event_type is not None:
            filters["event_type"] = UsageEventType(event_type).value
        rows = self.repo.fetch_many(EVENT_TABLE, filters, order_by="timestamp", descending=True, limit=limit)
        return [UsageEvent.model_validate(r) for r in rows]

    def get_rollups(self, org_id: str, event_type: Optional[UsageEventType] = None) -> list[UsageRollup]:
        filters: dict[str, Any] = {"org_id": org_id}
        if event_type is not None:
            filters["event_type"] = UsageEventType(event_type).value
        rows = self.repo.fetch_many(ROLLUP_TABLE, filters, order_by="period_start", descending=True)
        return [UsageRollup.model_validate(r) for r in rows]

    def get_usage_trends(self, org_id: str, months: int = 6, now: Optional[datetime] = None) -> list[MonthlyUsageTrend]:
        """
        Monthly proposal, AI call and email totals for the last ``months``
        months, oldest first.  Past months come from the rollups; the current
        month from the live counters.  Months without usage read as zero.
        """
        if months < 1:
            raise InvalidInputError("months must be at least 1", {"months": months})
        usage = self.get_current_usage(org_id, now)
        current = usage.period_start
        oldest = months_before(current, months - 1)

        trends = {
            months_before(current, offset): MonthlyUsageTrend(period_start=months_before(current, offset))
            for offset in range(months - 1, -1, -1)
        }
        rows = self.repo.fetch_many(
            ROLLUP_TABLE,
            {"org_id": org_id, "period_type": "monthly", "period_start": {"$gte": oldest.isoformat()}},
        )
        for rollup in (UsageRollup.model_validate(r) for r in rows):
            field = TREND_FIELDS.get(rollup.event_type)
            trend = trends.get(rollup.period_start)
            if field and trend is not None and rollup.period_start != current:
                setattr(trend, field, getattr(trend, field) + rollup.total_quantity)

        live = trends[current]
        live.proposals = usage.proposals_this_month
        live.ai_calls = usage.ai_calls_this_month
        live.emails = usage.emails_this_month
        return list(trends.values())

    def get_daily_counts(
        self,
        org_id: str,
        event_type: UsageEventType,
        days: int = 30,
        now: Optional[datetime] = None,
    ) -> list[DailyUsageCount]:
        """Summed event quantity per UTC day for the last ``days`` days, oldest first."""
        if days < 1:
            raise InvalidInputError("days must be at least 1", {"days": days})
        today = (now or _utcnow()).astimezone(timezone.utc).date()
        counts = {today - timedelta(days=offset): 0 for offset in range(days - 1, -1, -1)}

        rows = self.repo.fetch_many(EVENT_TABLE, {"org_id": org_id, "event_type": UsageEventType(event_type).value})
        for event in (UsageEvent.model_validate(r) for r in rows):
            day = event.timestamp.astimezone(timezone.utc).date()
            if day in counts:
                counts[day] += event.quantity
        return [DailyUsageCount(day=day, count=count) for day, count in counts.items()]
