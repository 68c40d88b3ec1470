"""
Discount Service — resolves which discounts apply to a proposal.

resolve_discounts() is pure: it evaluates every active source, applies the
single best one automatically and stacks any explicitly requested sources
that do not conflict.  DiscountService wraps it with the repository: promo
codes, seasonal campaigns, volume tiers, automatic rules from the config
store, usage records and approval requests.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from proposal_engine.exceptions import (
    AtomicIncrementUnavailable,
    InvalidInputError,
    NotFoundError,
)
from proposal_engine.models.enums import (
    ApprovalAction,
    ApprovalStatus,
    DiscountSourceType,
    DiscountType,
    RejectionCode,
)
from proposal_engine.models.schemas import (
    AppliedDiscount,
    ApprovalCheck,
    AutoRuleSource,
    AvailableDiscount,
    CodeValidation,
    CustomerContext,
    DiscountApprovalRequest,
    DiscountRejection,
    DiscountResolution,
    DiscountSource,
    PromoCodeSource,
    PromoCodeUsage,
    SeasonalSource,
    SourceEvaluation,
    UpsellSuggestion,
    VolumeSource,
)
from proposal_engine.persistence.repository import Repository, get_repository
from proposal_engine.pricing.calculator import round_money
from proposal_engine.rules.approval_rules import check_approval_required
from proposal_engine.rules.discount_rules import (
    calculate_discount,
    conflicts_with,
    evaluate_source,
    rank_evaluations,
)
from proposal_engine.rules.rules_config import ApprovalConfig, RulesConfigStore

logger = logging.getLogger(__name__)

PROMO_TABLE = "promo_codes"
PROMO_USAGE_TABLE = "promo_code_usage"
SEASONAL_TABLE = "seasonal_discounts"
VOLUME_TABLE = "volume_discounts"
APPROVAL_TABLE = "discount_approval_requests"


# ── Upsells ──────────────────────────────────────────────

def generate_upsell_suggestions(
    subtotal: float,
    ctx: CustomerContext,
    eligible: Sequence[SourceEvaluation],
) -> list[UpsellSuggestion]:
    suggestions: list[UpsellSuggestion] = []

    if not any(e.source_type == DiscountSourceType.VOLUME for e in eligible):
        suggestions.append(UpsellSuggestion(
            type="volume",
            message="Add more square footage to unlock volume discounts!",
            action_required="Increase project size to 5,000+ sq ft",
            potential_savings=round_money(subtotal * 0.05),
            cta_text="Learn More",
        ))

    services = set(ctx.selected_services)
    if "sealcoating" in services and "crack-filling" not in services:
        suggestions.append(UpsellSuggestion(
            type="combo",
            message="Bundle with crack filling for extra savings!",
            action_required="Add crack filling to your proposal",
            potential_savings=round_money(subtotal * 0.10),
            cta_text="Add Service",
        ))

    if ctx.is_new_customer:
        suggestions.append(UpsellSuggestion(
            type="loyalty",
            message="Join our loyalty program to earn points!",
            action_required="Enroll in the loyalty program",
            potential_savings=round_money(subtotal * 0.05),
            cta_text="Join Now",
        ))

    return suggestions


# ── Resolver ─────────────────────────────────────────────

def _rejection(evaluation: SourceEvaluation, code: RejectionCode, reason: str) -> DiscountRejection:
    return DiscountRejection(
        source_id=evaluation.source_id,
        source_type=evaluation.source_type,
        code=code,
        reason=reason,
    )


def resolve_discounts(
    subtotal: float,
    customer_context: CustomerContext,
    active_sources: Iterable[DiscountSource],
    requested_source_ids: Sequence[str] = (),
    approval_config: Optional[ApprovalConfig] = None,
) -> DiscountResolution:
    """
    Pick the discounts for a proposal subtotal.

    The best eligible source is always applied.  Sources listed in
    ``requested_source_ids`` are stacked after it, in request order, unless
    they share a type with an applied source or either side is not stackable.
    """
    if subtotal < 0:
        raise InvalidInputError("subtotal cannot be negative", {"subtotal": subtotal})

    ctx = customer_context
    sources = list(active_sources)
    evaluations = [evaluate_source(s, subtotal, ctx) for s in sources]

    rejected = [
        _rejection(e, e.code or RejectionCode.NOT_ELIGIBLE, e.reason)
        for e in evaluations if not e.eligible
    ]

    # An entered code with no matching promo source
    if ctx.promo_code:
        entered = ctx.promo_code.strip().upper()
        known = {s.code for s in sources if isinstance(s, PromoCodeSource)}
        if entered not in known:
            rejected.append(DiscountRejection(
                source_type=DiscountSourceType.PROMO_CODE,
                code=RejectionCode.INVALID_CODE,
                reason="Invalid or expired discount code",
            ))

    ranked = rank_evaluations(e for e in evaluations if e.eligible)
    by_id = {e.source_id: e for e in evaluations}

    selected: list[SourceEvaluation] = ranked[:1]
    for source_id in requested_source_ids:
        evaluation = by_id.get(source_id)
        if evaluation is None:
            rejected.append(DiscountRejection(
                source_id=source_id,
                code=RejectionCode.NOT_ELIGIBLE,
                reason="Discount is not available for this proposal",
            ))
            continue
        if not evaluation.eligible or evaluation in selected:
            continue
        blocker = conflicts_with(evaluation, selected)
        if blocker is not None:
            rejected.append(_rejection(
                evaluation,
                RejectionCode.CONFLICT,
                f"{evaluation.name} cannot be combined with {blocker.name}",
            ))
            continue
        selected.append(evaluation)

    # Stack in order against the remaining subtotal
    applied: list[AppliedDiscount] = []
    remaining = round_money(subtotal)
    for position, evaluation in enumerate(selected, start=1):
        amount = calculate_discount(
            evaluation.discount_type,
            evaluation.discount_value,
            remaining,
            evaluation.max_discount_amount,
        )
        applied.append(AppliedDiscount(
            source_id=evaluation.source_id,
            source_type=evaluation.source_type,
            source_name=evaluation.name,
            discount_type=evaluation.discount_type,
            discount_value=evaluation.discount_value,
            discount_amount=amount,
            order_position=position,
            applied_to_subtotal=remaining,
        ))
        remaining = round_money(max(0.0, remaining - amount))

    applied_ids = {e.source_id for e in selected}
    available = [
        AvailableDiscount(
            source_id=e.source_id,
            source_type=e.source_type,
            name=e.name,
            description=e.description,
            discount_type=e.discount_type,
            discount_value=e.discount_value,
            estimated_savings=e.estimated_savings,
            stackable=e.stackable,
            rank=rank,
        )
        for rank, e in enumerate(ranked, start=1)
        if e.source_id not in applied_ids
    ]

    total_discount = round_money(min(subtotal, sum(d.discount_amount for d in applied)))

    approval = ApprovalCheck(required=False)
    if applied and subtotal > 0:
        approval = check_approval_required(
            approval_config or ApprovalConfig(),
            discount_percent=total_discount / subtotal * 100,
            discount_amount=total_discount,
            order_total=subtotal,
            user_role=ctx.user_role,
        )

    logger.info(
        f"Resolved discounts on ${subtotal:,.2f}: {len(applied)} applied "
        f"(${total_discount:,.2f}), {len(available)} available, {len(rejected)} rejected"
    )

    return DiscountResolution(
        original_subtotal=round_money(subtotal),
        applied_discounts=applied,
        available_discounts=available,
        rejected_discounts=rejected,
        total_discount_amount=total_discount,
        final_subtotal=round_money(subtotal - total_discount),
        requires_approval=approval.required,
        approval_reason=approval.reason,
        upsell_suggestions=generate_upsell_suggestions(subtotal, ctx, ranked),
    )


# ── Store-backed service ─────────────────────────────────

class DiscountService:
    """Promo codes, campaigns, usage tracking and approval requests for an org."""

    def __init__(
        self,
        repository: Optional[Repository] = None,
        config_store: Optional[RulesConfigStore] = None,
        loyalty_service=None,
    ):
        self.repo = repository or get_repository()
        self.config_store = config_store or RulesConfigStore()
        self.loyalty_service = loyalty_service
        self.repo.ensure_unique(PROMO_TABLE, ("org_id", "code"))

    # ── Promo codes ──────────────────────────────────────

    def create_promo_code(self, org_id: str, promo: PromoCodeSource) -> PromoCodeSource:
        promo = promo.model_copy(update={"org_id": org_id})
        if self.get_promo_code(org_id, promo.code):
            raise InvalidInputError(f"Discount code already exists: {promo.code}", {"code": promo.code})
        self.repo.insert(PROMO_TABLE, promo.model_dump(mode="json"))
        logger.info(f"Created promo code {promo.code} for org {org_id}")
        return promo

    def get_promo_code(self, org_id: str, code: str) -> Optional[PromoCodeSource]:
        row = self.repo.fetch_one(PROMO_TABLE, {"org_id": org_id, "code": code.strip().upper()})
        return PromoCodeSource.model_validate(row) if row else None

    def list_promo_codes(self, org_id: str, include_inactive: bool = False) -> list[PromoCodeSource]:
        filters: dict = {"org_id": org_id}
        if not include_inactive:
            filters["is_active"] = True
        rows = self.repo.fetch_many(PROMO_TABLE, filters, order_by="code")
        return [PromoCodeSource.model_validate(r) for r in rows]

    def deactivate_promo_code(self, source_id: str) -> None:
        if not self.repo.update(PROMO_TABLE, {"id": source_id}, {"is_active": False}):
            raise NotFoundError("Discount code", source_id)
        logger.info(f"Deactivated promo code {source_id}")

    def customer_promo_usage(
        self,
        source_id: str,
        customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> int:
        if not customer_id and not customer_email:
            return 0
        rows = self.repo.fetch_many(PROMO_USAGE_TABLE, {"source_id": source_id})
        return sum(
            1 for r in rows
            if (customer_id and r.get("customer_id") == customer_id)
            or (customer_email and r.get("customer_email") == customer_email)
        )

    def _with_promo_usage(self, ctx: CustomerContext, promo: PromoCodeSource) -> CustomerContext:
        used = self.customer_promo_usage(promo.id, ctx.customer_id, ctx.customer_email)
        return ctx.model_copy(update={"promo_usage": {**ctx.promo_usage, promo.id: used}})

    def validate_code(
        self,
        org_id: str,
        code: str,
        ctx: CustomerContext,
        subtotal: float,
    ) -> CodeValidation:
        """Check an entered code without applying it."""
        promo = self.get_promo_code(org_id, code)
        if promo is None:
            return CodeValidation(
                valid=False,
                code=code.strip().upper(),
                rejection=DiscountRejection(
                    source_type=DiscountSourceType.PROMO_CODE,
                    code=RejectionCode.INVALID_CODE,
                    reason="Invalid or expired discount code",
                ),
            )

        evaluation = evaluate_source(promo, subtotal, self._with_promo_usage(ctx, promo))
        if not evaluation.eligible:
            return CodeValidation(
                valid=False,
                source_id=promo.id,
                code=promo.code,
                rejection=_rejection(evaluation, evaluation.code or RejectionCode.NOT_ELIGIBLE, evaluation.reason),
            )

        return CodeValidation(
            valid=True,
            source_id=promo.id,
            code=promo.code,
            name=promo.name,
            discount_type=promo.discount_type,
            discount_value=promo.discount_value,
            discount_amount=evaluation.estimated_savings,
            description=promo.description,
        )

    def record_promo_usage(
        self,
        org_id: str,
        source_id: str,
        proposal_id: str,
        order_amount: float,
        discount_amount: float,
        customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
        applied_by: str = "",
    ) -> PromoCodeUsage:
        """Store a usage row and bump the code's counters."""
        usage = PromoCodeUsage(
            org_id=org_id,
            source_id=source_id,
            proposal_id=proposal_id,
            customer_id=customer_id,
            customer_email=customer_email,
            order_amount=order_amount,
            discount_amount=discount_amount,
            applied_by=applied_by,
        )
        deltas = {"uses_total": 1, "total_discount_given": discount_amount}
        try:
            updated = self.repo.increment(PROMO_TABLE, {"id": source_id}, deltas)
        except AtomicIncrementUnavailable:
            logger.warning(f"Atomic increment unavailable, updating promo {source_id} with read-then-write")
            row = self.repo.fetch_one(PROMO_TABLE, {"id": source_id})
            updated = row
            if row is not None:
                self.repo.update(PROMO_TABLE, {"id": source_id}, {
                    "uses_total": row.get("uses_total", 0) + 1,
                    "total_discount_given": row.get("total_discount_given", 0) + discount_amount,
                })
        if updated is None:
            raise NotFoundError("Discount code", source_id)

        self.repo.insert(PROMO_USAGE_TABLE, usage.model_dump(mode="json"))
        return usage

    # ── Campaigns & volume tiers ─────────────────────────

    def create_seasonal(self, org_id: str, campaign: SeasonalSource) -> SeasonalSource:
        campaign = campaign.model_copy(update={"org_id": org_id})
        self.repo.insert(SEASONAL_TABLE, campaign.model_dump(mode="json"))
        return campaign

    def create_volume(self, org_id: str, volume: VolumeSource) -> VolumeSource:
        volume = volume.model_copy(update={"org_id": org_id})
        self.repo.insert(VOLUME_TABLE, volume.model_dump(mode="json"))
        return volume

    def create_auto_rule(self, org_id: str, rule: AutoRuleSource) -> AutoRuleSource:
        """Add an automatic rule to the org's config; kept in-process when MongoDB is unavailable."""
        rule = rule.model_copy(update={"org_id": org_id})
        config = self.config_store.get_auto_discount_rules(org_id)
        updated = config.model_copy(update={"rules": [*config.rules, rule]})
        if not self.config_store.update_config("auto_discounts", org_id, updated.model_dump(mode="json")):
            self.config_store.set_config("auto_discounts", org_id, updated)
        logger.info(f"Added automatic discount rule '{rule.name}' ({rule.condition.type}) for {org_id}")
        return rule

    def active_sources(self, org_id: str, ctx: CustomerContext) -> list[DiscountSource]:
        """Every source that could apply to this customer's proposal."""
        sources: list[DiscountSource] = []
        sources.extend(
            SeasonalSource.model_validate(r)
            for r in self.repo.fetch_many(SEASONAL_TABLE, {"org_id": org_id, "is_active": True})
        )
        sources.extend(
            VolumeSource.model_validate(r)
            for r in self.repo.fetch_many(VOLUME_TABLE, {"org_id": org_id, "is_active": True})
        )
        sources.extend(self.config_store.get_auto_discount_rules(org_id).active_rules())
        if self.loyalty_service is not None and ctx.customer_id:
            loyalty = self.loyalty_service.loyalty_source(org_id, ctx.customer_id)
            if loyalty is not None:
                sources.append(loyalty)
        if ctx.promo_code:
            promo = self.get_promo_code(org_id, ctx.promo_code)
            if promo is not None:
                sources.append(promo)
        return sources

    def resolve_for_org(
        self,
        org_id: str,
        subtotal: float,
        ctx: CustomerContext,
        requested_source_ids: Sequence[str] = (),
        extra_sources: Iterable[DiscountSource] = (),
    ) -> DiscountResolution:
        sources = [*self.active_sources(org_id, ctx), *extra_sources]
        for source in sources:
            if isinstance(source, PromoCodeSource):
                ctx = self._with_promo_usage(ctx, source)
        return resolve_discounts(
            subtotal,
            ctx,
            sources,
            requested_source_ids,
            approval_config=self.config_store.get_approval_config(org_id),
        )

    # ── Approval requests ────────────────────────────────

    def check_approval(
        self,
        org_id: str,
        discount_percent: float,
        discount_amount: float,
        order_total: float,
        user_role: Optional[str] = None,
    ) -> ApprovalCheck:
        return check_approval_required(
            self.config_store.get_approval_config(org_id),
            discount_percent,
            discount_amount,
            order_total,
            user_role,
        )

    def create_approval_request(
        self,
        org_id: str,
        proposal_id: str,
        proposal_total: float,
        requested_by: str,
        discount_type: DiscountType,
        discount_value: float,
        reason: str = "",
        supporting_notes: str = "",
    ) -> DiscountApprovalRequest:
        amount = calculate_discount(discount_type, discount_value, proposal_total)
        request = DiscountApprovalRequest(
            org_id=org_id,
            proposal_id=proposal_id,
            proposal_total=proposal_total,
            requested_by=requested_by,
            discount_type=discount_type,
            discount_value=discount_value,
            discount_amount=amount,
            discount_percent_of_total=round(amount / proposal_total * 100, 2) if proposal_total else 0.0,
            reason=reason,
            supporting_notes=supporting_notes,
        )
        self.repo.insert(APPROVAL_TABLE, request.model_dump(mode="json"))
        logger.info(f"Approval requested for proposal {proposal_id}: ${amount:,.2f} by {requested_by}")
        return request

    def get_pending_requests(self, org_id: str) -> list[DiscountApprovalRequest]:
        rows = self.repo.fetch_many(
            APPROVAL_TABLE,
            {"org_id": org_id, "status": ApprovalStatus.PENDING.value},
            order_by="requested_at",
        )
        return [DiscountApprovalRequest.model_validate(r) for r in rows]

    def review(
        self,
        request_id: str,
        action: ApprovalAction,
        reviewed_by: str,
        notes: str = "",
        counter_discount_type: Optional[DiscountType] = None,
        counter_discount_value: Optional[float] = None,
    ) -> DiscountApprovalRequest:
        """Approve, reject or counter.  A counter-offer is an approval with new terms."""
        row = self.repo.fetch_one(APPROVAL_TABLE, {"id": request_id})
        if row is None:
            raise NotFoundError("Approval request", request_id)

        action = ApprovalAction(action)
        status = ApprovalStatus.REJECTED if action == ApprovalAction.REJECT else ApprovalStatus.APPROVED
        changes = {
            "status": status.value,
            "reviewed_by": reviewed_by,
            "reviewed_at": datetime.now(timezone.utc).isoformat(),
            "reviewer_notes": notes,
        }
        if action == ApprovalAction.COUNTER:
            if counter_discount_type is None or counter_discount_value is None:
                raise InvalidInputError("A counter-offer needs a discount type and value")
            changes["counter_discount_type"] = DiscountType(counter_discount_type).value
            changes["counter_discount_value"] = counter_discount_value

        self.repo.update(APPROVAL_TABLE, {"id": request_id}, changes)
        logger.info(f"Approval request {request_id} {action.value} by {reviewed_by}")
        return DiscountApprovalRequest.model_validate({**row, **changes})
