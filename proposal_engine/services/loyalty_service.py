"""
Loyalty Service — points ledger, tiers and the loyalty discount source.
"""

from __future__ import annotations

import logging
import math
import secrets
from datetime import datetime, timezone
from typing import Optional

from proposal_engine.exceptions import InvalidInputError, NotFoundError
from proposal_engine.models.enums import LoyaltyTransactionType
from proposal_engine.models.schemas import CustomerLoyalty, LoyaltySource, LoyaltyTransaction
from proposal_engine.persistence.repository import Repository, get_repository
from proposal_engine.pricing.calculator import round_money
from proposal_engine.rules.rules_config import LoyaltyProgramConfig, RulesConfigStore

logger = logging.getLogger(__name__)

LOYALTY_TABLE = "customer_loyalty"
TRANSACTION_TABLE = "loyalty_transactions"

REFERRAL_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_referral_code(length: int = 8) -> str:
    """Referral code without look-alike characters (no I, O, 0, 1)."""
    return "".join(secrets.choice(REFERRAL_ALPHABET) for _ in range(length))


class LoyaltyService:
    """Enrolment, earning, redemption and tier maintenance for one repository."""

    def __init__(
        self,
        repository: Optional[Repository] = None,
        config_store: Optional[RulesConfigStore] = None,
    ):
        self.repo = repository or get_repository()
        self.config_store = config_store or RulesConfigStore()
        self.repo.ensure_unique(LOYALTY_TABLE, ("org_id", "client_id"))

    def _program(self, org_id: str) -> LoyaltyProgramConfig:
        program = self.config_store.get_loyalty_config(org_id)
        if not program.is_active:
            raise InvalidInputError("Loyalty program is not active", {"org_id": org_id})
        return program

    def _save(self, loyalty: CustomerLoyalty) -> None:
        self.repo.update(LOYALTY_TABLE, {"id": loyalty.id}, loyalty.model_dump(mode="json"))

    def _record(
        self,
        loyalty: CustomerLoyalty,
        type_: LoyaltyTransactionType,
        points: int,
        description: str,
        proposal_id: Optional[str] = None,
    ) -> LoyaltyTransaction:
        transaction = LoyaltyTransaction(
            org_id=loyalty.org_id,
            customer_loyalty_id=loyalty.id,
            type=type_,
            points=points,
            balance_after=loyalty.current_points,
            proposal_id=proposal_id,
            description=description,
        )
        self.repo.insert(TRANSACTION_TABLE, transaction.model_dump(mode="json"))
        return transaction

    def _apply_tier(self, loyalty: CustomerLoyalty, program: LoyaltyProgramConfig) -> None:
        tier = program.tier_for(loyalty.total_points_earned)
        if tier.name != loyalty.current_tier:
            logger.info(f"Customer {loyalty.client_id} moved to {tier.name} tier")
        loyalty.current_tier = tier.name
        loyalty.tier_discount_percent = tier.discount_percent

    # ── Queries ──────────────────────────────────────────

    def get_customer_loyalty(self, org_id: str, client_id: str) -> Optional[CustomerLoyalty]:
        row = self.repo.fetch_one(LOYALTY_TABLE, {"org_id": org_id, "client_id": client_id})
        return CustomerLoyalty.model_validate(row) if row else None

    def get_transaction_history(self, customer_loyalty_id: str, limit: int = 50) -> list[LoyaltyTransaction]:
        rows = self.repo.fetch_many(
            TRANSACTION_TABLE,
            {"customer_loyalty_id": customer_loyalty_id},
            order_by="created_at",
            descending=True,
            limit=limit,
        )
        return [LoyaltyTransaction.model_validate(r) for r in rows]

    def loyalty_source(self, org_id: str, client_id: str) -> Optional[LoyaltySource]:
        """The member discount as a DiscountSource, or None if not enrolled."""
        loyalty = self.get_customer_loyalty(org_id, client_id)
        if loyalty is None:
            return None
        return LoyaltySource(
            id=loyalty.id,
            org_id=org_id,
            name=f"{loyalty.current_tier or 'Member'} Member Discount",
            customer_loyalty_id=loyalty.id,
            tier_name=loyalty.current_tier,
            tier_discount_percent=loyalty.tier_discount_percent,
            discount_value=loyalty.tier_discount_percent,
        )

    # ── Mutations ────────────────────────────────────────

    def enroll_customer(self, org_id: str, client_id: str, referred_by: Optional[str] = None) -> CustomerLoyalty:
        """Enrol with the signup bonus; credit the referrer when ``referred_by`` matches a code."""
        program = self._program(org_id)
        loyalty = CustomerLoyalty(
            org_id=org_id,
            client_id=client_id,
            referral_code=generate_referral_code(),
            referred_by=referred_by,
            current_points=program.points_for_signup,
            total_points_earned=program.points_for_signup,
        )
        self._apply_tier(loyalty, program)
        self.repo.insert(LOYALTY_TABLE, loyalty.model_dump(mode="json"))
        logger.info(f"Enrolled customer {client_id} in {program.name}")

        if program.points_for_signup:
            self._record(loyalty, LoyaltyTransactionType.EARN_SIGNUP, program.points_for_signup, "Signup bonus")

        if referred_by and program.points_for_referral:
            row = self.repo.fetch_one(LOYALTY_TABLE, {"org_id": org_id, "referral_code": referred_by})
            if row is not None:
                referrer = CustomerLoyalty.model_validate(row)
                referrer.current_points += program.points_for_referral
                referrer.total_points_earned += program.points_for_referral
                referrer.referrals_count += 1
                self._apply_tier(referrer, program)
                self._save(referrer)
                self._record(
                    referrer, LoyaltyTransactionType.EARN_REFERRAL, program.points_for_referral, "Referral bonus"
                )
            else:
                logger.info(f"Referral code {referred_by} not found; no referral bonus awarded")

        return loyalty

    def earn_points(
        self,
        org_id: str,
        client_id: str,
        order_amount: float,
        proposal_id: Optional[str] = None,
        bonus_points: int = 0,
    ) -> LoyaltyTransaction:
        if order_amount < 0 or bonus_points < 0:
            raise InvalidInputError(
                "order_amount and bonus_points cannot be negative",
                {"order_amount": order_amount, "bonus_points": bonus_points},
            )
        program = self._program(org_id)
        loyalty = self.get_customer_loyalty(org_id, client_id) or self.enroll_customer(org_id, client_id)

        base_points = math.floor(order_amount * program.points_per_dollar)
        total_points = base_points + bonus_points
        now = datetime.now(timezone.utc)

        loyalty.current_points += total_points
        loyalty.total_points_earned += total_points
        loyalty.total_orders += 1
        loyalty.total_spent = round_money(loyalty.total_spent + order_amount)
        loyalty.last_order_date = now
        loyalty.first_order_date = loyalty.first_order_date or now
        self._apply_tier(loyalty, program)
        self._save(loyalty)

        description = f"Earned {base_points} points from ${order_amount:,.2f} purchase"
        if bonus_points:
            description += f" + {bonus_points} bonus points"
        return self._record(loyalty, LoyaltyTransactionType.EARN_PURCHASE, total_points, description, proposal_id)

    def redeem_points(
        self,
        org_id: str,
        client_id: str,
        points: int,
        proposal_id: Optional[str] = None,
    ) -> tuple[float, LoyaltyTransaction]:
        """Convert points into a dollar discount. Returns (discount_amount, transaction)."""
        program = self._program(org_id)
        loyalty = self.get_customer_loyalty(org_id, client_id)
        if loyalty is None:
            raise NotFoundError("Customer loyalty", client_id)
        if points < program.min_points_to_redeem:
            raise InvalidInputError(
                f"Minimum {program.min_points_to_redeem} points required to redeem", {"points": points}
            )
        if points > loyalty.current_points:
            raise InvalidInputError(
                "Insufficient points", {"points": points, "available": loyalty.current_points}
            )

        discount_amount = round_money(points * program.points_to_dollar_ratio)
        loyalty.current_points -= points
        loyalty.total_points_redeemed += points
        self._save(loyalty)

        transaction = self._record(
            loyalty,
            LoyaltyTransactionType.REDEEM,
            -points,
            f"Redeemed {points} points for ${discount_amount:,.2f} discount",
            proposal_id,
        )
        return discount_amount, transaction
