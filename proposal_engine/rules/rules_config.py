"""
Rules Config Store — loads/saves org rule configurations from MongoDB.

Org-level settings: discount approval, loyalty program, plan catalog and
automatic discount rules are configured once by an admin and cached.  Falls
back to sensible defaults if MongoDB is empty (first run) or in mock mode.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError

from proposal_engine.config import get_settings
from proposal_engine.models.schemas import AutoRuleSource
from proposal_engine.persistence.mongo_client import MongoClient

logger = logging.getLogger(__name__)


# ── Config models ────────────────────────────────────────

class RoleLimit(BaseModel):
    max_percent: float
    max_amount: Optional[float] = None  # None = no dollar cap


def _default_role_limits() -> dict[str, RoleLimit]:
    return {
        "sales": RoleLimit(max_percent=10, max_amount=200),
        "manager": RoleLimit(max_percent=25, max_amount=1000),
        "admin": RoleLimit(max_percent=50, max_amount=5000),
        "owner": RoleLimit(max_percent=100, max_amount=None),
    }


class ApprovalConfig(BaseModel):
    """Discount approval thresholds."""
    require_approval: bool = True
    approval_threshold_percent: float = Field(
        default_factory=lambda: get_settings().approval_threshold_percent
    )
    approval_threshold_amount: float = Field(
        default_factory=lambda: get_settings().approval_threshold_amount
    )
    approval_for_orders_over: Optional[float] = None
    role_limits: dict[str, RoleLimit] = Field(default_factory=_default_role_limits)


class LoyaltyTier(BaseModel):
    name: str
    min_points: int
    discount_percent: float
    perks: list[str] = []


def _default_loyalty_tiers() -> list[LoyaltyTier]:
    return [
        LoyaltyTier(name="Bronze", min_points=0, discount_percent=0),
        LoyaltyTier(name="Silver", min_points=1000, discount_percent=5, perks=["Priority scheduling"]),
        LoyaltyTier(name="Gold", min_points=5000, discount_percent=10, perks=["Priority scheduling", "Free crack inspection"]),
        LoyaltyTier(name="Platinum", min_points=10000, discount_percent=15, perks=["Priority scheduling", "Free crack inspection", "Annual touch-up"]),
    ]


class LoyaltyProgramConfig(BaseModel):
    """Loyalty program rules."""
    name: str = "Rewards Program"
    is_active: bool = True
    points_per_dollar: float = 1.0
    points_for_signup: int = 100
    points_for_referral: int = 500
    points_to_dollar_ratio: float = 0.01
    min_points_to_redeem: int = 500
    max_redemption_percent: float = 20.0
    tiers: list[LoyaltyTier] = Field(default_factory=_default_loyalty_tiers)

    def tier_for(self, total_points_earned: int) -> LoyaltyTier:
        """Highest tier whose threshold the lifetime points reach."""
        tiers = sorted(self.tiers, key=lambda t: t.min_points)
        current = tiers[0]
        for tier in tiers:
            if total_points_earned >= tier.min_points:
                current = tier
        return current


class PlanLimits(BaseModel):
    """Per-plan quotas. -1 means unlimited."""
    proposals_per_month: int
    clients: int
    team_members: int
    storage_mb: int
    ai_calls_per_month: int
    industries: int = 1


class PlanCatalogConfig(BaseModel):
    plans: dict[str, PlanLimits] = {
        "free": PlanLimits(proposals_per_month=10, clients=25, team_members=1, storage_mb=100, ai_calls_per_month=20),
        "pro": PlanLimits(proposals_per_month=100, clients=500, team_members=5, storage_mb=5000, ai_calls_per_month=500, industries=3),
        "business": PlanLimits(proposals_per_month=500, clients=-1, team_members=25, storage_mb=25000, ai_calls_per_month=2500, industries=-1),
        "enterprise": PlanLimits(proposals_per_month=-1, clients=-1, team_members=-1, storage_mb=-1, ai_calls_per_month=-1, industries=-1),
    }

    def limits_for(self, plan_id: str) -> PlanLimits:
        return self.plans.get(plan_id) or self.plans["free"]


class AutoDiscountRulesConfig(BaseModel):
    """Discounts applied without a code when their condition holds. None by default."""
    rules: list[AutoRuleSource] = []

    def active_rules(self) -> list[AutoRuleSource]:
        """Active rules, highest priority first."""
        return sorted((r for r in self.rules if r.is_active), key=lambda r: -r.priority)


# ── Store class ──────────────────────────────────────────

class RulesConfigStore:
    """
    Loads rule configs from MongoDB, keyed by org.  Falls back to defaults on
    first run.  Cached after first load for the lifetime of the store.
    """

    def __init__(self, database: Any = None):
        self.settings = get_settings()
        self._db = database
        self._cache: dict[tuple[str, str], BaseModel] = {}

    def _get_db(self):
        if self._db is not None or self.settings.mock_mode:
            return self._db
        try:
            self._db = MongoClient(self.settings).get_database()
        except PyMongoError as e:
            logger.warning(f"MongoDB not available, using defaults: {e}")
            self._db = None
        return self._db

    def _load_config(self, rule_type: str, org_id: str, model_cls: type[BaseModel]) -> BaseModel:
        """Load from MongoDB or return defaults."""
        key = (rule_type, org_id)
        if key in self._cache:
            return self._cache[key]

        db = self._get_db()
        if db is not None:
            try:
                doc = db.rules_config.find_one({"rule_type": rule_type, "org_id": org_id})
                if doc and "config" in doc:
                    config = model_cls(**doc["config"])
                    self._cache[key] = config
                    return config
            except PyMongoError as e:
                logger.warning(f"Failed loading {rule_type} for {org_id} from MongoDB: {e}")

        # Defaults
        config = model_cls()
        self._cache[key] = config
        return config

    def get_approval_config(self, org_id: str = "default") -> ApprovalConfig:
        return self._load_config("approval", org_id, ApprovalConfig)  # type: ignore[return-value]

    def get_loyalty_config(self, org_id: str = "default") -> LoyaltyProgramConfig:
        return self._load_config("loyalty", org_id, LoyaltyProgramConfig)  # type: ignore[return-value]

    def get_plan_catalog(self, org_id: str = "default") -> PlanCatalogConfig:
        return self._load_config("plans", org_id, PlanCatalogConfig)  # type: ignore[return-value]

    def get_auto_discount_rules(self, org_id: str = "default") -> AutoDiscountRulesConfig:
        return self._load_config("auto_discounts", org_id, AutoDiscountRulesConfig)  # type: ignore[return-value]

    def set_config(self, rule_type: str, org_id: str, config: BaseModel) -> None:
        """Override a config in-process (tests, admin preview) without touching MongoDB."""
        self._cache[(rule_type, org_id)] = config

    def update_config(self, rule_type: str, org_id: str, config_dict: dict[str, Any]) -> bool:
        """Admin: save/update a rule config in MongoDB."""
        db = self._get_db()
        if db is None:
            logger.error("Cannot update config — MongoDB not available")
            return False

        db.rules_config.update_one(
            {"rule_type": rule_type, "org_id": org_id},
            {"$set": {"rule_type": rule_type, "org_id": org_id, "config": config_dict}},
            upsert=True,
        )
        # Invalidate cache
        self._cache.pop((rule_type, org_id), None)
        logger.info(f"Updated {rule_type} config for {org_id} in MongoDB")
        return True
