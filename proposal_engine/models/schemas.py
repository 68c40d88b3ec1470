"""
Data schemas shared by the pricing, discount, usage, signature and A/B modules.
Each schema is a clearly-bounded record read from or written to a repository
row, or returned to a caller as a structured result.
"""

from __future__ import annotations

import math
import uuid
from datetime import date, datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializationInfo,
    computed_field,
    field_serializer,
    field_validator,
    model_validator,
)

from .enums import (
    ABTestStatus,
    ApprovalStatus,
    CustomerRestriction,
    DiscountSourceType,
    DiscountType,
    LoyaltyTransactionType,
    NotificationStatus,
    QuotaDimension,
    RejectionCode,
    SignatureAuditAction,
    SignatureStatus,
    SignatureType,
    SignerRole,
    SignerStatus,
    SigningOrder,
    SignOutcome,
    UsageEventType,
    VolumeMeasurement,
)


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Pricing ──────────────────────────────────────────────


class Measurements(BaseModel):
    """Site measurements entered in the wizard. Negative or missing values read as 0."""

    model_config = ConfigDict(validate_assignment=True)

    total_sqft: float = 0.0
    deduction_sqft: float = 0.0
    crack_linear_feet: float = 0.0
    crack_boxes: float = 0.0
    potholes: float = 0.0
    alligator_sqft: float = 0.0
    parking_stalls: float = 0.0
    ada_stalls: float = 0.0
    arrows: float = 0.0
    fire_lane_feet: float = 0.0
    custom_stencils: float = 0.0

    @field_validator("*", mode="before")
    @classmethod
    def _missing_as_zero(cls, value: Any) -> Any:
        return 0.0 if value is None else value

    # After coercion, so "-100" and Decimal("-1") are clamped too
    @field_validator("*", mode="after")
    @classmethod
    def _clamp_non_negative(cls, value: float) -> float:
        return max(0.0, value)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def net_sqft(self) -> float:
        return max(0.0, self.total_sqft - self.deduction_sqft)


class LineItem(BaseModel):
    id: str = Field(default_factory=_new_id)
    service_id: str
    name: str
    description: str = ""
    quantity: float = Field(ge=0)
    unit: str
    unit_price: float = Field(ge=0)
    total: float = Field(ge=0)
    tier: str = "all"


class TierPricing(BaseModel):
    economy: float = 0.0
    standard: float = 0.0
    premium: float = 0.0


class PricingState(BaseModel):
    subtotal: float = 0.0
    condition_adjustment: float = 0.0
    adjusted_subtotal: float = 0.0
    discount_amount: float = 0.0
    tax_amount: float = 0.0
    total: float = 0.0
    deposit_amount: float = 0.0
    tier_pricing: TierPricing = Field(default_factory=TierPricing)
    line_items: list[LineItem] = []


# ── Discount sources (tagged union on source_type) ───────


class _DiscountSourceBase(BaseModel):
    id: str = Field(default_factory=_new_id)
    org_id: str = ""
    name: str
    description: str = ""
    discount_type: DiscountType = DiscountType.PERCENT
    discount_value: float = Field(default=0.0, ge=0)
    max_discount_amount: Optional[float] = Field(default=None, ge=0)
    stackable: bool = True
    is_active: bool = True


def _check_window(starts_at: Optional[datetime], expires_at: Optional[datetime]) -> None:
    if starts_at and expires_at and expires_at < starts_at:
        raise ValueError("expires_at must not be before starts_at")


class PromoCodeSource(_DiscountSourceBase):
    source_type: Literal["promo_code"] = "promo_code"
    code: str
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    max_uses_total: Optional[int] = Field(default=None, ge=0)  # None = unlimited
    uses_total: int = Field(default=0, ge=0)
    max_uses_per_customer: Optional[int] = Field(default=1, ge=0)
    min_order_amount: float = Field(default=0.0, ge=0)
    customer_restriction: CustomerRestriction = CustomerRestriction.ANY
    access_code: Optional[str] = None
    applicable_services: list[str] = []
    total_discount_given: float = 0.0

    @field_validator("code")
    @classmethod
    def _normalise_code(cls, value: str) -> str:
        return value.strip().upper()

    @model_validator(mode="after")
    def _valid_window(self) -> "PromoCodeSource":
        _check_window(self.starts_at, self.expires_at)
        if self.discount_type == DiscountType.PERCENT and self.discount_value > 100:
            raise ValueError("percent discounts cannot exceed 100")
        return self


class LoyaltySource(_DiscountSourceBase):
    source_type: Literal["loyalty"] = "loyalty"
    customer_loyalty_id: str = ""
    tier_name: str = ""
    tier_discount_percent: float = Field(default=0.0, ge=0, le=100)


class VolumeTier(BaseModel):
    min: float = Field(ge=0)
    max: Optional[float] = None
    discount_percent: float = Field(default=0.0, ge=0, le=100)
    label: str = ""


class VolumeSource(_DiscountSourceBase):
    source_type: Literal["volume"] = "volume"
    measurement: VolumeMeasurement = VolumeMeasurement.TOTAL_AMOUNT
    tiers: list[VolumeTier] = []
    stackable: bool = False

    @field_validator("tiers")
    @classmethod
    def _sorted_tiers(cls, tiers: list[VolumeTier]) -> list[VolumeTier]:
        return sorted(tiers, key=lambda t: t.min)


class SeasonalSource(_DiscountSourceBase):
    source_type: Literal["seasonal"] = "seasonal"
    starts_at: datetime
    expires_at: datetime
    applicable_services: list[str] = []
    min_order_amount: Optional[float] = Field(default=None, ge=0)
    banner_text: str = ""

    @model_validator(mode="after")
    def _valid_window(self) -> "SeasonalSource":
        _check_window(self.starts_at, self.expires_at)
        return self


class ManualSource(_DiscountSourceBase):
    source_type: Literal["manual"] = "manual"
    name: str = "Manual Discount"
    reason: str = ""


class ReferralSource(_DiscountSourceBase):
    source_type: Literal["referral"] = "referral"
    referral_code: str
    referrer_customer_id: str = ""


# ── Automatic rule conditions (tagged union on type) ─────


class OrderMinimumCondition(BaseModel):
    type: Literal["order_minimum"] = "order_minimum"
    min_amount: float = Field(ge=0)


class FirstOrderCondition(BaseModel):
    type: Literal["first_order"] = "first_order"


class RepeatCustomerCondition(BaseModel):
    type: Literal["repeat_customer"] = "repeat_customer"
    min_orders: int = Field(default=1, ge=1)


class ServiceComboCondition(BaseModel):
    type: Literal["service_combo"] = "service_combo"
    required_services: list[str] = Field(min_length=1)
    require_all: bool = True


class ServiceQuantityCondition(BaseModel):
    type: Literal["service_quantity"] = "service_quantity"
    service: str
    min_quantity: float = Field(gt=0)


class SeasonalMonthsCondition(BaseModel):
    """Calendar months, inclusive; start > end wraps over the new year."""
    type: Literal["seasonal"] = "seasonal"
    start_month: int = Field(ge=1, le=12)
    end_month: int = Field(ge=1, le=12)


class DayOfWeekCondition(BaseModel):
    type: Literal["day_of_week"] = "day_of_week"
    days: list[int] = Field(min_length=1)  # 0 = Sunday … 6 = Saturday

    @field_validator("days")
    @classmethod
    def _valid_days(cls, days: list[int]) -> list[int]:
        if any(d < 0 or d > 6 for d in days):
            raise ValueError("days must be between 0 (Sunday) and 6 (Saturday)")
        return sorted(set(days))


AutoRuleCondition = Annotated[
    Union[
        OrderMinimumCondition,
        FirstOrderCondition,
        RepeatCustomerCondition,
        ServiceComboCondition,
        ServiceQuantityCondition,
        SeasonalMonthsCondition,
        DayOfWeekCondition,
    ],
    Field(discriminator="type"),
]


class AutoRuleSource(_DiscountSourceBase):
    """Applied without a code whenever its condition holds."""
    source_type: Literal["auto_rule"] = "auto_rule"
    condition: AutoRuleCondition
    priority: int = 0  # higher first among auto rules
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _valid_rule(self) -> "AutoRuleSource":
        _check_window(self.starts_at, self.expires_at)
        if self.discount_type == DiscountType.PERCENT and self.discount_value > 100:
            raise ValueError("percent discounts cannot exceed 100")
        return self


DiscountSource = Annotated[
    Union[
        PromoCodeSource,
        LoyaltySource,
        VolumeSource,
        SeasonalSource,
        ManualSource,
        ReferralSource,
        AutoRuleSource,
    ],
    Field(discriminator="source_type"),
]


# ── Discount resolution ──────────────────────────────────


class CustomerContext(BaseModel):
    """Who the proposal is for and what they selected."""
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    is_new_customer: bool = False
    total_orders: int = 0
    promo_usage: dict[str, int] = {}  # source_id -> times this customer used it
    selected_services: list[str] = []
    service_quantities: dict[str, float] = {}  # service_id -> measured quantity
    total_sqft: float = 0.0
    promo_code: Optional[str] = None
    access_code: Optional[str] = None
    user_role: Optional[str] = None
    now: Optional[datetime] = None

    def current_time(self) -> datetime:
        return self.now or _utcnow()


class SourceEvaluation(BaseModel):
    """Eligibility verdict plus the effective terms of one source."""
    source_id: str
    source_type: DiscountSourceType
    name: str
    description: str = ""
    eligible: bool
    code: Optional[RejectionCode] = None
    reason: str = ""
    discount_type: DiscountType = DiscountType.PERCENT
    discount_value: float = 0.0
    max_discount_amount: Optional[float] = None
    estimated_savings: float = 0.0
    stackable: bool = True


class AvailableDiscount(BaseModel):
    source_id: str
    source_type: DiscountSourceType
    name: str
    description: str = ""
    discount_type: DiscountType
    discount_value: float
    estimated_savings: float
    stackable: bool = True
    rank: int = 0


class AppliedDiscount(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    source_id: str
    source_type: DiscountSourceType
    source_name: str
    discount_type: DiscountType
    discount_value: float
    discount_amount: float
    order_position: int = 1
    applied_to_subtotal: float = 0.0
    applied_at: datetime = Field(default_factory=_utcnow)


class DiscountRejection(BaseModel):
    source_id: str = ""
    source_type: Optional[DiscountSourceType] = None
    code: RejectionCode
    reason: str


class UpsellSuggestion(BaseModel):
    type: str  # "volume" | "combo" | "loyalty"
    message: str
    action_required: str
    potential_savings: float
    cta_text: str


class ApprovalCheck(BaseModel):
    required: bool = False
    reason: Optional[str] = None


class DiscountResolution(BaseModel):
    original_subtotal: float = 0.0
    applied_discounts: list[AppliedDiscount] = []
    available_discounts: list[AvailableDiscount] = []
    rejected_discounts: list[DiscountRejection] = []
    total_discount_amount: float = 0.0
    final_subtotal: float = 0.0
    requires_approval: bool = False
    approval_reason: Optional[str] = None
    upsell_suggestions: list[UpsellSuggestion] = []


class CodeValidation(BaseModel):
    valid: bool
    source_id: Optional[str] = None
    code: Optional[str] = None
    name: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[float] = None
    discount_amount: float = 0.0
    description: str = ""
    rejection: Optional[DiscountRejection] = None


class PromoCodeUsage(BaseModel):
    id: str = Field(default_factory=_new_id)
    org_id: str
    source_id: str
    proposal_id: str
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    order_amount: float
    discount_amount: float
    applied_by: str = ""
    applied_at: datetime = Field(default_factory=_utcnow)


# ── Discount approval ────────────────────────────────────


class DiscountApprovalRequest(BaseModel):
    id: str = Field(default_factory=_new_id)
    org_id: str
    proposal_id: str
    proposal_total: float
    requested_by: str
    discount_type: DiscountType
    discount_value: float
    discount_amount: float
    discount_percent_of_total: float = 0.0
    reason: str = ""
    supporting_notes: str = ""
    status: ApprovalStatus = ApprovalStatus.PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    reviewer_notes: str = ""
    counter_discount_type: Optional[DiscountType] = None
    counter_discount_value: Optional[float] = None
    requested_at: datetime = Field(default_factory=_utcnow)


# ── Loyalty ──────────────────────────────────────────────


class CustomerLoyalty(BaseModel):
    id: str = Field(default_factory=_new_id)
    org_id: str
    client_id: str
    current_points: int = 0
    total_points_earned: int = 0
    total_points_redeemed: int = 0
    total_orders: int = 0
    total_spent: float = 0.0
    current_tier: str = ""
    tier_discount_percent: float = 0.0
    referral_code: str = ""
    referred_by: Optional[str] = None
    referrals_count: int = 0
    first_order_date: Optional[datetime] = None
    last_order_date: Optional[datetime] = None


class LoyaltyTransaction(BaseModel):
    id: str = Field(default_factory=_new_id)
    org_id: str
    customer_loyalty_id: str
    type: LoyaltyTransactionType
    points: int
    balance_after: int
    proposal_id: Optional[str] = None
    description: str = ""
    created_at: datetime = Field(default_factory=_utcnow)


# ── Usage / quotas ───────────────────────────────────────


class QuotaStatus(BaseModel):
    limit: float
    used: float
    remaining: float
    percent_used: float
    is_unlimited: bool
    is_exceeded: bool

    @field_serializer("remaining")
    def _serialize_remaining(self, value: float, info: SerializationInfo) -> Optional[float]:
        # JSON has no infinity; unlimited quotas report null
        if math.isinf(value) and info.mode_is_json():
            return None
        return value

    @classmethod
    def from_counts(cls, used: float, limit: float) -> "QuotaStatus":
        is_unlimited = limit == -1
        if is_unlimited:
            return cls(
                limit=limit, used=used, remaining=float("inf"),
                percent_used=0.0, is_unlimited=True, is_exceeded=False,
            )
        percent = (used / limit) * 100 if limit > 0 else 100.0
        return cls(
            limit=limit,
            used=used,
            remaining=max(0.0, limit - used),
            percent_used=min(100.0, percent),
            is_unlimited=False,
            is_exceeded=used >= limit,
        )


class UsageSummary(BaseModel):
    proposals: QuotaStatus
    ai_calls: QuotaStatus
    emails: QuotaStatus
    storage: QuotaStatus
    team_members: QuotaStatus

    def for_dimension(self, dimension: QuotaDimension) -> QuotaStatus:
        return getattr(self, dimension.value)


class CurrentUsage(BaseModel):
    org_id: str
    proposals_this_month: int = 0
    ai_calls_this_month: int = 0
    emails_this_month: int = 0
    storage_used_bytes: int = 0
    team_members_count: int = 1
    period_start: date


class ActionCheck(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    upgrade: Optional[str] = None


class UsageEvent(BaseModel):
    id: str = Field(default_factory=_new_id)
    org_id: str
    user_id: Optional[str] = None
    event_type: UsageEventType
    quantity: int = 1
    metadata: dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=_utcnow)


class UsageEventInput(BaseModel):
    """One entry of a batch track request."""
    org_id: str
    event_type: UsageEventType
    quantity: int = Field(default=1, ge=0)
    user_id: Optional[str] = None
    metadata: dict[str, Any] = {}


class UsageRollup(BaseModel):
    org_id: str
    period_type: Literal["daily", "monthly"] = "monthly"
    period_start: date
    event_type: UsageEventType
    total_quantity: int


class MonthlyUsageTrend(BaseModel):
    period_start: date
    proposals: int = 0
    ai_calls: int = 0
    emails: int = 0


class DailyUsageCount(BaseModel):
    day: date
    count: int = 0


class OrgEntitlement(BaseModel):
    org_id: str
    plan_id: str = "free"
    plan_override: Optional[str] = None
    is_comped: bool = False
    comped_until: Optional[datetime] = None
    reason: str = ""


# ── Signatures ───────────────────────────────────────────


class SignatureData(BaseModel):
    type: SignatureType = SignatureType.TYPED
    value: str  # base64 for drawn/uploaded, text for typed
    font_family: Optional[str] = None
    timestamp: Optional[datetime] = None


class SignerInput(BaseModel):
    email: str
    name: str
    role: SignerRole = SignerRole.CLIENT
    order: Optional[int] = None
    access_code: Optional[str] = None


class Signer(BaseModel):
    id: str = Field(default_factory=_new_id)
    email: str
    name: str
    role: SignerRole = SignerRole.CLIENT
    order: int = 1
    status: SignerStatus = SignerStatus.PENDING
    viewed_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None
    signature_data: Optional[SignatureData] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None
    access_code: Optional[str] = None


class SignatureSettings(BaseModel):
    require_access_code: bool = False
    require_identity_verification: bool = False
    allow_decline: bool = True
    reminder_days: list[int] = [3, 7]
    custom_message: Optional[str] = None
    redirect_url: Optional[str] = None
    signing_order: SigningOrder = SigningOrder.SEQUENTIAL


class SignatureRequest(BaseModel):
    id: str = Field(default_factory=_new_id)
    org_id: str
    proposal_id: str
    document_hash: str
    status: SignatureStatus = SignatureStatus.PENDING
    signature_type: SignatureType = SignatureType.TYPED
    signers: list[Signer] = []
    settings: SignatureSettings = Field(default_factory=SignatureSettings)
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_reason: Optional[str] = None

    def signer(self, signer_id: str) -> Optional[Signer]:
        return next((s for s in self.signers if s.id == signer_id), None)


class SignerMetadata(BaseModel):
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None
    access_code: Optional[str] = None


class CertificateSigner(BaseModel):
    name: str
    email: str
    signed_at: datetime
    ip_address: str = "unknown"


class SignatureCertificate(BaseModel):
    id: str = Field(default_factory=_new_id)
    request_id: str
    proposal_id: str
    document_hash: str
    signers: list[CertificateSigner]
    certificate_hash: str
    issued_at: datetime


class SignatureVerification(BaseModel):
    is_valid: bool
    document_hash: str
    certificate_hash: str = ""
    signed_at: Optional[datetime] = None
    signers: list[str] = []
    tamper_detected: bool


class SignatureAuditEntry(BaseModel):
    id: str = Field(default_factory=_new_id)
    request_id: str
    action: SignatureAuditAction
    performed_by: str
    performed_at: datetime = Field(default_factory=_utcnow)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: dict[str, Any] = {}


class SignResult(BaseModel):
    success: bool
    outcome: SignOutcome = SignOutcome.OK
    reason: str = ""
    all_signed: bool = False
    status: Optional[SignatureStatus] = None
    certificate: Optional[SignatureCertificate] = None


# ── Notification outbox ──────────────────────────────────


class OutboxMessage(BaseModel):
    id: str = Field(default_factory=_new_id)
    kind: str  # "signature_request" | "signature_reminder" | ...
    recipient: str
    payload: dict[str, Any] = {}
    dedupe_key: str
    status: NotificationStatus = NotificationStatus.PENDING
    attempts: int = 0
    last_error: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    sent_at: Optional[datetime] = None


# ── A/B tests ────────────────────────────────────────────


class VariantInput(BaseModel):
    name: str
    description: str = ""
    discount_type: DiscountType = DiscountType.PERCENT
    discount_value: float = Field(default=0.0, ge=0)
    traffic_allocation: float = Field(ge=0, le=100)


class ABTestVariant(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    description: str = ""
    discount_type: DiscountType = DiscountType.PERCENT
    discount_value: float = 0.0
    traffic_allocation: float = Field(ge=0, le=100)
    impressions: int = 0
    conversions: int = 0
    conversion_rate: float = 0.0  # percent
    total_revenue: float = 0.0
    avg_order_value: float = 0.0
    total_discount: float = 0.0


class ABTest(BaseModel):
    id: str = Field(default_factory=_new_id)
    org_id: str
    name: str
    description: str = ""
    status: ABTestStatus = ABTestStatus.DRAFT
    test_type: str = "discount_value"
    target_audience: str = "all"
    control_variant: ABTestVariant
    test_variants: list[ABTestVariant] = []
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    min_sample_size: int = 100
    total_participants: int = 0
    winning_variant: Optional[str] = None
    statistical_significance: Optional[float] = None
    confidence_level: float = 95.0
    created_at: datetime = Field(default_factory=_utcnow)

    def all_variants(self) -> list[ABTestVariant]:
        return [self.control_variant, *self.test_variants]

    def variant(self, variant_id: str) -> Optional[ABTestVariant]:
        return next((v for v in self.all_variants() if v.id == variant_id), None)


class ABTestAssignment(BaseModel):
    test_id: str
    user_id: str
    variant_id: str
    assigned_at: datetime = Field(default_factory=_utcnow)
