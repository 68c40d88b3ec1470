"""
API routes — thin HTTP layer that delegates to the services.

Routes:
  GET  /health                                          → API health check
  POST /api/pricing/compute                             → Price a proposal
  POST /api/discounts/resolve                           → Resolve discounts for a subtotal
  POST /api/discounts/{org_id}/validate-code            → Check an entered promo code
  GET  /api/usage/{org_id}/summary                      → Quota status per dimension
  POST /api/usage/{org_id}/check                        → Can the org perform an action?
  GET  /api/usage/{org_id}/trends                       → Monthly usage totals
  POST /api/signatures                                  → Create a signature request
  POST /api/signatures/{id}/send                        → Send to the first signer(s)
  POST /api/signatures/{id}/signers/{signer_id}/view    → Record a document view
  POST /api/signatures/{id}/signers/{signer_id}/sign    → Sign
  POST /api/signatures/{id}/signers/{signer_id}/decline → Decline
  POST /api/signatures/{id}/verify                      → Tamper check
  GET  /api/signatures/{id}/audit                       → Audit trail
  POST /api/ab-tests/{test_id}/assign                   → Sticky variant assignment
  GET  /api/ab-tests/{test_id}/significance             → Confidence per variant
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from proposal_engine.models.enums import PricingTier, QuotaAction, SignatureType, SurfaceCondition
from proposal_engine.models.schemas import (
    ABTestVariant,
    ActionCheck,
    CodeValidation,
    CustomerContext,
    DiscountResolution,
    DiscountSource,
    LineItem,
    Measurements,
    MonthlyUsageTrend,
    PricingState,
    SignatureAuditEntry,
    SignatureData,
    SignatureRequest,
    SignatureSettings,
    SignatureVerification,
    SignerInput,
    SignerMetadata,
    SignResult,
    UsageSummary,
)
from proposal_engine.persistence.repository import Repository, get_repository
from proposal_engine.pricing.calculator import compute_pricing
from proposal_engine.rules.rules_config import RulesConfigStore
from proposal_engine.services.ab_testing import ABTestingService
from proposal_engine.services.discount_service import DiscountService, resolve_discounts
from proposal_engine.services.loyalty_service import LoyaltyService
from proposal_engine.services.signature_service import SignatureService
from proposal_engine.services.usage_service import UsageService

logger = logging.getLogger(__name__)

# ── Routers ──────────────────────────────────────────────
health_router = APIRouter()
pricing_router = APIRouter()
discount_router = APIRouter()
usage_router = APIRouter()
signature_router = APIRouter()
ab_test_router = APIRouter()


# ── Service wiring ───────────────────────────────────────

class Services:
    """All services sharing one repository and config store."""

    def __init__(self, repository: Repository, config_store: Optional[RulesConfigStore] = None):
        self.repository = repository
        self.config_store = config_store or RulesConfigStore()
        self.loyalty = LoyaltyService(repository, self.config_store)
        self.discounts = DiscountService(repository, self.config_store, loyalty_service=self.loyalty)
        self.usage = UsageService(repository, self.config_store)
        self.signatures = SignatureService(repository)
        self.ab_tests = ABTestingService(repository)


@lru_cache()
def get_services() -> Services:
    return Services(get_repository())


# ── Request schemas ──────────────────────────────────────

class PricingRequest(BaseModel):
    measurements: Measurements = Field(default_factory=Measurements)
    selected_service_ids: list[str] = []
    custom_line_items: list[LineItem] = []
    tier: PricingTier = PricingTier.STANDARD
    surface_condition: SurfaceCondition = SurfaceCondition.GOOD
    tax_rate: Optional[float] = None
    deposit_percent: Optional[float] = None
    total_discount_amount: float = 0.0


class ResolveRequest(BaseModel):
    subtotal: float
    customer: CustomerContext = Field(default_factory=CustomerContext)
    sources: list[DiscountSource] = []
    requested_source_ids: list[str] = []
    org_id: Optional[str] = None  # when set, the org's stored sources are included


class ValidateCodeRequest(BaseModel):
    code: str
    subtotal: float
    customer: CustomerContext = Field(default_factory=CustomerContext)


class ActionCheckRequest(BaseModel):
    action: QuotaAction
    quantity: float = 1


class CreateSignatureRequest(BaseModel):
    org_id: str
    proposal_id: str
    document_content: str
    signers: list[SignerInput]
    settings: Optional[SignatureSettings] = None
    signature_type: SignatureType = SignatureType.TYPED
    expires_in_days: Optional[int] = None


class SignBody(BaseModel):
    signature_data: SignatureData
    metadata: SignerMetadata = Field(default_factory=SignerMetadata)


class DeclineBody(BaseModel):
    reason: str = ""
    metadata: SignerMetadata = Field(default_factory=SignerMetadata)


class VerifyBody(BaseModel):
    document_content: str


class AssignBody(BaseModel):
    user_id: str


class AssignResponse(BaseModel):
    test_id: str
    user_id: str
    variant: Optional[ABTestVariant] = None


# ── Health ───────────────────────────────────────────────

@health_router.get("/health")
async def health_check():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ── Pricing ──────────────────────────────────────────────

@pricing_router.post("/compute", response_model=PricingState)
def compute(body: PricingRequest):
    return compute_pricing(
        measurements=body.measurements,
        selected_service_ids=body.selected_service_ids,
        custom_line_items=body.custom_line_items,
        tier=body.tier,
        surface_condition=body.surface_condition,
        tax_rate=body.tax_rate,
        deposit_percent=body.deposit_percent,
        total_discount_amount=body.total_discount_amount,
    )


# ── Discounts ────────────────────────────────────────────

@discount_router.post("/resolve", response_model=DiscountResolution)
def resolve(body: ResolveRequest, services: Services = Depends(get_services)):
    if body.org_id:
        return services.discounts.resolve_for_org(
            body.org_id,
            body.subtotal,
            body.customer,
            body.requested_source_ids,
            extra_sources=body.sources,
        )
    return resolve_discounts(body.subtotal, body.customer, body.sources, body.requested_source_ids)


@discount_router.post("/{org_id}/validate-code", response_model=CodeValidation)
def validate_code(org_id: str, body: ValidateCodeRequest, services: Services = Depends(get_services)):
    return services.discounts.validate_code(org_id, body.code, body.customer, body.subtotal)


# ── Usage ────────────────────────────────────────────────

@usage_router.get("/{org_id}/summary", response_model=UsageSummary)
def usage_summary(org_id: str, services: Services = Depends(get_services)):
    return services.usage.get_usage_summary(org_id)


@usage_router.post("/{org_id}/check", response_model=ActionCheck)
def check_action(org_id: str, body: ActionCheckRequest, services: Services = Depends(get_services)):
    return services.usage.can_perform_action(org_id, body.action, body.quantity)


@usage_router.get("/{org_id}/trends", response_model=list[MonthlyUsageTrend])
def usage_trends(org_id: str, months: int = 6, services: Services = Depends(get_services)):
    return services.usage.get_usage_trends(org_id, months)


# ── Signatures ───────────────────────────────────────────

@signature_router.post("", response_model=SignatureRequest, status_code=201)
def create_signature_request(body: CreateSignatureRequest, services: Services = Depends(get_services)):
    return services.signatures.create_request(
        org_id=body.org_id,
        proposal_id=body.proposal_id,
        document_content=body.document_content,
        signers=body.signers,
        settings=body.settings,
        signature_type=body.signature_type,
        expires_in_days=body.expires_in_days,
    )


@signature_router.post("/{request_id}/send", response_model=SignatureRequest)
def send_signature_request(request_id: str, services: Services = Depends(get_services)):
    return services.signatures.send(request_id)


@signature_router.post("/{request_id}/signers/{signer_id}/view", response_model=SignResult)
def view_document(
    request_id: str,
    signer_id: str,
    metadata: Optional[SignerMetadata] = None,
    services: Services = Depends(get_services),
):
    return services.signatures.view(request_id, signer_id, metadata)


@signature_router.post("/{request_id}/signers/{signer_id}/sign", response_model=SignResult)
def sign_document(request_id: str, signer_id: str, body: SignBody, services: Services = Depends(get_services)):
    return services.signatures.sign(request_id, signer_id, body.signature_data, body.metadata)


@signature_router.post("/{request_id}/signers/{signer_id}/decline", response_model=SignResult)
def decline_document(request_id: str, signer_id: str, body: DeclineBody, services: Services = Depends(get_services)):
    return services.signatures.decline(request_id, signer_id, body.reason, body.metadata)


@signature_router.post("/{request_id}/verify", response_model=SignatureVerification)
def verify_signature(request_id: str, body: VerifyBody, services: Services = Depends(get_services)):
    return services.signatures.verify(request_id, body.document_content)


@signature_router.get("/{request_id}/audit", response_model=list[SignatureAuditEntry])
def audit_trail(request_id: str, services: Services = Depends(get_services)):
    return services.signatures.get_audit_trail(request_id)


# ── A/B tests ────────────────────────────────────────────

@ab_test_router.post("/{test_id}/assign", response_model=AssignResponse)
def assign_variant(test_id: str, body: AssignBody, services: Services = Depends(get_services)):
    variant = services.ab_tests.get_variant_for_user(test_id, body.user_id)
    return AssignResponse(test_id=test_id, user_id=body.user_id, variant=variant)


@ab_test_router.get("/{test_id}/significance")
def significance(test_id: str, services: Services = Depends(get_services)):
    return {"test_id": test_id, "significance": services.ab_tests.significance_report(test_id)}
