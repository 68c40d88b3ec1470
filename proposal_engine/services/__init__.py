"""Services — store-backed discount, loyalty, usage, signature and A/B operations."""

from proposal_engine.services.ab_testing import ABTestingService, calculate_significance
from proposal_engine.services.audit_service import AuditService
from proposal_engine.services.discount_service import DiscountService, resolve_discounts
from proposal_engine.services.loyalty_service import LoyaltyService
from proposal_engine.services.notification_service import NotificationOutbox
from proposal_engine.services.signature_service import SignatureService, generate_access_code
from proposal_engine.services.usage_service import UsageService

__all__ = [
    "ABTestingService",
    "AuditService",
    "DiscountService",
    "LoyaltyService",
    "NotificationOutbox",
    "SignatureService",
    "UsageService",
    "calculate_significance",
    "generate_access_code",
    "resolve_discounts",
]
