from enum import Enum


# ── Pricing ──────────────────────────────────────────────

class PricingTier(str, Enum):
    ECONOMY = "economy"
    STANDARD = "standard"
    PREMIUM = "premium"


class SurfaceCondition(str, Enum):
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class UrgencyLevel(str, Enum):
    STANDARD = "standard"
    PRIORITY = "priority"
    EMERGENCY = "emergency"


# ── Discounts ────────────────────────────────────────────

class DiscountType(str, Enum):
    PERCENT = "percent"
    FIXED = "fixed"


class DiscountSourceType(str, Enum):
    PROMO_CODE = "promo_code"
    LOYALTY = "loyalty"
    VOLUME = "volume"
    SEASONAL = "seasonal"
    MANUAL = "manual"
    REFERRAL = "referral"
    AUTO_RULE = "auto_rule"


class CustomerRestriction(str, Enum):
    ANY = "any"
    NEW_ONLY = "new_only"
    EXISTING_ONLY = "existing_only"


class VolumeMeasurement(str, Enum):
    TOTAL_AMOUNT = "total_amount"
    TOTAL_SQFT = "total_sqft"


class RejectionCode(str, Enum):
    INACTIVE = "inactive"
    NOT_STARTED = "not_started"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    CUSTOMER_LIMIT = "customer_limit"
    MIN_ORDER = "min_order"
    CUSTOMER_TYPE = "customer_type"
    INVALID_CODE = "invalid_code"
    SERVICE_MISMATCH = "service_mismatch"
    NO_TIER_DISCOUNT = "no_tier_discount"
    BELOW_THRESHOLD = "below_threshold"
    NOT_ELIGIBLE = "not_eligible"
    CONDITION_NOT_MET = "condition_not_met"
    CONFLICT = "conflict"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    COUNTER = "counter"


class LoyaltyTransactionType(str, Enum):
    EARN_PURCHASE = "earn_purchase"
    EARN_SIGNUP = "earn_signup"
    EARN_REFERRAL = "earn_referral"
    REDEEM = "redeem"


# ── Usage / quotas ───────────────────────────────────────

class QuotaAction(str, Enum):
    CREATE_PROPOSAL = "create_proposal"
    CALL_AI = "call_ai"
    SEND_EMAIL = "send_email"
    ADD_TEAM_MEMBER = "add_team_member"
    UPLOAD_STORAGE = "upload_storage"


class QuotaDimension(str, Enum):
    PROPOSALS = "proposals"
    AI_CALLS = "ai_calls"
    EMAILS = "emails"
    TEAM_MEMBERS = "team_members"
    STORAGE = "storage"


class UsageEventType(str, Enum):
    PROPOSAL_CREATED = "proposal_created"
    PROPOSAL_SENT = "proposal_sent"
    PROPOSAL_VIEWED = "proposal_viewed"
    PROPOSAL_SIGNED = "proposal_signed"
    AI_CALL = "ai_call"
    EMAIL_SENT = "email_sent"
    SMS_SENT = "sms_sent"
    STORAGE_UPLOAD = "storage_upload"
    STORAGE_DELETE = "storage_delete"
    API_CALL = "api_call"
    TEAM_MEMBER_ADDED = "team_member_added"
    TEAM_MEMBER_REMOVED = "team_member_removed"


# ── Signatures ───────────────────────────────────────────

class SignatureStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SignerStatus(str, Enum):
    PENDING = "pending"
    VIEWED = "viewed"
    SIGNED = "signed"
    DECLINED = "declined"


class SignerRole(str, Enum):
    CLIENT = "client"
    CONTRACTOR = "contractor"
    WITNESS = "witness"
    APPROVER = "approver"


class SignatureType(str, Enum):
    TYPED = "typed"
    DRAWN = "drawn"
    UPLOADED = "uploaded"
    LEGAL_GRADE = "legal_grade"


class SigningOrder(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class SignOutcome(str, Enum):
    OK = "ok"
    REQUEST_NOT_ACTIVE = "request_not_active"
    WAITING_FOR_PREVIOUS_SIGNERS = "waiting_for_previous_signers"
    INVALID_ACCESS_CODE = "invalid_access_code"
    ALREADY_SIGNED = "already_signed"
    DECLINE_NOT_ALLOWED = "decline_not_allowed"
    SIGNER_NOT_FOUND = "signer_not_found"


class SignatureAuditAction(str, Enum):
    REQUEST_CREATED = "request_created"
    DOCUMENT_SENT = "document_sent"
    DOCUMENT_VIEWED = "document_viewed"
    SIGNATURE_COMPLETED = "signature_completed"
    SIGNATURE_DECLINED = "signature_declined"
    REMINDER_SENT = "reminder_sent"
    REQUEST_CANCELLED = "request_cancelled"
    REQUEST_EXPIRED = "request_expired"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


# ── A/B tests ────────────────────────────────────────────

class ABTestStatus(str, Enum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
