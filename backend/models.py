from pydantic import BaseModel, EmailStr, Field, ConfigDict
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class PlanTier(str, Enum):
    BASIC = "basic"
    POWER = "power"
    OMNI = "omni"

class PlanStatus(str, Enum):
    """Organization billing lifecycle state."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"

class SubscriptionStatus(str, Enum):
    """Mirrors the provider's recurring-billing states."""
    PENDING = "pending"
    AUTHORIZED = "authorized"
    PAUSED = "paused"
    CANCELLED = "cancelled"

class InvoiceStatus(str, Enum):
    PAID = "paid"
    FAILED = "failed"
    PENDING = "pending"

class PaymentMethodStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"

class WebhookEventType(str, Enum):
    SUBSCRIPTION_AUTHORIZED_PAYMENT = "subscription_authorized_payment"
    SUBSCRIPTION_PREAPPROVAL = "subscription_preapproval"
    PAYMENT_APPROVED = "payment.approved"
    PAYMENT_DECLINED = "payment.declined"
    PAYMENT_REFUNDED = "payment.refunded"
    SUBSCRIPTION_UPDATED = "subscription.updated"

class UserRole(str, Enum):
    ROLE_ORG_MEMBER = "ROLE_ORG_MEMBER"
    ROLE_ORG_ADMIN = "ROLE_ORG_ADMIN"
    ROLE_SUPER_ADMIN = "ROLE_SUPER_ADMIN"
    ROLE_SYSTEM = "ROLE_SYSTEM"

class AuditAction(str, Enum):
    # Subscription lifecycle
    SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
    SUBSCRIPTION_SUPERSEDED = "SUBSCRIPTION_SUPERSEDED"
    SUBSCRIPTION_AUTHORIZED = "SUBSCRIPTION_AUTHORIZED"
    SUBSCRIPTION_STATUS_SYNCED = "SUBSCRIPTION_STATUS_SYNCED"
    PLAN_CHANGED = "PLAN_CHANGED"
    CANCELLATION_REQUESTED = "CANCELLATION_REQUESTED"
    CANCELLATION_FINALIZED = "CANCELLATION_FINALIZED"
    SUBSCRIPTION_REACTIVATED = "SUBSCRIPTION_REACTIVATED"

    # Payments
    PAYMENT_RECORDED = "PAYMENT_RECORDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_METHOD_ADDED = "PAYMENT_METHOD_ADDED"
    PAYMENT_METHOD_REMOVED = "PAYMENT_METHOD_REMOVED"

    # Organization state
    PLAN_STATUS_CHANGED = "PLAN_STATUS_CHANGED"
    TRIAL_EXPIRED = "TRIAL_EXPIRED"
    USAGE_COUNTERS_RESET = "USAGE_COUNTERS_RESET"

    # Admin
    ADMIN_JOB_RUN = "ADMIN_JOB_RUN"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# DOCUMENT MODELS
# ============================================================================

class Subscription(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subscription_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    organization_id: str
    provider: str
    provider_subscription_id: str
    plan_tier: PlanTier
    amount_cents: int
    currency: str
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    trial_ends_at: Optional[str] = None
    current_period_start: Optional[str] = None
    current_period_end: Optional[str] = None
    cancel_at_period_end: bool = False
    retry_count: int = 0
    canceled_at: Optional[str] = None
    superseded_at: Optional[str] = None
    created_at: str = Field(default_factory=lambda: utc_now().isoformat())
    updated_at: str = Field(default_factory=lambda: utc_now().isoformat())

class Invoice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    invoice_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    organization_id: str
    subscription_id: Optional[str] = None
    amount_cents: int
    currency: str
    status: InvoiceStatus
    provider_payment_id: str
    failure_reason: Optional[str] = None
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    paid_at: Optional[str] = None
    created_at: str = Field(default_factory=lambda: utc_now().isoformat())

class PaymentMethod(BaseModel):
    model_config = ConfigDict(extra="ignore")

    payment_method_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    organization_id: str
    provider: str
    provider_payment_method_id: str
    type: str = "card"
    last_four: str
    brand: str
    customer_email: Optional[str] = None
    is_default: bool = False
    status: PaymentMethodStatus = PaymentMethodStatus.ACTIVE
    created_at: str = Field(default_factory=lambda: utc_now().isoformat())

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[UserRole] = None
    actor_id: Optional[str] = None
    organization_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    reason_code: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


# ============================================================================
# REQUEST MODELS
# ============================================================================

class SubscribeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_tier: str = Field(alias="planTier")
    payer_email: EmailStr = Field(alias="payerEmail")
    card_token_id: Optional[str] = Field(default=None, alias="cardTokenId")
    card_last_four: Optional[str] = Field(default=None, alias="cardLastFour")
    card_brand: Optional[str] = Field(default=None, alias="cardBrand")

class ChangePlanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_plan_tier: str = Field(alias="newPlanTier")

class PaymentMethodCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    last_four: str = Field(alias="lastFour", min_length=4, max_length=4)
    brand: str = Field(min_length=1)
    customer_email: EmailStr = Field(alias="customerEmail")
