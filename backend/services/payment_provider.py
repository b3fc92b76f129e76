"""Payment provider abstraction.

The Subscription Engine talks only to `PaymentProvider`; concrete adapters
translate engine intents into calls against one recurring-billing API and
normalize inbound webhooks. The active provider is chosen by configuration
(PAYMENT_PROVIDER), never by branching on a name inside the engine.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional
import logging
import os

from models import SubscriptionStatus, WebhookEventType
from services.billing_errors import BillingValidationError

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "mercadopago"


# ============================================================================
# NORMALIZED RESULT TYPES
# ============================================================================
@dataclass
class PaymentSourceResult:
    """Display-only placeholder for a payment instrument; no card data."""
    provider_payment_method_id: str
    brand: str
    last_four: str
    status: str = "active"


@dataclass
class CreatedSubscription:
    provider_subscription_id: str
    status: SubscriptionStatus
    init_point: Optional[str] = None
    next_payment_date: Optional[str] = None


@dataclass
class SubscriptionStatusResult:
    provider_subscription_id: str
    status: SubscriptionStatus
    next_payment_date: Optional[str] = None
    external_reference: Optional[str] = None
    raw_status: Optional[str] = None


@dataclass
class ProviderPayment:
    provider_payment_id: str
    status: str
    amount_cents: int
    currency: str
    status_detail: Optional[str] = None
    external_reference: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    date_approved: Optional[str] = None


@dataclass
class WebhookEvent:
    type: str
    resource_id: str
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_payment(self) -> bool:
        return self.type in PAYMENT_EVENT_TYPES

    @property
    def is_preapproval(self) -> bool:
        return self.type == WebhookEventType.SUBSCRIPTION_PREAPPROVAL.value


PAYMENT_EVENT_TYPES = frozenset({
    WebhookEventType.SUBSCRIPTION_AUTHORIZED_PAYMENT.value,
    WebhookEventType.PAYMENT_APPROVED.value,
    WebhookEventType.PAYMENT_DECLINED.value,
    WebhookEventType.PAYMENT_REFUNDED.value,
})


# ============================================================================
# PROVIDER INTERFACE
# ============================================================================
class PaymentProvider(ABC):
    """Capability interface every payment provider adapter implements."""

    name: str = ""
    currency: str = ""

    @abstractmethod
    async def create_payment_source(
        self,
        organization_id: str,
        last_four: str,
        brand: str,
        customer_email: Optional[str] = None,
    ) -> PaymentSourceResult:
        ...

    @abstractmethod
    async def create_subscription(
        self,
        payer_email: str,
        reason: str,
        amount_cents: int,
        currency: str,
        external_reference: str,
        back_url: str,
        free_trial_days: int = 0,
        card_token_id: Optional[str] = None,
    ) -> CreatedSubscription:
        ...

    @abstractmethod
    async def update_subscription(
        self,
        provider_subscription_id: str,
        amount_cents: int,
        currency: str,
        reason: Optional[str] = None,
    ) -> None:
        ...

    @abstractmethod
    async def cancel_subscription(self, provider_subscription_id: str) -> None:
        ...

    @abstractmethod
    async def get_subscription_status(self, provider_subscription_id: str) -> SubscriptionStatusResult:
        ...

    @abstractmethod
    async def get_payment(self, provider_payment_id: str) -> ProviderPayment:
        ...

    @abstractmethod
    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str], request_id: Optional[str]) -> bool:
        """Return True only when the provider HMAC matches (constant-time compare)."""

    @abstractmethod
    def parse_webhook_event(self, body: Dict[str, Any]) -> WebhookEvent:
        ...


# ============================================================================
# PROVIDER REGISTRY
# ============================================================================
def _mercadopago_factory() -> PaymentProvider:
    from services.mercadopago_provider import MercadoPagoProvider
    return MercadoPagoProvider()


def _stripe_factory() -> PaymentProvider:
    from services.stripe_provider import StripeProvider
    return StripeProvider()


PROVIDER_FACTORIES: Dict[str, Callable[[], PaymentProvider]] = {
    "mercadopago": _mercadopago_factory,
    "stripe": _stripe_factory,
}

_instances: Dict[str, PaymentProvider] = {}


def get_payment_provider(name: Optional[str] = None) -> PaymentProvider:
    """Return the configured provider (PAYMENT_PROVIDER, default mercadopago)."""
    provider_name = (name or os.getenv("PAYMENT_PROVIDER") or DEFAULT_PROVIDER).strip().lower()
    factory = PROVIDER_FACTORIES.get(provider_name)
    if factory is None:
        raise BillingValidationError(f"Unknown payment provider: {provider_name}")
    if provider_name not in _instances:
        _instances[provider_name] = factory()
        logger.info("Payment provider initialised: %s", provider_name)
    return _instances[provider_name]


def register_payment_provider(name: str, factory: Callable[[], PaymentProvider]) -> None:
    """Register an additional adapter under `name`."""
    PROVIDER_FACTORIES[name.strip().lower()] = factory
    _instances.pop(name.strip().lower(), None)
