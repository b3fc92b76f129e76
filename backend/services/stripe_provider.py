"""Stripe adapter placeholder.

Conforms to PaymentProvider so the engine stays provider-agnostic; every
remote operation fails until the integration is built.
"""
import logging

from services.billing_errors import BillingProviderError
from services.payment_provider import PaymentProvider

logger = logging.getLogger(__name__)

NOT_IMPLEMENTED = "Stripe provider not implemented. Set PAYMENT_PROVIDER=mercadopago."


class StripeProvider(PaymentProvider):
    name = "stripe"
    currency = "USD"

    def _fail(self):
        raise BillingProviderError(NOT_IMPLEMENTED, provider=self.name)

    async def create_payment_source(self, organization_id, last_four, brand, customer_email=None):
        self._fail()

    async def create_subscription(self, payer_email, reason, amount_cents, currency, external_reference,
                                  back_url, free_trial_days=0, card_token_id=None):
        self._fail()

    async def update_subscription(self, provider_subscription_id, amount_cents, currency, reason=None):
        self._fail()

    async def cancel_subscription(self, provider_subscription_id):
        self._fail()

    async def get_subscription_status(self, provider_subscription_id):
        self._fail()

    async def get_payment(self, provider_payment_id):
        self._fail()

    def verify_webhook_signature(self, raw_body, signature, request_id):
        logger.warning("Stripe webhook received but Stripe provider is not implemented")
        return False

    def parse_webhook_event(self, body):
        self._fail()
