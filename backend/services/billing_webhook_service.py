"""Billing Webhook Service - provider webhook ingestion.

Key Principles:
1. Signature verification first: an unauthenticated request is rejected and
   nothing is read from or written to the database.
2. No event dedup table: every event re-fetches authoritative state from the
   provider and the engine upserts by provider resource id.
3. Once authenticated, processing failures are logged and acknowledged; the
   reconciliation sweep is the correctness backstop.

Events Handled:
- subscription_authorized_payment / payment.* -> handle_subscription_payment
- subscription_preapproval -> handle_subscription_authorized
- subscription.updated and anything else -> logged, acknowledged
"""
import json
import logging
from typing import Any, Dict, Optional, Tuple

from services.billing_errors import WebhookAuthenticationError
from services.payment_provider import PaymentProvider
from services.subscription_engine import SubscriptionEngine, subscription_engine

logger = logging.getLogger(__name__)


class BillingWebhookService:
    """Verifies, normalizes and dispatches payment provider webhooks."""

    def __init__(self, engine: Optional[SubscriptionEngine] = None, provider: Optional[PaymentProvider] = None):
        self._engine = engine
        self._provider = provider

    @property
    def engine(self) -> SubscriptionEngine:
        return self._engine or subscription_engine

    @property
    def provider(self) -> PaymentProvider:
        return self._provider or self.engine.provider

    def verify(self, payload: bytes, signature: Optional[str], request_id: Optional[str]) -> Dict[str, Any]:
        """Verify authenticity and return the decoded body.

        Raises WebhookAuthenticationError when the signature does not match.
        """
        if not self.provider.verify_webhook_signature(payload, signature, request_id):
            logger.warning(
                "BILLING_WEBHOOK_SIGNATURE_REJECTED provider=%s request_id=%s has_signature=%s",
                self.provider.name, request_id, bool(signature),
            )
            raise WebhookAuthenticationError("Invalid signature")
        return json.loads(payload)

    async def process_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
        request_id: Optional[str],
    ) -> Tuple[bool, str, Optional[Dict[str, Any]]]:
        """
        Main webhook entry point.

        Returns:
            (success, message, details) for authenticated requests.

        Raises:
            WebhookAuthenticationError for unauthenticated requests.
        """
        body = self.verify(payload, signature, request_id)

        try:
            event = self.provider.parse_webhook_event(body)
        except Exception as e:
            logger.exception("BILLING_WEBHOOK_PARSE_FAILED request_id=%s error=%s", request_id, e)
            return False, "Unparseable event", {"error": str(e)}

        logger.info(
            "BILLING_WEBHOOK_RECEIVED provider=%s event_type=%s resource_id=%s request_id=%s",
            self.provider.name, event.type, event.resource_id, request_id,
        )

        if not event.resource_id:
            logger.warning("BILLING_WEBHOOK_IGNORED event_type=%s reason=no_resource_id", event.type)
            return True, "Ignored", {"event_type": event.type}

        try:
            if event.is_payment:
                details = await self.engine.handle_subscription_payment(event.resource_id)
            elif event.is_preapproval:
                details = await self.engine.handle_subscription_authorized(event.resource_id)
            else:
                logger.info("BILLING_WEBHOOK_UNHANDLED event_type=%s resource_id=%s", event.type, event.resource_id)
                return True, "Acknowledged", {"event_type": event.type}
        except Exception as e:
            logger.exception(
                "BILLING_WEBHOOK_PROCESSING_FAILED event_type=%s resource_id=%s error=%s",
                event.type, event.resource_id, e,
            )
            return False, "Processing failed", {"event_type": event.type, "error": str(e)}

        return True, "Processed", {"event_type": event.type, **details}


# Singleton instance
billing_webhook_service = BillingWebhookService()
