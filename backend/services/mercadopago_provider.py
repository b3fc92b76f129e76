"""
Mercado Pago adapter - native recurring billing via preapprovals.

Endpoints used:
- POST /preapproval             create subscription (pending, or authorized with card token)
- PUT  /preapproval/{id}        change amount / cancel
- GET  /preapproval/{id}        authoritative subscription status
- GET  /v1/payments/{id}        authoritative payment status

Webhook signature (x-signature: "ts=...,v1=..."):
    manifest = "id:{data.id};request-id:{x-request-id};ts:{ts};"
    v1 = HMAC-SHA256(MERCADO_PAGO_WEBHOOK_SECRET, manifest) as hex
"""
import hashlib
import hmac
import json
import logging
import os
import secrets
import time
from typing import Any, Dict, Optional

import httpx

from models import SubscriptionStatus, WebhookEventType
from services.billing_errors import BillingProviderError
from services.payment_provider import (
    CreatedSubscription,
    PaymentProvider,
    PaymentSourceResult,
    ProviderPayment,
    SubscriptionStatusResult,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

MERCADO_PAGO_API_BASE = "https://api.mercadopago.com"
DEFAULT_TIMEOUT_SECONDS = 10.0

PREAPPROVAL_STATUS_MAP = {
    "pending": SubscriptionStatus.PENDING,
    "authorized": SubscriptionStatus.AUTHORIZED,
    "paused": SubscriptionStatus.PAUSED,
    "cancelled": SubscriptionStatus.CANCELLED,
}


def minor_to_whole(amount_cents: int) -> int:
    """MP charges COP in whole pesos."""
    return round(amount_cents / 100)


class MercadoPagoProvider(PaymentProvider):
    """Mercado Pago preapproval API integration."""

    name = "mercadopago"
    currency = "COP"

    def __init__(
        self,
        access_token: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token if access_token is not None else os.getenv("MERCADO_PAGO_ACCESS_TOKEN", "")
        self.webhook_secret = webhook_secret if webhook_secret is not None else os.getenv("MERCADO_PAGO_WEBHOOK_SECRET", "")
        self.api_base = (api_base or os.getenv("MERCADO_PAGO_API_BASE") or MERCADO_PAGO_API_BASE).rstrip("/")
        self.timeout = timeout or float(os.getenv("MERCADO_PAGO_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS))
        self._transport = transport

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.access_token:
            raise BillingProviderError("MERCADO_PAGO_ACCESS_TOKEN is not configured", provider=self.name)

        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(base_url=self.api_base, timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, path, json=payload, headers=headers)
        except httpx.TimeoutException:
            logger.error("MERCADOPAGO_TIMEOUT method=%s path=%s timeout=%s", method, path, self.timeout)
            raise BillingProviderError("Mercado Pago request timed out", provider=self.name)
        except httpx.HTTPError as e:
            logger.error("MERCADOPAGO_TRANSPORT_ERROR method=%s path=%s error=%s", method, path, e)
            raise BillingProviderError(f"Mercado Pago request failed: {e}", provider=self.name)

        if response.status_code >= 400:
            try:
                detail = response.json().get("message") or response.text
            except ValueError:
                detail = response.text
            logger.error(
                "MERCADOPAGO_API_ERROR method=%s path=%s status=%s detail=%s",
                method, path, response.status_code, str(detail)[:500],
            )
            raise BillingProviderError(
                f"Mercado Pago error ({response.status_code}): {detail}",
                provider=self.name,
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        return response.json()

    # -------------------------------------------------------------------------
    # Payment sources
    # -------------------------------------------------------------------------

    async def create_payment_source(self, organization_id, last_four, brand, customer_email=None):
        # MP keeps the card; we only persist a display placeholder
        display_id = f"mp_card_{int(time.time() * 1000)}_{secrets.token_hex(3)}"
        return PaymentSourceResult(
            provider_payment_method_id=display_id,
            brand=(brand or "").lower(),
            last_four=last_four,
        )

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    async def create_subscription(
        self,
        payer_email,
        reason,
        amount_cents,
        currency,
        external_reference,
        back_url,
        free_trial_days=0,
        card_token_id=None,
    ):
        auto_recurring: Dict[str, Any] = {
            "frequency": 1,
            "frequency_type": "months",
            "transaction_amount": minor_to_whole(amount_cents),
            "currency_id": currency or self.currency,
        }
        if free_trial_days and free_trial_days > 0:
            auto_recurring["free_trial"] = {"frequency": free_trial_days, "frequency_type": "days"}

        payload: Dict[str, Any] = {
            "reason": reason,
            "auto_recurring": auto_recurring,
            "payer_email": payer_email,
            "external_reference": external_reference,
            "back_url": back_url,
            "status": "pending",
        }
        if card_token_id:
            payload["card_token_id"] = card_token_id
            payload["status"] = "authorized"

        data = await self._request("POST", "/preapproval", payload)
        logger.info(
            "MERCADOPAGO_PREAPPROVAL_CREATED id=%s status=%s external_reference=%s",
            data.get("id"), data.get("status"), external_reference,
        )
        return CreatedSubscription(
            provider_subscription_id=str(data["id"]),
            status=PREAPPROVAL_STATUS_MAP.get(data.get("status"), SubscriptionStatus.PENDING),
            init_point=data.get("init_point"),
            next_payment_date=data.get("next_payment_date"),
        )

    async def update_subscription(self, provider_subscription_id, amount_cents, currency, reason=None):
        payload: Dict[str, Any] = {
            "auto_recurring": {
                "transaction_amount": minor_to_whole(amount_cents),
                "currency_id": currency or self.currency,
            }
        }
        if reason:
            payload["reason"] = reason
        await self._request("PUT", f"/preapproval/{provider_subscription_id}", payload)

    async def cancel_subscription(self, provider_subscription_id):
        await self._request("PUT", f"/preapproval/{provider_subscription_id}", {"status": "cancelled"})
        logger.info("MERCADOPAGO_PREAPPROVAL_CANCELLED id=%s", provider_subscription_id)

    async def get_subscription_status(self, provider_subscription_id):
        data = await self._request("GET", f"/preapproval/{provider_subscription_id}")
        raw_status = data.get("status")
        return SubscriptionStatusResult(
            provider_subscription_id=str(data.get("id", provider_subscription_id)),
            status=PREAPPROVAL_STATUS_MAP.get(raw_status, SubscriptionStatus.PENDING),
            next_payment_date=data.get("next_payment_date"),
            external_reference=data.get("external_reference"),
            raw_status=raw_status,
        )

    async def get_payment(self, provider_payment_id):
        data = await self._request("GET", f"/v1/payments/{provider_payment_id}")
        metadata = data.get("metadata") or {}
        transaction_data = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
        subscription_id = transaction_data.get("subscription_id") or metadata.get("preapproval_id")
        return ProviderPayment(
            provider_payment_id=str(data.get("id", provider_payment_id)),
            status=data.get("status") or "pending",
            status_detail=data.get("status_detail"),
            amount_cents=round(float(data.get("transaction_amount") or 0) * 100),
            currency=data.get("currency_id") or self.currency,
            external_reference=data.get("external_reference"),
            provider_subscription_id=str(subscription_id) if subscription_id else None,
            date_approved=data.get("date_approved"),
        )

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def verify_webhook_signature(self, raw_body, signature, request_id):
        if not self.webhook_secret or not signature:
            return False
        try:
            parts = {}
            for part in signature.split(","):
                key, _, value = part.partition("=")
                parts[key.strip()] = value.strip()
            ts = parts.get("ts")
            v1 = parts.get("v1")
            if not ts or not v1:
                return False

            if isinstance(raw_body, bytes):
                raw_body = raw_body.decode("utf-8")
            body = json.loads(raw_body or "{}")
            data_id = (body.get("data") or {}).get("id")
            if data_id in (None, ""):
                return False

            manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
            expected = hmac.new(
                self.webhook_secret.encode("utf-8"),
                manifest.encode("utf-8"),
                hashlib.sha256,
            ).hexdigest()
            return hmac.compare_digest(expected, v1)
        except (ValueError, TypeError, AttributeError, UnicodeDecodeError):
            return False

    def parse_webhook_event(self, body):
        topic = str(body.get("type") or body.get("topic") or "")
        action = str(body.get("action") or "")
        resource_id = str((body.get("data") or {}).get("id", ""))

        if topic == "subscription_authorized_payment" or "subscription_authorized_payment" in action:
            event_type = WebhookEventType.SUBSCRIPTION_AUTHORIZED_PAYMENT.value
        elif topic == "subscription_preapproval" or "subscription_preapproval" in action:
            event_type = WebhookEventType.SUBSCRIPTION_PREAPPROVAL.value
        elif topic == "payment" or action.startswith("payment."):
            event_type = WebhookEventType.PAYMENT_APPROVED.value
        else:
            event_type = WebhookEventType.SUBSCRIPTION_UPDATED.value

        return WebhookEvent(type=event_type, resource_id=resource_id, raw=body)
