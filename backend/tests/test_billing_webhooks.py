"""
Webhook ingestion: signature gate, dispatch by event type, always-200 once
authenticated, and the /api/billing/webhook alias.
"""
import json

import pytest

from conftest import ORG_ID
from services.billing_errors import WebhookAuthenticationError
from services.billing_webhook_service import BillingWebhookService

WEBHOOK_URL = "/api/webhooks/mercadopago"


def _body(event_type="payment.approved", resource_id="pay-1"):
    return json.dumps({"type": event_type, "action": "created", "data": {"id": resource_id}})


def _headers(signature="valid"):
    return {"x-signature": signature, "x-request-id": "req-1", "Content-Type": "application/json"}


class TestWebhookRoute:
    def test_invalid_signature_is_rejected_without_writes(self, client, fake_db, fake_provider):
        fake_db.seed_org()
        fake_db.seed_subscription(status="pending", provider_subscription_id="pre-1")
        fake_provider.add_payment("pay-1", provider_subscription_id="pre-1")

        response = client.post(WEBHOOK_URL, content=_body(), headers=_headers("forged"))

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid signature"
        assert fake_db.total_writes() == 0
        assert fake_provider.calls == []

    def test_missing_signature_is_rejected(self, client, fake_db, fake_provider):
        response = client.post(WEBHOOK_URL, content=_body(), headers={"Content-Type": "application/json"})
        assert response.status_code == 401
        assert fake_db.total_writes() == 0

    def test_payment_event_records_invoice_and_activates(self, client, fake_db, fake_provider):
        fake_db.seed_org()
        fake_db.seed_subscription(status="pending", provider_subscription_id="pre-1")
        fake_provider.add_payment("pay-1", provider_subscription_id="pre-1")

        response = client.post(WEBHOOK_URL, content=_body(), headers=_headers())

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert len(fake_db.invoices.docs) == 1
        assert fake_db.get("organizations", organization_id=ORG_ID)["plan_status"] == "active"

    def test_redelivered_payment_is_idempotent(self, client, fake_db, fake_provider):
        fake_db.seed_org()
        fake_db.seed_subscription(status="pending", provider_subscription_id="pre-1")
        fake_provider.add_payment("pay-1", provider_subscription_id="pre-1")

        for _ in range(3):
            assert client.post(WEBHOOK_URL, content=_body(), headers=_headers()).status_code == 200

        assert len(fake_db.invoices.docs) == 1
        statuses = [a for a in fake_db.audit_logs.docs if a["action"] == "PLAN_STATUS_CHANGED"]
        assert len(statuses) == 1

    def test_preapproval_event_syncs_subscription(self, client, fake_db, fake_provider):
        fake_db.seed_org(plan_status="canceled")
        fake_db.seed_subscription(status="pending", provider_subscription_id="pre-1")
        fake_provider.subscriptions["pre-1"] = "authorized"

        response = client.post(
            WEBHOOK_URL, content=_body("subscription_preapproval", "pre-1"), headers=_headers()
        )

        assert response.status_code == 200
        assert fake_db.subscriptions.docs[0]["status"] == "authorized"
        assert fake_db.get("organizations", organization_id=ORG_ID)["plan_status"] == "active"

    def test_processing_failure_still_acknowledged(self, client, fake_db, fake_provider):
        # Unknown payment id: the provider lookup raises inside the engine
        response = client.post(WEBHOOK_URL, content=_body(resource_id="pay-unknown"), headers=_headers())
        assert response.status_code == 200
        assert response.json() == {"received": True}

    def test_unhandled_event_type_is_acknowledged(self, client, fake_db, fake_provider):
        response = client.post(WEBHOOK_URL, content=_body("subscription.updated", "x"), headers=_headers())
        assert response.status_code == 200
        assert fake_provider.calls == []

    def test_billing_alias_route(self, client, fake_db, fake_provider):
        fake_db.seed_org()
        fake_db.seed_subscription(status="pending", provider_subscription_id="pre-1")
        fake_provider.add_payment("pay-1", provider_subscription_id="pre-1")

        response = client.post("/api/billing/webhook", content=_body(), headers=_headers())

        assert response.status_code == 200
        assert len(fake_db.invoices.docs) == 1

    def test_alias_rejects_bad_signature(self, client, fake_db, fake_provider):
        response = client.post("/api/billing/webhook", content=_body(), headers=_headers("nope"))
        assert response.status_code == 401


class TestWebhookService:
    @pytest.mark.asyncio
    async def test_verify_raises_before_parsing(self, fake_provider):
        service = BillingWebhookService(provider=fake_provider)
        with pytest.raises(WebhookAuthenticationError):
            service.verify(b"not even json", "bad", "req-1")

    @pytest.mark.asyncio
    async def test_event_without_resource_id_is_ignored(self, fake_db, engine, fake_provider):
        service = BillingWebhookService(engine=engine, provider=fake_provider)
        success, message, details = await service.process_webhook(
            json.dumps({"type": "payment.approved", "data": {}}).encode(), "valid", "req-1"
        )
        assert success is True
        assert message == "Ignored"
        assert fake_provider.calls == []

    @pytest.mark.asyncio
    async def test_processed_details_include_engine_result(self, fake_db, engine, fake_provider):
        fake_db.seed_org()
        fake_db.seed_subscription(status="pending", provider_subscription_id="pre-1")
        fake_provider.add_payment("pay-1", provider_subscription_id="pre-1")
        service = BillingWebhookService(engine=engine, provider=fake_provider)

        success, message, details = await service.process_webhook(_body().encode(), "valid", "req-1")

        assert success is True
        assert message == "Processed"
        assert details["invoice_status"] == "paid"
        assert details["organization_id"] == ORG_ID

    @pytest.mark.asyncio
    async def test_engine_failure_is_reported_not_raised(self, fake_db, engine, fake_provider):
        service = BillingWebhookService(engine=engine, provider=fake_provider)
        success, message, details = await service.process_webhook(
            _body(resource_id="missing").encode(), "valid", "req-1"
        )
        assert success is False
        assert message == "Processing failed"
        assert details["event_type"] == "payment.approved"
