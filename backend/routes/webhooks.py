"""Webhook Routes - payment provider notifications.

POST /api/webhooks/mercadopago - Mercado Pago subscription and payment events
POST /api/billing/webhook - Alias (registered in routes/billing.py)

Security:
- x-signature / x-request-id are verified before anything else; an invalid
  signature returns 401 and nothing is written.
- Once authenticated the endpoint always answers 200 so the provider does
  not redeliver an event we already logged; the reconciliation sweep repairs
  anything processing missed.
"""
from fastapi import APIRouter, HTTPException, Request, status
from services.billing_errors import WebhookAuthenticationError
from services.billing_webhook_service import billing_webhook_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


async def handle_provider_webhook(request: Request):
    payload = await request.body()
    signature = request.headers.get("x-signature")
    request_id = request.headers.get("x-request-id")

    try:
        success, message, details = await billing_webhook_service.process_webhook(
            payload=payload,
            signature=signature,
            request_id=request_id,
        )
    except WebhookAuthenticationError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=e.message)
    except Exception as e:
        logger.exception(f"Billing webhook error: {e}")
        return {"received": True}

    if not success:
        # Still return 200; errors are logged internally
        logger.error(f"Webhook processing failed: {message} details={details}")
    return {"received": True}


@router.post("/api/webhooks/mercadopago")
async def mercadopago_webhook(request: Request):
    """Handle Mercado Pago webhooks at /api/webhooks/mercadopago"""
    return await handle_provider_webhook(request)
