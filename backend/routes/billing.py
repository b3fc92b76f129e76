"""Billing Routes - Subscription and payment management.

Endpoints:
- POST /api/billing/subscribe - Start a checkout for a plan tier
- POST /api/billing/change-plan - Move an authorized subscription to another tier
- POST /api/billing/cancel - Cancel (deferred to period end unless in trial)
- DELETE /api/billing/cancel, POST /api/billing/reactivate - Undo a deferred cancel
- GET /api/billing/status - Plan, subscription and payment method summary
- GET /api/billing/invoices - Invoice history
- GET /api/billing/plans - Public plan catalog
- GET/POST/DELETE /api/billing/payment-methods - Card display metadata
- GET /api/billing/features/{feature}, GET /api/billing/limits/{limit_type} - Gate checks
- POST /api/billing/webhook - Alias for the provider webhook
"""
from fastapi import APIRouter, HTTPException, Request, status
from typing import Optional
from database import database
from models import SubscribeRequest, ChangePlanRequest, PaymentMethodCreate
from middleware import organization_route_guard
from routes.webhooks import handle_provider_webhook
from services.billing_errors import BillingError
from services.feature_gate import check_org_limit, org_has_feature
from services.payment_provider import get_payment_provider
from services.plan_catalog import format_price, plan_catalog
from services.subscription_engine import subscription_engine
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing", tags=["billing"])


def _billing_http_error(e: BillingError) -> HTTPException:
    """Translate a typed billing failure; the message reaches the client verbatim."""
    return HTTPException(status_code=e.http_status, detail=e.message)


def _invoice_out(invoice: dict) -> dict:
    amount_cents = invoice.get("amount_cents") or 0
    currency = invoice.get("currency") or "COP"
    return {
        "id": invoice["invoice_id"],
        "amount": amount_cents,
        "currency": currency,
        "formattedAmount": format_price(amount_cents, currency),
        "status": invoice.get("status"),
        "date": invoice.get("paid_at") or invoice.get("created_at"),
        "periodStart": invoice.get("period_start"),
        "periodEnd": invoice.get("period_end"),
        "failureReason": invoice.get("failure_reason"),
    }


def _payment_method_out(method: dict) -> dict:
    return {
        "id": method["payment_method_id"],
        "type": method.get("type", "card"),
        "lastFour": method.get("last_four"),
        "brand": method.get("brand"),
        "isDefault": bool(method.get("is_default")),
        "createdAt": method.get("created_at"),
    }


@router.post("/subscribe")
async def subscribe(request: Request, body: SubscribeRequest):
    """Create a pending subscription and return the provider checkout URL.

    The plan only becomes active once the provider confirms the first
    authorization or payment.
    """
    user = await organization_route_guard(request, billing_admin=True)
    try:
        result = await subscription_engine.subscribe(
            organization_id=user["organization_id"],
            plan_tier=body.plan_tier,
            payer_email=body.payer_email,
            card_token_id=body.card_token_id,
            card_last_four=body.card_last_four,
            card_brand=body.card_brand,
            actor_id=user.get("user_id"),
        )
    except BillingError as e:
        raise _billing_http_error(e)
    except Exception as e:
        logger.error(f"Subscribe failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create subscription"
        )

    return {
        "subscriptionId": result["subscription_id"],
        "providerSubscriptionId": result["provider_subscription_id"],
        "initPoint": result.get("init_point"),
    }


@router.post("/change-plan")
async def change_plan(request: Request, body: ChangePlanRequest):
    user = await organization_route_guard(request, billing_admin=True)
    try:
        result = await subscription_engine.change_plan(
            user["organization_id"], body.new_plan_tier, actor_id=user.get("user_id")
        )
    except BillingError as e:
        raise _billing_http_error(e)
    except Exception as e:
        logger.error(f"Plan change failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to change plan"
        )

    return {"success": result["success"], "planTier": result["plan_tier"]}


@router.post("/cancel")
async def cancel_subscription(request: Request):
    """Cancel subscription at the end of the current period (immediately while in trial)."""
    user = await organization_route_guard(request, billing_admin=True)
    try:
        result = await subscription_engine.cancel_subscription(
            user["organization_id"], actor_id=user.get("user_id")
        )
    except BillingError as e:
        raise _billing_http_error(e)
    except Exception as e:
        logger.error(f"Subscription cancellation failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to cancel subscription"
        )

    return {"success": result["success"], "message": result["message"]}


async def _reactivate(request: Request) -> dict:
    user = await organization_route_guard(request, billing_admin=True)
    try:
        return await subscription_engine.reactivate_subscription(
            user["organization_id"], actor_id=user.get("user_id")
        )
    except BillingError as e:
        raise _billing_http_error(e)
    except Exception as e:
        logger.error(f"Subscription reactivation failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to reactivate subscription"
        )


@router.delete("/cancel")
async def undo_cancel(request: Request):
    return await _reactivate(request)


@router.post("/reactivate")
async def reactivate_subscription(request: Request):
    return await _reactivate(request)


@router.get("/status")
async def get_billing_status(request: Request):
    """Get current plan, subscription and billing status."""
    user = await organization_route_guard(request)
    try:
        return await subscription_engine.get_billing_status(user["organization_id"])
    except BillingError as e:
        raise _billing_http_error(e)
    except Exception as e:
        logger.error(f"Failed to get billing status: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve billing status"
        )


@router.get("/invoices")
async def list_invoices(request: Request, limit: int = 20):
    user = await organization_route_guard(request)
    limit = max(1, min(limit, 100))
    try:
        invoices = await subscription_engine.get_invoices(user["organization_id"], limit=limit)
    except Exception as e:
        logger.error(f"Failed to list invoices: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve invoices"
        )
    return {"invoices": [_invoice_out(i) for i in invoices]}


@router.get("/plans")
async def list_plans():
    """Public plan catalog priced in the configured provider's currency."""
    currency = get_payment_provider().currency
    plans = []
    for plan in plan_catalog.get_all_plans():
        price = plan_catalog.get_price(plan["tier"], currency)
        plans.append({
            "tier": plan["tier"],
            "name": plan["name"],
            "description": plan.get("description"),
            "price": price,
            "currency": currency,
            "formattedPrice": format_price(price, currency),
            "trialDays": plan["trial_days"],
            "limits": {
                "maxProperties": plan["max_properties"],
                "maxTeamMembers": plan["max_team_members"],
                "maxConversationsPerMonth": plan["max_conversations_per_month"],
            },
            "features": plan["features"],
        })
    return {"plans": plans}


@router.get("/payment-methods")
async def list_payment_methods(request: Request):
    user = await organization_route_guard(request)
    methods = await subscription_engine.list_payment_methods(user["organization_id"])
    return {"paymentMethods": [_payment_method_out(m) for m in methods]}


@router.post("/payment-methods", status_code=status.HTTP_201_CREATED)
async def add_payment_method(request: Request, body: PaymentMethodCreate):
    user = await organization_route_guard(request, billing_admin=True)
    try:
        method = await subscription_engine.add_payment_method(
            user["organization_id"], body.last_four, body.brand, body.customer_email
        )
    except BillingError as e:
        raise _billing_http_error(e)
    except Exception as e:
        logger.error(f"Failed to add payment method: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to add payment method"
        )
    return {"paymentMethod": _payment_method_out(method)}


@router.delete("/payment-methods")
async def remove_payment_method(request: Request, id: Optional[str] = None):
    user = await organization_route_guard(request, billing_admin=True)
    if not id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Payment method id is required"
        )
    try:
        await subscription_engine.remove_payment_method(user["organization_id"], id)
    except BillingError as e:
        raise _billing_http_error(e)
    return {"success": True}


@router.get("/features/{feature}")
async def check_feature(request: Request, feature: str):
    """Let the UI decide whether to show an upgrade prompt before calling a gated endpoint."""
    user = await organization_route_guard(request)
    db = database.get_db()
    org = await db.organizations.find_one({"organization_id": user["organization_id"]}, {"_id": 0})
    if not org:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")
    result = org_has_feature(org, feature)
    return {
        "feature": feature,
        "allowed": result.allowed,
        "message": result.message,
        "requiredPlan": result.required_plan,
    }


@router.get("/limits/{limit_type}")
async def check_limit(request: Request, limit_type: str, current: Optional[int] = None):
    user = await organization_route_guard(request)
    db = database.get_db()
    org = await db.organizations.find_one({"organization_id": user["organization_id"]}, {"_id": 0})
    if not org:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")
    try:
        result = check_org_limit(org, limit_type, current)
    except BillingError as e:
        raise _billing_http_error(e)
    return {"limit": limit_type, **result.to_dict()}


@router.post("/webhook")
async def billing_webhook(request: Request):
    """Alias for POST /api/webhooks/mercadopago."""
    return await handle_provider_webhook(request)
