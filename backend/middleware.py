from fastapi import Request, HTTPException, status
from typing import Awaitable, Callable, Optional
import logging
from auth import decode_access_token
from models import UserRole
from database import database
from services.feature_gate import check_org_limit, org_has_feature

logger = logging.getLogger(__name__)

BILLING_ADMIN_ROLES = frozenset({UserRole.ROLE_ORG_ADMIN.value, UserRole.ROLE_SUPER_ADMIN.value})

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    return decode_access_token(token)

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

async def admin_route_guard(request: Request) -> dict:
    """Require platform super admin."""
    user = await require_auth(request)
    if user.get("role") != UserRole.ROLE_SUPER_ADMIN.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
    return user

async def organization_route_guard(request: Request, billing_admin: bool = False) -> dict:
    """Guard for organization routes - requires a token bound to an organization.

    With billing_admin=True only organization admins (or super admins) pass;
    used for subscribe / change-plan / cancel / payment method changes.
    """
    user = await require_auth(request)

    if not user.get("organization_id"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No organization_id associated with user"
        )

    if billing_admin and user.get("role") not in BILLING_ADMIN_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only organization admins can manage billing"
        )

    return user

async def _load_organization(organization_id: str) -> dict:
    db = database.get_db()
    org = await db.organizations.find_one({"organization_id": organization_id}, {"_id": 0})
    if not org:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Organization not found"
        )
    return org

def require_feature(feature: str):
    """FastAPI dependency enforcing a plan feature for the caller's organization.

    Usage:
        @router.post("/tags")
        async def create_tag(org: dict = Depends(require_feature("custom_tags"))):
            ...
    """
    async def dependency(request: Request) -> dict:
        user = await organization_route_guard(request)
        org = await _load_organization(user["organization_id"])
        result = org_has_feature(org, feature)
        if not result.allowed:
            logger.info(
                "FEATURE_GATE_DENIED organization_id=%s feature=%s tier=%s status=%s",
                org["organization_id"], feature, org.get("plan_tier"), org.get("plan_status"),
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error_code": "PLAN_NOT_ELIGIBLE",
                    "feature": feature,
                    "message": result.message,
                    "required_plan": result.required_plan,
                },
            )
        return org
    return dependency

def require_limit(limit_type: str, count_loader: Optional[Callable[[dict], Awaitable[int]]] = None):
    """FastAPI dependency rejecting a write that would exceed a plan limit.

    count_loader receives the organization document and returns the current
    usage; without it the organization's own counter is used (conversations).
    """
    async def dependency(request: Request) -> dict:
        user = await organization_route_guard(request)
        org = await _load_organization(user["organization_id"])
        current = await count_loader(org) if count_loader else None
        result = check_org_limit(org, limit_type, current)
        if not result.allowed:
            logger.info(
                "LIMIT_GATE_DENIED organization_id=%s limit=%s current=%s max=%s",
                org["organization_id"], limit_type, result.current, result.max,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"error_code": "PLAN_LIMIT_REACHED", "limit": limit_type, **result.to_dict()},
            )
        return org
    return dependency
