"""
Admin routes. Every route except login requires the admin password.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Request

from api.dependencies import AppServices, get_services, password_matches, require_admin
from api.errors import ApiError
from api.rate_limit import client_ip, limit as rate_limit
from payments.codes import normalize_code
from schemas.api_models import AdminLoginRequest, EmailRequest

logger = structlog.get_logger().bind(component="admin")

router = APIRouter(prefix="/api/admin")
protected = APIRouter(prefix="/api/admin", dependencies=[Depends(require_admin)])


@router.post("/login", dependencies=[Depends(rate_limit("auth"))])
async def login(body: AdminLoginRequest, request: Request, services: AppServices = Depends(get_services)):
    if not password_matches(body.password, services.admin_password):
        logger.warning("admin_login_failed", client=client_ip(request))
        raise ApiError(401, error="Invalid password")
    logger.info("admin_login", client=client_ip(request))
    return {"success": True, "message": "Login successful"}


# =============================================================================
# ORDERS & CODES
# =============================================================================

@protected.get("/orders")
async def list_orders(services: AppServices = Depends(get_services)):
    orders = [o.model_dump(mode="json") for o in await services.repository.list_orders()]
    return {"success": True, "orders": orders, "count": len(orders)}


@protected.get("/access-codes")
async def list_access_codes(services: AppServices = Depends(get_services)):
    codes = [c.model_dump(mode="json") for c in await services.repository.list_access_codes()]
    return {"success": True, "codes": codes, "count": len(codes)}


@protected.post("/resend-email")
async def resend_email(body: EmailRequest, services: AppServices = Depends(get_services)):
    access_code = await services.repository.get_latest_code_by_email(body.email)
    if access_code is None:
        raise ApiError(404, message="No access code found for this email")

    logger.info("admin_resend_email", email=body.email, code=access_code.code)
    if not await services.engine.resend_access_code(access_code):
        raise ApiError(500, message="Failed to send email", code=access_code.code)
    return {"success": True, "message": "Email resent successfully", "code": access_code.code}


@protected.delete("/access-codes/{code}")
async def delete_access_code(code: str, services: AppServices = Depends(get_services)):
    code = normalize_code(code)
    if not await services.repository.delete_access_code(code):
        raise ApiError(404, message="Access code not found")
    await services.repository.log_event("ADMIN_CODE_DELETED", {"code": code}, severity="WARN")
    return {"success": True, "message": "Access code deleted"}


@protected.delete("/orders/{order_id}")
async def delete_order(order_id: str, services: AppServices = Depends(get_services)):
    if not await services.repository.delete_order(order_id):
        raise ApiError(404, message="Order not found")
    await services.repository.log_event("ADMIN_ORDER_DELETED", {}, entity_id=order_id, severity="WARN")
    return {"success": True, "message": "Order and associated codes deleted"}


@protected.delete("/users/{email}")
async def delete_user(email: str, services: AppServices = Depends(get_services)):
    result = await services.repository.delete_user_by_email(email)
    if not result["deleted"]:
        raise ApiError(404, message="User not found")
    await services.repository.log_event(
        "ADMIN_USER_DELETED",
        {"email": email.strip().lower(), "orders": result["deleted_orders"], "codes": result["deleted_codes"]},
        severity="WARN",
    )
    return {
        "success": True,
        "message": "User data deleted",
        "deletedOrders": result["deleted_orders"],
        "deletedCodes": result["deleted_codes"],
    }


# =============================================================================
# REPORTING
# =============================================================================

@protected.get("/statistics")
async def statistics(services: AppServices = Depends(get_services)):
    return {"success": True, "statistics": await services.repository.get_statistics()}


@protected.get("/users")
async def users(services: AppServices = Depends(get_services)):
    summaries = await services.repository.get_user_summaries()
    return {"success": True, "users": summaries, "count": len(summaries)}


@protected.get("/events")
async def events(limit: int = 50, severity: Optional[str] = None, services: AppServices = Depends(get_services)):
    recent = await services.repository.recent_events(limit=max(1, min(limit, 500)), severity=severity)
    return {"success": True, "events": recent, "count": len(recent)}


# =============================================================================
# BUNDLES & TOPICS
# =============================================================================

@protected.get("/bundles")
async def list_bundles(services: AppServices = Depends(get_services)):
    bundles = await services.repository.list_bundles()
    return {"success": True, "bundles": bundles, "count": len(bundles)}


@protected.delete("/bundles/{bundle_id}")
async def delete_bundle(bundle_id: str, services: AppServices = Depends(get_services)):
    if not await services.repository.delete_bundle(bundle_id):
        raise ApiError(404, message="Bundle not found")
    return {"success": True, "message": "Bundle and all its topics deleted"}


@protected.delete("/bundles/{bundle_id}/topics/{topic_id}")
async def delete_topic(bundle_id: str, topic_id: str, services: AppServices = Depends(get_services)):
    if not await services.repository.delete_topic(bundle_id, topic_id):
        raise ApiError(404, message="Topic not found")
    return {"success": True, "message": "Topic deleted"}
