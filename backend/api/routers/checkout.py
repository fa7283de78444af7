"""
Public checkout routes: catalog, payment creation, webhook, verify poll.
"""

import secrets
import time
from datetime import datetime, timezone
from urllib.parse import parse_qsl

import structlog
from fastapi import APIRouter, Depends, Request

from api.dependencies import AppServices, get_services
from api.errors import ApiError
from api.rate_limit import limit
from payments.gateway_client import GatewayError, GatewayUnavailable
from payments.webhooks import OrderNotFoundError
from schemas.api_models import CreatePaymentRequest, VerifyPaymentRequest
from schemas.ledger_models import (
    CURRENCY,
    FREE_SERVICES,
    PAID_SERVICE_IDS,
    PAID_SERVICES,
    SERVICE_PRICE,
    Order,
    OrderStatus,
    order_amount_minor,
    service_name,
)

logger = structlog.get_logger().bind(component="checkout")

router = APIRouter(prefix="/api")

START_TIME = time.monotonic()


def new_order_id() -> str:
    return f"order_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def payment_purpose(services: list) -> str:
    if len(services) == len(PAID_SERVICE_IDS):
        return "Tlangau: All Services"
    return "Tlangau: " + ", ".join(service_name(s) for s in services)


# =============================================================================
# INFORMATIONAL
# =============================================================================

@router.get("/health")
async def health(services: AppServices = Depends(get_services)):
    return {
        "status": "ok",
        "message": "Tlangau Server API is running",
        "firebaseReady": services.push.ready,
        "uptime": int(time.monotonic() - START_TIME),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/services")
async def list_services():
    return {
        "success": True,
        "services": [
            {"id": service_id, "name": info["name"], "price": info["price"]}
            for service_id, info in PAID_SERVICES.items()
        ],
        "freeServices": [{"id": service_id, "name": name} for service_id, name in FREE_SERVICES.items()],
        "pricePerService": SERVICE_PRICE,
        "currency": CURRENCY,
    }


# =============================================================================
# PAYMENT CREATION
# =============================================================================

@router.post("/create-payment", dependencies=[Depends(limit("payment"))])
async def create_payment(body: CreatePaymentRequest, services: AppServices = Depends(get_services)):
    if not services.gateway.configured:
        raise ApiError(500, error="Payment gateway not configured.")

    selected = body.services
    amount_minor = order_amount_minor(selected)
    amount = amount_minor // 100
    order = await services.repository.create_order(Order(
        order_id=new_order_id(),
        email=body.email,
        amount=amount_minor,
        status=OrderStatus.PENDING,
        services=selected,
    ))
    logger.info("order_created", order_id=order.order_id, email=order.email, amount=amount, services=selected)

    settings = services.settings
    try:
        link = await services.gateway.create_payment_request(
            purpose=payment_purpose(selected),
            amount=amount,
            email=order.email,
            buyer_name=order.email.split("@")[0],
            redirect_url=f"{settings.FRONTEND_URL}/success.html?order_id={order.order_id}",
            webhook_url=f"{settings.BACKEND_URL}/api/payment-webhook",
        )
    except GatewayError as e:
        logger.error("payment_link_failed", order_id=order.order_id, error=e.message, detail=e.detail)
        await services.repository.transition_order(order.order_id, OrderStatus.FAILED)

        if isinstance(e, GatewayUnavailable):
            message = "Payment gateway unavailable. Please try again."
            status_code = 503
        else:
            message = e.message
            status_code = e.status_code if e.status_code and 400 <= e.status_code < 600 else 500
        raise ApiError(status_code, error=message, message=f"Payment gateway error: {message}")

    await services.repository.update_order(order.order_id, {"payment_request_id": link.id})

    return {
        "success": True,
        "orderId": order.order_id,
        "paymentId": link.id,
        "paymentUrl": link.longurl,
        "amount": amount,
        "services": selected,
        "currency": CURRENCY,
    }


# =============================================================================
# WEBHOOK & POLL
# =============================================================================

async def _webhook_payload(request: Request) -> dict:
    content_type = request.headers.get("content-type", "")
    raw = await request.body()
    if "application/json" in content_type:
        try:
            payload = await request.json()
        except ValueError:
            raise ApiError(400, message="Invalid JSON body")
        if not isinstance(payload, dict):
            raise ApiError(400, message="Invalid JSON body")
        return payload
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        raise ApiError(400, message="Invalid form body")
    return dict(parse_qsl(text, keep_blank_values=True))


@router.post("/payment-webhook")
async def payment_webhook(request: Request, services: AppServices = Depends(get_services)):
    payload = await _webhook_payload(request)
    status = await services.verifier.handle_webhook(payload)
    return {"success": True, "message": "Webhook processed", "status": status}


@router.post("/verify-payment")
async def verify_payment(body: VerifyPaymentRequest, services: AppServices = Depends(get_services)):
    try:
        result = await services.verifier.verify_payment(body.orderId)
    except OrderNotFoundError:
        return {"success": False, "message": "Order not found"}
    return result.to_response()
