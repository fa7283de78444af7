"""
Webhook & Poll Verifier
=======================
Two triggers, one engine.

- handle_webhook: provider push, authenticated by an inline HMAC-SHA1
  over the sorted, pipe-joined payload values
- verify_payment: client pull from the success page; terminal orders
  answer from the ledger without calling the provider
"""

import hashlib
import hmac
from typing import Any, Dict, List, Mapping, Optional

import structlog
from pydantic import BaseModel

from database import LedgerRepository
from payments.fulfillment import AMOUNT_MISMATCH, REQUEST_ID_MISMATCH, FulfillmentEngine
from payments.gateway_client import GatewayError, IPaymentGateway
from schemas.ledger_models import (
    CREDIT_STATUS,
    FAILED_STATUS,
    Order,
    OrderStatus,
    PaymentRecord,
)

logger = structlog.get_logger().bind(component="verifier")


# =============================================================================
# ERRORS
# =============================================================================

class VerifierError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class WebhookSignatureError(VerifierError):
    status_code = 403


class WebhookPayloadError(VerifierError):
    status_code = 400


class OrderNotFoundError(VerifierError):
    status_code = 404


# =============================================================================
# MAC
# =============================================================================

def compute_webhook_mac(payload: Mapping[str, Any], secret: str) -> str:
    message = "|".join(
        "" if payload[key] is None else str(payload[key])
        for key in sorted(payload)
        if key != "mac"
    )
    return hmac.new(secret.encode(), message.encode(), hashlib.sha1).hexdigest()


def verify_webhook_mac(payload: Mapping[str, Any], secret: Optional[str], hardened: bool) -> None:
    """Raise WebhookSignatureError unless the payload carries a valid MAC."""
    if not secret:
        if hardened:
            raise WebhookSignatureError("Webhook secret not configured")
        logger.warning("webhook_mac_skipped", reason="secret not configured")
        return

    provided = str(payload.get("mac") or "")
    if not provided:
        raise WebhookSignatureError("Missing MAC")

    expected = compute_webhook_mac(payload, secret)
    if not hmac.compare_digest(expected.lower(), provided.lower()):
        raise WebhookSignatureError("Invalid MAC")


# =============================================================================
# RESULTS
# =============================================================================

class VerifyResult(BaseModel):
    success: bool
    payment_status: str
    message: str
    services: Optional[List[str]] = None

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": self.success,
            "paymentStatus": self.payment_status,
            "message": self.message,
        }
        if self.services is not None:
            body["services"] = self.services
        return body


# =============================================================================
# VERIFIER
# =============================================================================

class PaymentVerifier:
    """
    Drives the FulfillmentEngine from the webhook and from client polls.

    Example:
        verifier = PaymentVerifier(repository, gateway, engine, salt, hardened=True)
        status = await verifier.handle_webhook(form_fields)
        result = await verifier.verify_payment("order_1718000000000_ab12cd34ef")
    """

    def __init__(
        self,
        repository: LedgerRepository,
        gateway: IPaymentGateway,
        engine: FulfillmentEngine,
        secret: Optional[str] = None,
        hardened: bool = False,
    ):
        self.repository = repository
        self.gateway = gateway
        self.engine = engine
        self.secret = secret
        self.hardened = hardened

    # -------------------------------------------------------------------------
    # WEBHOOK
    # -------------------------------------------------------------------------

    async def handle_webhook(self, payload: Mapping[str, Any]) -> str:
        """Verify, locate the order, fulfill. Returns the fulfillment status."""
        try:
            verify_webhook_mac(payload, self.secret, self.hardened)
        except WebhookSignatureError as e:
            await self.repository.log_event(
                "FRAUD_SIGNAL",
                {"reason": "INVALID_WEBHOOK_MAC", "detail": e.message,
                 "payment_request_id": payload.get("payment_request_id")},
                severity="WARN",
            )
            raise WebhookSignatureError("Invalid webhook signature") from e

        request_id = payload.get("payment_request_id")
        payment_id = payload.get("payment_id")
        if not request_id:
            raise WebhookPayloadError("Missing payment_request_id")

        logger.info("webhook_received", payment_request_id=request_id, payment_id=payment_id,
                    status=payload.get("status"))

        order = await self.repository.get_order_by_payment_request_id(request_id)
        if order is None and payment_id:
            order = await self._find_order_by_buyer(payment_id)
        if order is None:
            logger.warning("webhook_order_not_found", payment_request_id=request_id)
            raise OrderNotFoundError("Order not found")

        if not payment_id:
            return payload.get("status") or "UNKNOWN"

        try:
            payment = await self.gateway.get_payment(payment_id)
        except GatewayError as e:
            # acknowledged anyway; the poll path or a retry will pick it up
            logger.error("webhook_payment_fetch_failed", order_id=order.order_id, error=e.message)
            return "GATEWAY_ERROR"

        result = await self.engine.fulfill(order, payment, payment_id)
        return result.status

    async def _find_order_by_buyer(self, payment_id: str) -> Optional[Order]:
        try:
            payment = await self.gateway.get_payment(payment_id)
        except GatewayError as e:
            logger.warning("webhook_fallback_lookup_failed", payment_id=payment_id, error=e.message)
            return None

        if not payment.buyer_address:
            return None
        order = await self.repository.get_latest_order_by_email(payment.buyer_address)
        if order is not None:
            logger.info("webhook_order_found_by_email", order_id=order.order_id)
        return order

    # -------------------------------------------------------------------------
    # POLL
    # -------------------------------------------------------------------------

    async def verify_payment(self, order_id: str) -> VerifyResult:
        order = await self.repository.get_order(order_id)
        if order is None:
            raise OrderNotFoundError("Order not found")

        if order.status == OrderStatus.SUCCESS:
            return VerifyResult(
                success=True,
                payment_status=OrderStatus.SUCCESS.value,
                services=order.entitled_services,
                message="Payment verified successfully",
            )
        if order.status == OrderStatus.EXPIRED:
            return VerifyResult(
                success=True,
                payment_status=OrderStatus.EXPIRED.value,
                message="Payment session expired. Please try again.",
            )
        if order.status == OrderStatus.FAILED:
            return VerifyResult(
                success=True,
                payment_status=OrderStatus.FAILED.value,
                message="Payment failed.",
            )

        payment = await self._resolve_payment(order)
        if payment is None:
            return VerifyResult(
                success=True,
                payment_status=OrderStatus.PENDING.value,
                message="Payment is still being processed...",
            )

        result = await self.engine.fulfill(order, payment, payment.resolved_id)
        if result.verified:
            return VerifyResult(
                success=True,
                payment_status=OrderStatus.SUCCESS.value,
                services=order.entitled_services,
                message="Payment verified successfully",
            )
        if result.status in (AMOUNT_MISMATCH, REQUEST_ID_MISMATCH):
            return VerifyResult(
                success=False,
                payment_status=OrderStatus.FAILED.value,
                message=f"Verification failed: {result.status}",
            )
        if result.status == FAILED_STATUS:
            return VerifyResult(
                success=True,
                payment_status=OrderStatus.FAILED.value,
                message="Payment failed.",
            )
        return VerifyResult(
            success=True,
            payment_status=OrderStatus.PENDING.value,
            message="Payment is still being processed...",
        )

    async def _resolve_payment(self, order: Order) -> Optional[PaymentRecord]:
        """Payment by recorded id, else the first Credit payment under the request."""
        if order.payment_id:
            try:
                payment = await self.gateway.get_payment(order.payment_id)
                if payment.status in (CREDIT_STATUS, FAILED_STATUS):
                    return payment
            except GatewayError as e:
                logger.warning("payment_lookup_failed", order_id=order.order_id, error=e.message)

        if order.payment_request_id:
            try:
                return await self.gateway.find_credited_payment(order.payment_request_id)
            except GatewayError as e:
                logger.warning("payment_request_lookup_failed", order_id=order.order_id, error=e.message)
        return None
