"""
Fulfillment Engine - The Heart
==============================
Given an order and the provider's payment record, decide whether the
order is paid, mint its access code once, and deliver it by email.

Both triggers (webhook push and client verify-poll) land here, so every
step tolerates re-entry:
- SUCCESS -> SUCCESS is a legal no-op transition
- the code slot is claimed with a create-if-absent write, under a
  per-order lock, so concurrent triggers converge on one code
- email resends are capped per order by an atomic counter
- a failed email never rolls back the payment
"""

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, Optional

import structlog

from database import LedgerRepository
from payments.codes import generate_access_code
from schemas.ledger_models import (
    ACCESS_CODE_VALIDITY,
    CREDIT_STATUS,
    FAILED_STATUS,
    AccessCode,
    FulfillmentResult,
    InvalidTransitionError,
    Order,
    OrderStatus,
    PaymentRecord,
    can_transition,
    to_iso,
    utc_now,
)

logger = structlog.get_logger().bind(component="fulfillment")

AMOUNT_TOLERANCE = 0.01
MAX_MINT_ATTEMPTS = 5

AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
REQUEST_ID_MISMATCH = "REQUEST_ID_MISMATCH"


class FulfillmentEngine:
    """
    Order + payment -> SUCCESS, one access code, one email per trigger.

    Example:
        engine = FulfillmentEngine(repository, email_service)
        result = await engine.fulfill(order, payment, payment.resolved_id)
        if result.verified:
            ...
    """

    def __init__(
        self,
        repository: LedgerRepository,
        email_service,
        clock: Callable[[], datetime] = utc_now,
        max_code_emails: int = 5,
    ):
        self.repository = repository
        self.email_service = email_service
        self._clock = clock
        self.max_code_emails = max_code_emails

        self._order_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._locks_guard = asyncio.Lock()

    async def _get_order_lock(self, order_id: str) -> asyncio.Lock:
        async with self._locks_guard:
            return self._order_locks[order_id]

    async def fulfill(
        self,
        order: Order,
        payment: PaymentRecord,
        observed_payment_id: Optional[str] = None,
    ) -> FulfillmentResult:
        payment_id = observed_payment_id or payment.resolved_id
        expected_amount = order.amount / 100

        # Not paid (yet)
        if payment.status != CREDIT_STATUS:
            if payment.status == FAILED_STATUS:
                await self._mark_failed(order, payment_id)
            return FulfillmentResult(verified=False, status=payment.status or "UNKNOWN")

        # Integrity checks: reject, never mutate
        paid_amount = payment.amount_value
        if paid_amount is None or abs(paid_amount - expected_amount) > AMOUNT_TOLERANCE:
            await self.repository.log_event(
                "FRAUD_SIGNAL",
                {
                    "reason": AMOUNT_MISMATCH,
                    "expected_amount": expected_amount,
                    "paid_amount": paid_amount,
                    "payment_id": payment_id,
                },
                entity_id=order.order_id,
                severity="WARN",
            )
            return FulfillmentResult(verified=False, status=AMOUNT_MISMATCH)

        paid_request_id = payment.request_id
        if order.payment_request_id and paid_request_id and paid_request_id != order.payment_request_id:
            await self.repository.log_event(
                "FRAUD_SIGNAL",
                {
                    "reason": REQUEST_ID_MISMATCH,
                    "expected_request_id": order.payment_request_id,
                    "paid_request_id": paid_request_id,
                    "payment_id": payment_id,
                },
                entity_id=order.order_id,
                severity="WARN",
            )
            return FulfillmentResult(verified=False, status=REQUEST_ID_MISMATCH)

        lock = await self._get_order_lock(order.order_id)
        async with lock:
            current = await self.repository.get_order(order.order_id) or order
            updates = {}
            if payment_id:
                updates["payment_id"] = payment_id
            if current.status != OrderStatus.SUCCESS or current.paid_at is None:
                updates["paid_at"] = to_iso(self._clock())
            current = await self.repository.transition_order(order.order_id, OrderStatus.SUCCESS, updates)

            access_code, minted = await self._ensure_access_code(current, payment_id)

        email_sent = await self._deliver(current, access_code)

        logger.info(
            "order_fulfilled",
            order_id=order.order_id,
            code_minted=minted,
            email_sent=email_sent,
        )
        return FulfillmentResult(
            verified=True,
            status=OrderStatus.SUCCESS.value,
            code=access_code.code,
            code_minted=minted,
            email_sent=email_sent,
        )

    async def _mark_failed(self, order: Order, payment_id: Optional[str]) -> None:
        current = await self.repository.get_order(order.order_id) or order
        if not can_transition(current.status, OrderStatus.FAILED):
            return
        try:
            await self.repository.transition_order(
                order.order_id,
                OrderStatus.FAILED,
                {"payment_id": payment_id} if payment_id else None,
            )
        except InvalidTransitionError:
            # paid between the read and the write
            logger.info("order_failure_skipped", order_id=order.order_id)
            return
        logger.info("order_payment_failed", order_id=order.order_id, payment_id=payment_id)

    async def _ensure_access_code(self, order: Order, payment_id: Optional[str]):
        """Existing code for the order, or a freshly minted one. Returns (code, minted)."""
        existing = await self.repository.get_code_by_order_id(order.order_id)
        if existing is not None:
            return existing, False

        candidate = None
        for _ in range(MAX_MINT_ATTEMPTS):
            candidate = generate_access_code()
            if await self.repository.get_access_code(candidate) is None:
                break
            logger.warning("access_code_collision", order_id=order.order_id)
        else:
            raise RuntimeError(f"Could not generate a unique access code for {order.order_id}")

        code = await self.repository.claim_order_code(order.order_id, candidate)

        now = self._clock()
        access_code = AccessCode(
            code=code,
            order_id=order.order_id,
            email=order.email,
            payment_id=payment_id,
            services=order.entitled_services,
            used=False,
            created_at=now,
            expires_at=now + ACCESS_CODE_VALIDITY,
        )
        created = await self.repository.create_access_code(access_code)
        if not created:
            stored = await self.repository.get_access_code(code)
            return (stored or access_code), False

        await self.repository.log_event(
            "ACCESS_CODE_MINTED",
            {"email": order.email, "services": access_code.services},
            entity_id=order.order_id,
        )
        return access_code, code == candidate

    async def resend_access_code(self, access_code: AccessCode) -> bool:
        """Admin-triggered resend, counted against the same per-order cap."""
        order = await self.repository.get_order(access_code.order_id) if access_code.order_id else None
        if order is None:
            return await self.email_service.send_access_code(
                access_code.email, access_code.code, access_code.purchased_services
            )
        return await self._deliver(order, access_code)

    async def _deliver(self, order: Order, access_code: AccessCode) -> bool:
        sent_count = await self.repository.increment_code_emails(order.order_id)
        if sent_count is None:
            # order deleted mid-fulfillment; the code still goes out, uncapped
            logger.warning("code_email_order_missing", order_id=order.order_id)
        elif sent_count > self.max_code_emails:
            logger.warning(
                "code_email_capped",
                order_id=order.order_id,
                sent=sent_count - 1,
                max=self.max_code_emails,
            )
            return False

        try:
            delivered = await self.email_service.send_access_code(
                order.email, access_code.code, access_code.purchased_services
            )
        except Exception as e:
            logger.error("code_email_error", order_id=order.order_id, error=str(e))
            delivered = False

        if not delivered:
            await self.repository.log_event(
                "EMAIL_DELIVERY_FAILED",
                {
                    "email": order.email,
                    "code": access_code.code,
                    "attempt": sent_count,
                    "requires_manual_intervention": True,
                },
                entity_id=order.order_id,
                severity="CRITICAL",
            )
        return delivered
