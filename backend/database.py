"""
Database Module - The Ledger
============================
Domain-level persistence for orders and access codes, on top of a
ledger store.

This module provides:
- Order CRUD with validated status transitions (compare-and-set on status)
- Access code CRUD, the order -> code claim and the account redemption claim
- Admin deletions with cascade to codes and claims
- Statistics and per-user summaries
- Bundles/topics tree used by the notification routes
- The Black Box (system_events) for operational alerts
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

import structlog
from pydantic import ValidationError

from schemas.ledger_models import (
    AccessCode,
    InvalidTransitionError,
    Order,
    OrderStatus,
    to_iso,
    utc_now,
    validate_transition,
)
from storage.ledger_store import (
    ACCESS_CODES,
    ACCOUNT_REDEMPTIONS,
    BUNDLE_TOPICS,
    BUNDLES,
    ILedgerStore,
    ORDER_CODE_CLAIMS,
    ORDERS,
    SYSTEM_EVENTS,
)

logger = structlog.get_logger().bind(component="database")

Severity = Literal["DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_SEVERITY_METHODS = {
    "DEBUG": "debug",
    "INFO": "info",
    "WARN": "warning",
    "ERROR": "error",
    "CRITICAL": "critical",
}


def _newest_first(records: List[Any]) -> List[Any]:
    return sorted(records, key=lambda r: r.created_at or _EPOCH, reverse=True)


def _valid(model, records: List[Dict[str, Any]], collection: str) -> List[Any]:
    """Validate records, skipping and logging any that do not parse."""
    parsed = []
    for record in records:
        try:
            parsed.append(model.model_validate(record))
        except ValidationError as e:
            logger.error("ledger_record_invalid", collection=collection, error_count=e.error_count(),
                         keys=sorted(record)[:10])
    return parsed


class LedgerRepository:
    """Orders, access codes and their claims, over an ILedgerStore."""

    def __init__(self, store: ILedgerStore, clock=utc_now):
        self.store = store
        self._clock = clock

    # =========================================================================
    # THE BLACK BOX: Event Logging
    # =========================================================================

    async def log_event(
        self,
        event_type: str,
        payload: Dict[str, Any],
        entity_id: Optional[str] = None,
        severity: Severity = "INFO",
    ) -> str:
        """
        Record an operational event.

        Goes to the structured log first, then to system_events. A store
        failure here is logged and swallowed so that an alert never masks
        the operation that raised it.
        """
        event_id = str(uuid4())
        timestamp = to_iso(self._clock())

        log_method = getattr(logger, _SEVERITY_METHODS.get(severity, "info"))
        log_method(event_type, event_id=event_id[:8], entity_id=entity_id, **payload)

        try:
            await self.store.put(SYSTEM_EVENTS, f"{timestamp}_{event_id}", {
                "event_id": event_id,
                "event_type": event_type,
                "entity_id": entity_id,
                "payload": payload,
                "severity": severity,
                "timestamp": timestamp,
            })
        except Exception as e:
            logger.error("event_persist_failed", event_type=event_type, error=str(e))

        return event_id

    async def recent_events(self, limit: int = 50, severity: Optional[str] = None) -> List[Dict[str, Any]]:
        if severity:
            events = await self.store.find_all_by(SYSTEM_EVENTS, "severity", severity)
        else:
            events = await self.store.all(SYSTEM_EVENTS)
        events.sort(key=lambda e: e.get("timestamp", ""), reverse=True)
        return events[:limit]

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def create_order(self, order: Order) -> Order:
        now = self._clock()
        order = order.model_copy(update={"created_at": now, "updated_at": now})
        await self.store.put(ORDERS, order.order_id, order.model_dump(mode="json", exclude_none=True))
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        record = await self.store.get(ORDERS, order_id)
        return Order.model_validate(record) if record else None

    async def update_order(self, order_id: str, updates: Dict[str, Any]) -> None:
        """Merge non-status fields into an order."""
        if "status" in updates:
            raise ValueError("Use transition_order to change status")
        await self.store.patch(ORDERS, order_id, {**updates, "updated_at": to_iso(self._clock())})

    async def transition_order(
        self,
        order_id: str,
        target: OrderStatus,
        updates: Optional[Dict[str, Any]] = None,
        max_attempts: int = 3,
    ) -> Order:
        """
        Move an order to target, validated against its stored status.

        The write is conditional on the status read just before it, so a
        concurrent writer cannot slip an illegal transition in between.
        Raises InvalidTransitionError or LookupError.
        """
        for _ in range(max_attempts):
            order = await self.get_order(order_id)
            if order is None:
                raise LookupError(f"Order {order_id} not found")

            validate_transition(order.status, target)
            partial = {
                **(updates or {}),
                "status": OrderStatus(target).value,
                "updated_at": to_iso(self._clock()),
            }
            if await self.store.compare_and_patch(
                ORDERS, order_id, {"status": order.status.value}, partial
            ):
                return await self.get_order(order_id)

            logger.warning("order_transition_conflict", order_id=order_id, target=OrderStatus(target).value)

        raise InvalidTransitionError(order.status, OrderStatus(target))

    async def get_order_by_payment_request_id(self, payment_request_id: str) -> Optional[Order]:
        record = await self.store.find_one_by(ORDERS, "payment_request_id", payment_request_id)
        return Order.model_validate(record) if record else None

    async def get_orders_by_email(self, email: str) -> List[Order]:
        records = await self.store.find_all_by(ORDERS, "email", email.strip().lower())
        return _newest_first(_valid(Order, records, ORDERS))

    async def get_latest_order_by_email(self, email: str) -> Optional[Order]:
        orders = await self.get_orders_by_email(email)
        return orders[0] if orders else None

    async def list_orders(self) -> List[Order]:
        return _newest_first(_valid(Order, await self.store.all(ORDERS), ORDERS))

    async def find_stale_pending_orders(self, older_than: datetime) -> List[Order]:
        records = await self.store.find_all_by(ORDERS, "status", OrderStatus.PENDING.value)
        orders = _valid(Order, records, ORDERS)
        return [o for o in orders if (o.created_at or _EPOCH) < older_than]

    async def increment_code_emails(self, order_id: str) -> Optional[int]:
        """New per-order email count, or None if the order no longer exists."""
        return await self.store.increment(ORDERS, order_id, "code_emails_sent", 1, create=False)

    # =========================================================================
    # ACCESS CODES
    # =========================================================================

    async def create_access_code(self, access_code: AccessCode) -> bool:
        """Persist a new code. False if a record with that code already exists."""
        record = access_code.model_dump(mode="json", exclude_none=True)
        record.setdefault("created_at", to_iso(self._clock()))
        return await self.store.put_if_absent(ACCESS_CODES, access_code.code, record)

    async def get_access_code(self, code: str) -> Optional[AccessCode]:
        record = await self.store.get(ACCESS_CODES, code)
        return AccessCode.model_validate(record) if record else None

    async def get_code_by_order_id(self, order_id: str) -> Optional[AccessCode]:
        if not order_id:
            return None
        record = await self.store.find_one_by(ACCESS_CODES, "order_id", order_id)
        return AccessCode.model_validate(record) if record else None

    async def get_latest_code_by_email(self, email: str) -> Optional[AccessCode]:
        records = await self.store.find_all_by(ACCESS_CODES, "email", email.strip().lower())
        codes = _newest_first(_valid(AccessCode, records, ACCESS_CODES))
        return codes[0] if codes else None

    async def list_access_codes(self) -> List[AccessCode]:
        return _newest_first(_valid(AccessCode, await self.store.all(ACCESS_CODES), ACCESS_CODES))

    async def claim_order_code(self, order_id: str, candidate: str) -> str:
        """
        Reserve the one code slot for an order.

        Returns the code that owns the slot: candidate if this call won,
        otherwise the code an earlier caller claimed.
        """
        created = await self.store.put_if_absent(ORDER_CODE_CLAIMS, order_id, {
            "order_id": order_id,
            "code": candidate,
            "claimed_at": to_iso(self._clock()),
        })
        if created:
            return candidate
        claim = await self.store.get(ORDER_CODE_CLAIMS, order_id)
        return claim["code"]

    async def has_account_used_code(self, account_id: str) -> bool:
        if await self.store.get(ACCOUNT_REDEMPTIONS, account_id):
            return True
        records = await self.store.find_all_by(ACCESS_CODES, "used_by_account", account_id)
        return any(r.get("used") is True for r in records)

    async def claim_account_redemption(self, account_id: str, code: str) -> bool:
        return await self.store.put_if_absent(ACCOUNT_REDEMPTIONS, account_id, {
            "account_id": account_id,
            "code": code,
            "claimed_at": to_iso(self._clock()),
        })

    async def release_account_redemption(self, account_id: str, code: str) -> None:
        claim = await self.store.get(ACCOUNT_REDEMPTIONS, account_id)
        if claim and claim.get("code") == code:
            await self.store.delete(ACCOUNT_REDEMPTIONS, account_id)

    async def mark_code_used(self, code: str, email: str, account_id: str) -> bool:
        """
        Flip a code to used. False if the code was already used or is gone.

        Older records may lack the used field; those count as unused.
        """
        return await self.store.compare_and_patch(
            ACCESS_CODES,
            code,
            {},
            {
                "used": True,
                "used_by_email": email,
                "used_by_account": account_id,
                "used_at": to_iso(self._clock()),
            },
            unless={"used": True},
        )

    # =========================================================================
    # ADMIN DELETIONS
    # =========================================================================

    async def _code_paths(self, codes: List[AccessCode]) -> List[tuple]:
        """Store paths for codes plus the claims that point at them."""
        paths = []
        for access_code in codes:
            paths.append((ACCESS_CODES, access_code.code))
            if access_code.order_id:
                claim = await self.store.get(ORDER_CODE_CLAIMS, access_code.order_id)
                if claim and claim.get("code") == access_code.code:
                    paths.append((ORDER_CODE_CLAIMS, access_code.order_id))
            if access_code.used_by_account:
                claim = await self.store.get(ACCOUNT_REDEMPTIONS, access_code.used_by_account)
                if claim and claim.get("code") == access_code.code:
                    paths.append((ACCOUNT_REDEMPTIONS, access_code.used_by_account))
        return paths

    async def delete_access_code(self, code: str) -> bool:
        access_code = await self.get_access_code(code)
        if access_code is None:
            return False
        await self.store.bulk_delete_paths(await self._code_paths([access_code]))
        return True

    async def delete_order(self, order_id: str) -> bool:
        """Delete an order and every code minted for it. False if the order is unknown."""
        records = await self.store.find_all_by(ACCESS_CODES, "order_id", order_id)
        paths = await self._code_paths([AccessCode.model_validate(r) for r in records])
        paths.append((ORDER_CODE_CLAIMS, order_id))

        exists = await self.store.get(ORDERS, order_id) is not None
        if exists:
            paths.append((ORDERS, order_id))
        await self.store.bulk_delete_paths(paths)
        return exists

    async def delete_user_by_email(self, email: str) -> Dict[str, Any]:
        email = email.strip().lower()
        orders = await self.store.find_all_by(ORDERS, "email", email)
        codes = [AccessCode.model_validate(r) for r in await self.store.find_all_by(ACCESS_CODES, "email", email)]

        paths = [(ORDERS, o["order_id"]) for o in orders]
        paths += [(ORDER_CODE_CLAIMS, o["order_id"]) for o in orders]
        paths += await self._code_paths(codes)
        if paths:
            await self.store.bulk_delete_paths(paths)

        return {
            "deleted": bool(orders or codes),
            "deleted_orders": len(orders),
            "deleted_codes": len(codes),
        }

    # =========================================================================
    # REPORTING
    # =========================================================================

    async def get_statistics(self) -> Dict[str, Any]:
        orders = await self.list_orders()
        codes = await self.list_access_codes()

        by_status = {status: 0 for status in OrderStatus}
        revenue_minor = 0
        for order in orders:
            by_status[order.status] += 1
            if order.status == OrderStatus.SUCCESS:
                revenue_minor += order.amount

        used = sum(1 for c in codes if c.used)
        return {
            "totalOrders": len(orders),
            "successfulOrders": by_status[OrderStatus.SUCCESS],
            "pendingOrders": by_status[OrderStatus.PENDING],
            "failedOrders": by_status[OrderStatus.FAILED],
            "expiredOrders": by_status[OrderStatus.EXPIRED],
            "totalRevenue": revenue_minor / 100,
            "uniqueUsers": len({o.email for o in orders if o.email}),
            "totalCodes": len(codes),
            "usedCodes": used,
            "unusedCodes": len(codes) - used,
        }

    async def get_user_summaries(self) -> List[Dict[str, Any]]:
        users: Dict[str, Dict[str, Any]] = {}
        for order in await self.list_orders():
            if not order.email:
                continue
            seen = order.created_at or order.updated_at or self._clock()
            user = users.setdefault(order.email, {
                "email": order.email,
                "totalOrders": 0,
                "successfulOrders": 0,
                "totalSpent": 0.0,
                "firstOrder": seen,
                "lastOrder": seen,
            })
            user["totalOrders"] += 1
            if order.status == OrderStatus.SUCCESS:
                user["successfulOrders"] += 1
                user["totalSpent"] += order.amount_major
            user["firstOrder"] = min(user["firstOrder"], seen)
            user["lastOrder"] = max(user["lastOrder"], seen)

        summaries = sorted(users.values(), key=lambda u: u["lastOrder"], reverse=True)
        for user in summaries:
            user["firstOrder"] = to_iso(user["firstOrder"])
            user["lastOrder"] = to_iso(user["lastOrder"])
        return summaries

    # =========================================================================
    # BUNDLES & TOPICS
    # =========================================================================

    async def save_bundle(self, bundle_id: str, name: str) -> None:
        await self.store.patch(BUNDLES, bundle_id, {"id": bundle_id, "name": name})

    async def save_topic(
        self,
        bundle_id: str,
        topic_id: str,
        name: str,
        fcm_topic_name: str,
        subscribers: int = 0,
    ) -> None:
        await self.store.patch(BUNDLE_TOPICS, f"{bundle_id}/{topic_id}", {
            "bundle_id": bundle_id,
            "id": topic_id,
            "name": name,
            "fcm_topic_name": fcm_topic_name,
            "subscribers": subscribers,
        })

    async def list_bundles(self) -> List[Dict[str, Any]]:
        bundles = []
        for bundle in await self.store.all(BUNDLES):
            topics = [
                {
                    "id": t.get("id"),
                    "name": t.get("name") or "Unknown",
                    "fcmTopicName": t.get("fcm_topic_name") or "",
                    "subscribers": int(t.get("subscribers") or 0),
                }
                for t in await self.store.find_all_by(BUNDLE_TOPICS, "bundle_id", bundle.get("id"))
            ]
            bundles.append({
                "id": bundle.get("id"),
                "name": bundle.get("name") or "Unknown",
                "topics": topics,
                "topicsCount": len(topics),
            })
        return bundles

    async def delete_bundle(self, bundle_id: str) -> bool:
        if await self.store.get(BUNDLES, bundle_id) is None:
            return False
        topics = await self.store.find_all_by(BUNDLE_TOPICS, "bundle_id", bundle_id)
        paths = [(BUNDLES, bundle_id)] + [(BUNDLE_TOPICS, f"{bundle_id}/{t['id']}") for t in topics]
        await self.store.bulk_delete_paths(paths)
        return True

    async def delete_topic(self, bundle_id: str, topic_id: str) -> bool:
        return await self.store.delete(BUNDLE_TOPICS, f"{bundle_id}/{topic_id}")
