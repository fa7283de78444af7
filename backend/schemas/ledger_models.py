# schemas/ledger_models.py
# ============================================================================
# TLANGAU SERVER - LEDGER SCHEMAS
# ============================================================================
# Purpose: Typed views over stored orders and access codes, the service
# catalog, the order state machine, and the provider payment record.
#
# Stored documents are plain dicts; these models are built from them at
# the repository boundary. Unknown fields are preserved (extra="allow")
# so that records written by older code survive a read-modify cycle.
# ============================================================================

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# SECTION 1: SERVICE CATALOG
# ============================================================================

SERVICE_PRICE = 10  # INR per paid service
CURRENCY = "INR"

PAID_SERVICES: Dict[str, Dict[str, Any]] = {
    "ring": {"name": "Ring Notification", "price": SERVICE_PRICE},
    "message": {"name": "Message Notification", "price": SERVICE_PRICE},
    "broadcast": {"name": "Broadcast Message", "price": SERVICE_PRICE},
}
PAID_SERVICE_IDS: List[str] = list(PAID_SERVICES)

FREE_SERVICES: Dict[str, str] = {"statistics": "Statistics & Insights"}
FREE_SERVICE_IDS: List[str] = list(FREE_SERVICES)

ACCESS_CODE_VALIDITY = timedelta(days=30)


def service_name(service_id: str) -> str:
    if service_id in PAID_SERVICES:
        return PAID_SERVICES[service_id]["name"]
    return FREE_SERVICES.get(service_id, service_id)


def with_free_services(services: List[str]) -> List[str]:
    """Ordered union of the given services and the always-free set."""
    merged: List[str] = []
    for service_id in list(services) + FREE_SERVICE_IDS:
        if service_id not in merged:
            merged.append(service_id)
    return merged


def order_amount_minor(services: List[str]) -> int:
    """Amount in paise for a deduplicated service selection."""
    return len(services) * SERVICE_PRICE * 100


# ============================================================================
# SECTION 2: TIME
# ============================================================================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def _coerce_datetime(value: Any) -> Any:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if isinstance(value, datetime) and value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


# ============================================================================
# SECTION 3: ORDER STATE MACHINE
# ============================================================================

class OrderStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


# SUCCESS is the only state nothing leaves. A verified Credit payment may
# still land on an order that was marked FAILED or swept to EXPIRED.
ORDER_TRANSITIONS: Dict[OrderStatus, frozenset] = {
    OrderStatus.PENDING: frozenset({OrderStatus.SUCCESS, OrderStatus.FAILED, OrderStatus.EXPIRED}),
    OrderStatus.SUCCESS: frozenset({OrderStatus.SUCCESS}),
    OrderStatus.FAILED: frozenset({OrderStatus.FAILED, OrderStatus.SUCCESS}),
    OrderStatus.EXPIRED: frozenset({OrderStatus.SUCCESS}),
}

TERMINAL_STATUSES = frozenset({OrderStatus.SUCCESS, OrderStatus.FAILED, OrderStatus.EXPIRED})


class InvalidTransitionError(ValueError):
    def __init__(self, current: OrderStatus, target: OrderStatus):
        super().__init__(f"Illegal order transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS[OrderStatus(current)]


def validate_transition(current: OrderStatus, target: OrderStatus) -> OrderStatus:
    """Return target if current -> target is legal, raise otherwise."""
    current, target = OrderStatus(current), OrderStatus(target)
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)
    return target


# ============================================================================
# SECTION 4: LEDGER ENTITIES
# ============================================================================

class Order(BaseModel):
    """A purchase attempt for a set of services"""
    model_config = ConfigDict(extra="allow")

    order_id: str
    email: str = ""
    amount: int = Field(ge=0, description="Minor units (paise)")
    status: OrderStatus = OrderStatus.PENDING
    services: Optional[List[str]] = None
    payment_request_id: Optional[str] = None
    payment_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    code_emails_sent: int = 0

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_as_int(cls, v):
        return int(round(float(v or 0)))

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, v):
        return (v or "").strip().lower()

    @field_validator("created_at", "updated_at", "paid_at", mode="before")
    @classmethod
    def _parse_time(cls, v):
        return _coerce_datetime(v)

    @property
    def amount_major(self) -> float:
        return self.amount / 100

    @property
    def entitled_services(self) -> List[str]:
        """Orders written before service selection existed get the full catalog."""
        return list(self.services) if self.services else list(PAID_SERVICE_IDS)

    def transition_to(self, new_status: OrderStatus) -> OrderStatus:
        return validate_transition(self.status, new_status)


class AccessCode(BaseModel):
    """Single-use credential minted for a fulfilled order"""
    model_config = ConfigDict(extra="allow")

    code: str
    order_id: Optional[str] = None
    email: str = ""
    payment_id: Optional[str] = None
    services: Optional[List[str]] = None
    used: bool = False
    used_by_account: Optional[str] = None
    used_by_email: Optional[str] = None
    used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, v):
        return (v or "").strip().lower()

    @field_validator("used", mode="before")
    @classmethod
    def _truthy_used(cls, v):
        return bool(v)

    @field_validator("used_at", "created_at", "expires_at", mode="before")
    @classmethod
    def _parse_time(cls, v):
        return _coerce_datetime(v)

    def is_expired(self, now: datetime) -> bool:
        # a record without an expiry never expires
        return self.expires_at is not None and self.expires_at <= now

    @property
    def purchased_services(self) -> List[str]:
        return list(self.services) if self.services else list(PAID_SERVICE_IDS)

    @property
    def entitled_services(self) -> List[str]:
        return with_free_services(self.purchased_services)


class Entitlement(BaseModel):
    """Resolved service set for an authenticated caller (derived, never stored)"""
    email: str
    code: str
    services: List[str]
    expires_at: Optional[datetime] = None

    def allows(self, service_id: str) -> bool:
        return service_id in self.services


class FulfillmentResult(BaseModel):
    verified: bool
    status: str
    code: Optional[str] = None
    code_minted: bool = False
    email_sent: Optional[bool] = None


# ============================================================================
# SECTION 5: PROVIDER PAYMENT RECORD
# ============================================================================

CREDIT_STATUS = "Credit"
FAILED_STATUS = "Failed"


class PaymentRecord(BaseModel):
    """Payment detail as returned by the provider (only the fields we read)"""
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    payment_id: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[Union[str, float, int]] = None
    buyer_email: Optional[str] = None
    email: Optional[str] = None
    buyer: Optional[str] = None
    payment_request: Optional[Union[Dict[str, Any], str]] = None
    payment_request_id: Optional[str] = None

    @property
    def resolved_id(self) -> Optional[str]:
        return self.id or self.payment_id

    @property
    def amount_value(self) -> Optional[float]:
        try:
            return float(self.amount)
        except (TypeError, ValueError):
            return None

    @property
    def request_id(self) -> Optional[str]:
        """
        The payment request this payment belongs to.

        The provider returns either an embedded object or a resource URL
        ending in the request id.
        """
        if isinstance(self.payment_request, dict) and self.payment_request.get("id"):
            return self.payment_request["id"]
        if isinstance(self.payment_request, str) and self.payment_request:
            return self.payment_request.rstrip("/").rsplit("/", 1)[-1]
        return self.payment_request_id

    @property
    def buyer_address(self) -> Optional[str]:
        address = self.buyer_email or self.email or self.buyer
        return address.strip().lower() if address else None
