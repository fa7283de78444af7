# schemas/__init__.py
# ============================================================================
# TLANGAU SERVER - SCHEMAS MODULE
# ============================================================================
# Ledger entities, order state machine, service catalog, API request models
# ============================================================================

from schemas.ledger_models import (
    AccessCode,
    Entitlement,
    FulfillmentResult,
    InvalidTransitionError,
    Order,
    OrderStatus,
    PaymentRecord,
    can_transition,
    validate_transition,
)

__all__ = [
    "AccessCode",
    "Entitlement",
    "FulfillmentResult",
    "InvalidTransitionError",
    "Order",
    "OrderStatus",
    "PaymentRecord",
    "can_transition",
    "validate_transition",
]
