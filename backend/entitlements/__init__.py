# entitlements/__init__.py
# ============================================================================
# TLANGAU SERVER - ENTITLEMENTS MODULE
# ============================================================================
# Code redemption, per-service authorization, TTL caches
# ============================================================================

from entitlements.cache import TTLCache
from entitlements.gate import (
    EntitlementConfig,
    EntitlementError,
    EntitlementGate,
    RedeemReason,
    RedeemResult,
    ServiceNotPurchasedError,
)

__all__ = [
    "TTLCache",
    "EntitlementConfig",
    "EntitlementError",
    "EntitlementGate",
    "RedeemReason",
    "RedeemResult",
    "ServiceNotPurchasedError",
]
