"""
Entitlement Gate
================
Redeems access codes and answers "may this caller use service X?".

Redemption checks run in a fixed order, first failure wins:
    exists -> not expired -> not used -> account has no prior code
    -> code email matches
Cheap local checks come first, the cross-collection account check
next, the email binding last.

Only then is the account claimed and the code flipped used with a
compare-and-set, so two concurrent redemptions cannot both win.
"""

import os
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

import structlog
from pydantic import BaseModel

from database import LedgerRepository
from entitlements.cache import TTLCache
from payments.codes import normalize_code
from schemas.ledger_models import AccessCode, Entitlement, service_name, to_iso, utc_now

logger = structlog.get_logger().bind(component="entitlement_gate")


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class EntitlementConfig:
    token_cache_ttl_seconds: float = 600.0
    access_cache_ttl_seconds: float = 300.0

    @classmethod
    def from_env(cls) -> "EntitlementConfig":
        return cls(
            token_cache_ttl_seconds=float(os.getenv("TOKEN_CACHE_TTL", "600")),
            access_cache_ttl_seconds=float(os.getenv("ACCESS_CODE_CACHE_TTL", "300")),
        )


# =============================================================================
# RESULTS & ERRORS
# =============================================================================

class RedeemReason(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"
    ACCOUNT_ALREADY_REDEEMED = "account_already_redeemed"
    EMAIL_MISMATCH = "email_mismatch"


REDEEM_MESSAGES = {
    RedeemReason.NOT_FOUND: "Invalid access code",
    RedeemReason.EXPIRED: "This access code has expired. Please purchase a new code.",
    RedeemReason.ALREADY_USED: "This access code has already been used",
    RedeemReason.ACCOUNT_ALREADY_REDEEMED: (
        "This account has already used an access code. Each account can only use one code."
    ),
    RedeemReason.EMAIL_MISMATCH: (
        "This access code is not associated with your email. "
        "Please use the email address you used to purchase the code."
    ),
}


class RedeemResult(BaseModel):
    valid: bool
    message: str
    code: Optional[str] = None
    services: List[str] = []
    expires_at: Optional[datetime] = None
    reason: Optional[RedeemReason] = None

    @classmethod
    def rejected(cls, reason: RedeemReason) -> "RedeemResult":
        return cls(valid=False, reason=reason, message=REDEEM_MESSAGES[reason])

    def to_response(self) -> dict:
        if not self.valid:
            return {"success": False, "valid": False, "message": self.message}
        return {
            "success": True,
            "valid": True,
            "message": self.message,
            "code": self.code,
            "expiresAt": to_iso(self.expires_at) if self.expires_at else None,
            "services": self.services,
        }


class EntitlementError(Exception):
    """Authenticated caller without a usable entitlement (403)."""

    status_code = 403

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message


class ServiceNotPurchasedError(EntitlementError):

    def __init__(self, service_id: str):
        super().__init__(
            "service_not_purchased",
            f"You do not have access to the {service_name(service_id)} service. "
            "Please purchase this service to use it.",
        )
        self.required_service = service_id


# =============================================================================
# GATE
# =============================================================================

class EntitlementGate:
    """
    Example:
        gate = EntitlementGate(repository, TTLCache(300))
        result = await gate.redeem("AB12CD34EF56", "buyer@example.com", account_id=None)
        entitlement = await gate.authorize("buyer@example.com")
        gate.require_service(entitlement, "ring")
    """

    def __init__(
        self,
        repository: LedgerRepository,
        access_cache: Optional[TTLCache] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.access_cache = access_cache if access_cache is not None else TTLCache(300.0)
        self._clock = clock

    async def redeem(self, code: str, email: str, account_id: Optional[str] = None) -> RedeemResult:
        code = normalize_code(code)
        email = (email or "").strip().lower()
        account_id = (account_id or "").strip() or email

        access_code = await self.repository.get_access_code(code)
        if access_code is None:
            return self._reject(RedeemReason.NOT_FOUND, code, email)
        if access_code.is_expired(self._clock()):
            return self._reject(RedeemReason.EXPIRED, code, email)
        if access_code.used:
            return self._reject(RedeemReason.ALREADY_USED, code, email)
        if await self.repository.has_account_used_code(account_id):
            return self._reject(RedeemReason.ACCOUNT_ALREADY_REDEEMED, code, email)
        if access_code.email != email:
            return self._reject(RedeemReason.EMAIL_MISMATCH, code, email)

        if not await self.repository.claim_account_redemption(account_id, code):
            return self._reject(RedeemReason.ACCOUNT_ALREADY_REDEEMED, code, email)

        if not await self.repository.mark_code_used(code, email, account_id):
            await self.repository.release_account_redemption(account_id, code)
            return self._reject(RedeemReason.ALREADY_USED, code, email)

        self.access_cache.invalidate(email)
        logger.info("access_code_redeemed", code=code, email=email, account_id=account_id)

        return RedeemResult(
            valid=True,
            message="Access code is valid",
            code=code,
            services=access_code.entitled_services,
            expires_at=access_code.expires_at,
        )

    def _reject(self, reason: RedeemReason, code: str, email: str) -> RedeemResult:
        logger.info("access_code_rejected", code=code, email=email, reason=reason.value)
        return RedeemResult.rejected(reason)

    async def _latest_code(self, email: str) -> Optional[AccessCode]:
        cached = self.access_cache.get(email)
        if cached is not None:
            return cached
        access_code = await self.repository.get_latest_code_by_email(email)
        if access_code is not None:
            self.access_cache.set(email, access_code)
        return access_code

    async def authorize(self, email: str) -> Entitlement:
        """Current entitlement for an authenticated email, or EntitlementError."""
        email = email.strip().lower()
        access_code = await self._latest_code(email)
        if access_code is None:
            raise EntitlementError("not_authorized", "Server access not authorized for this account.")
        if access_code.is_expired(self._clock()):
            raise EntitlementError("expired", "Your server access code has expired.")

        return Entitlement(
            email=email,
            code=access_code.code,
            services=access_code.entitled_services,
            expires_at=access_code.expires_at,
        )

    @staticmethod
    def require_service(entitlement: Entitlement, service_id: str) -> None:
        if not entitlement.allows(service_id):
            raise ServiceNotPurchasedError(service_id)
