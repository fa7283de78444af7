"""
Payment Gateway Client - Instamojo v1.1
=======================================
Thin async wrapper around the provider's HTTP API.

- create_payment_request: one payment link per order (never retried, a
  retry could mint a second link for the same order)
- get_payment / find_credited_payment: idempotent status reads, retried
  on timeouts and 5xx
- Every call has a fixed timeout; a timeout is a retryable failure,
  never a success
- Circuit breaker stops hammering the provider while it is down
"""

import asyncio
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import BaseModel

from payments.circuit_breaker import CircuitBreaker, CircuitOpenError, with_circuit_breaker
from schemas.ledger_models import CREDIT_STATUS, PaymentRecord

logger = structlog.get_logger().bind(component="gateway_client")


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class InstamojoConfig:
    """Provider credentials and call limits."""
    api_key: str = ""
    auth_token: str = ""
    private_salt: str = ""
    environment: str = "test"
    api_base: str = "https://www.instamojo.com/api/1.1"
    create_timeout_seconds: float = 15.0
    status_timeout_seconds: float = 10.0
    status_retries: int = 1

    @classmethod
    def from_env(cls) -> "InstamojoConfig":
        return cls(
            api_key=os.getenv("INSTAMOJO_API_KEY", ""),
            auth_token=os.getenv("INSTAMOJO_AUTH_TOKEN", ""),
            private_salt=os.getenv("INSTAMOJO_PRIVATE_SALT", ""),
            environment=os.getenv("INSTAMOJO_ENV", "test"),
            api_base=os.getenv("INSTAMOJO_API_BASE", "https://www.instamojo.com/api/1.1"),
            create_timeout_seconds=float(os.getenv("INSTAMOJO_CREATE_TIMEOUT", "15.0")),
            status_timeout_seconds=float(os.getenv("INSTAMOJO_STATUS_TIMEOUT", "10.0")),
            status_retries=int(os.getenv("INSTAMOJO_STATUS_RETRIES", "1")),
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.auth_token)


# =============================================================================
# ERRORS
# =============================================================================

class GatewayError(Exception):
    """Provider refused or failed a call"""

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail


class GatewayUnavailable(GatewayError):
    """Transport failure, 5xx, or open circuit"""
    retryable = True


class GatewayTimeout(GatewayUnavailable):
    """No answer within the call's timeout"""


class GatewayNotConfigured(GatewayError):
    pass


def extract_error_message(body: Any, default: str = "Failed to create payment link") -> str:
    """Pull a human-readable message out of a provider error body."""
    if not isinstance(body, dict):
        return default
    message = body.get("message")
    if isinstance(message, dict) and message:
        first = message[next(iter(message))]
        return str(first[0]) if isinstance(first, list) and first else str(first)
    if isinstance(message, str) and message:
        return message
    error = body.get("error")
    if error:
        return error if isinstance(error, str) else str(error)
    return default


# =============================================================================
# MODELS
# =============================================================================

class PaymentLink(BaseModel):
    id: str
    longurl: str
    status: Optional[str] = None


# =============================================================================
# INTERFACE
# =============================================================================

class IPaymentGateway(ABC):

    @property
    @abstractmethod
    def configured(self) -> bool:
        pass

    @abstractmethod
    async def create_payment_request(
        self,
        *,
        purpose: str,
        amount: int,
        email: str,
        buyer_name: str,
        redirect_url: str,
        webhook_url: str,
    ) -> PaymentLink:
        pass

    @abstractmethod
    async def get_payment(self, payment_id: str) -> PaymentRecord:
        pass

    @abstractmethod
    async def get_payment_request(self, request_id: str) -> Dict[str, Any]:
        pass

    async def find_credited_payment(self, request_id: str) -> Optional[PaymentRecord]:
        """First payment under the request that reached the success sentinel."""
        payment_request = await self.get_payment_request(request_id)
        payments: List[Dict[str, Any]] = payment_request.get("payments") or []
        for payment in payments:
            if isinstance(payment, dict) and payment.get("status") == CREDIT_STATUS:
                return PaymentRecord.model_validate(payment)
        return None

    async def close(self) -> None:
        pass


# =============================================================================
# INSTAMOJO CLIENT
# =============================================================================

class InstamojoClient(IPaymentGateway):
    """
    Instamojo REST client.

    Example:
        client = InstamojoClient()
        link = await client.create_payment_request(purpose="Tlangau: Ring Notification", ...)
        payment = await client.get_payment("MOJO5a06005J21512197")
    """

    def __init__(
        self,
        config: Optional[InstamojoConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.config = config or InstamojoConfig.from_env()
        self.breaker = breaker or CircuitBreaker("instamojo")
        self._client = http_client or httpx.AsyncClient(
            base_url=self.config.api_base,
            headers={
                "X-Api-Key": self.config.api_key,
                "X-Auth-Token": self.config.auth_token,
            },
            timeout=self.config.status_timeout_seconds,
        )

    @property
    def configured(self) -> bool:
        return self.config.configured

    async def close(self) -> None:
        await self._client.aclose()

    @with_circuit_breaker("breaker", trip_on=(GatewayUnavailable,))
    async def _guarded_request(
        self,
        method: str,
        path: str,
        timeout: float,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, data=data, timeout=timeout)
        except httpx.TimeoutException as e:
            raise GatewayTimeout(f"Provider timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            raise GatewayUnavailable(f"Provider unreachable: {type(e).__name__}") from e

        if response.status_code >= 500:
            raise GatewayUnavailable(
                f"Provider error {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise GatewayError("Provider returned a non-JSON body", status_code=response.status_code) from e

        if not isinstance(body, dict):
            raise GatewayError(
                "Provider returned an unexpected response",
                status_code=response.status_code,
                detail=body,
            )

        if response.status_code >= 400 or not body.get("success"):
            raise GatewayError(
                extract_error_message(body, default="Provider rejected the request"),
                status_code=response.status_code,
                detail=body,
            )
        return body

    async def _request(self, method: str, path: str, timeout: float, data=None) -> Dict[str, Any]:
        if not self.configured:
            raise GatewayNotConfigured("Payment gateway not configured.")
        try:
            return await self._guarded_request(method, path, timeout, data)
        except CircuitOpenError as e:
            raise GatewayUnavailable(str(e)) from e

    async def _read_with_retry(self, path: str) -> Dict[str, Any]:
        attempts = self.config.status_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._request("GET", path, self.config.status_timeout_seconds)
            except GatewayUnavailable as e:
                logger.warning(
                    "gateway_read_failed",
                    path=path,
                    attempt=attempt,
                    attempts=attempts,
                    error=str(e),
                )
                if attempt == attempts:
                    raise
                await asyncio.sleep(0.5 * 2 ** (attempt - 1))
        raise GatewayUnavailable("unreachable")

    async def create_payment_request(
        self,
        *,
        purpose: str,
        amount: int,
        email: str,
        buyer_name: str,
        redirect_url: str,
        webhook_url: str,
    ) -> PaymentLink:
        body = await self._request(
            "POST",
            "/payment-requests/",
            self.config.create_timeout_seconds,
            data={
                "purpose": purpose,
                "amount": str(amount),
                "buyer_name": buyer_name,
                "email": email,
                "redirect_url": redirect_url,
                "webhook": webhook_url,
                "allow_repeated_payments": "False",
            },
        )
        link = PaymentLink.model_validate(body["payment_request"])
        logger.info("payment_link_created", payment_request_id=link.id, amount=amount)
        return link

    async def get_payment(self, payment_id: str) -> PaymentRecord:
        body = await self._read_with_retry(f"/payments/{payment_id}/")
        return PaymentRecord.model_validate(body.get("payment") or {})

    async def get_payment_request(self, request_id: str) -> Dict[str, Any]:
        body = await self._read_with_retry(f"/payment-requests/{request_id}/")
        return body.get("payment_request") or {}
