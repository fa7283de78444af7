"""
Identity Verifier - Google bearer tokens
========================================
Resolves "Authorization: Bearer <token>" to a lowercase email through the
Google userinfo endpoint. Results are cached per token for 10 minutes.
"""

import os
from typing import Optional

import httpx
import structlog

from entitlements.cache import TTLCache

logger = structlog.get_logger().bind(component="identity")

USERINFO_URL = os.getenv("GOOGLE_USERINFO_URL", "https://www.googleapis.com/oauth2/v3/userinfo")


class IdentityProviderUnavailable(Exception):
    """The provider timed out or could not be reached. Retryable."""


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization.split(" ", 1)[1].strip()
    return token or None


class GoogleIdentityVerifier:

    def __init__(
        self,
        token_cache: Optional[TTLCache] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 10.0,
    ):
        self.token_cache = token_cache if token_cache is not None else TTLCache(600.0)
        self.timeout_seconds = timeout_seconds
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    async def close(self) -> None:
        await self._client.aclose()

    async def verify(self, authorization: Optional[str]) -> Optional[str]:
        """Email for the bearer token, or None if the token is missing or rejected."""
        token = bearer_token(authorization)
        if token is None:
            return None

        cached = self.token_cache.get(token)
        if cached is not None:
            return cached

        try:
            response = await self._client.get(
                USERINFO_URL,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            logger.warning("identity_timeout", timeout=self.timeout_seconds)
            raise IdentityProviderUnavailable("Identity provider timed out") from e
        except httpx.HTTPError as e:
            logger.warning("identity_unreachable", error=type(e).__name__)
            raise IdentityProviderUnavailable("Identity provider unreachable") from e

        if response.status_code >= 500:
            raise IdentityProviderUnavailable(f"Identity provider error {response.status_code}")
        if response.status_code != 200:
            logger.info("identity_rejected", status=response.status_code)
            return None

        try:
            email = (response.json() or {}).get("email")
        except ValueError:
            return None
        if not email:
            return None

        email = email.strip().lower()
        self.token_cache.set(token, email)
        return email
