"""
Per-client fixed-window rate limiting.

Counters are keyed "{bucket}:{client_ip}" and reset when the window
rolls over. Process-local. Rolled-over windows are purged once the
tracked key count reaches max_keys.
"""

import os
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

import structlog
from fastapi import Request

logger = structlog.get_logger().bind(component="rate_limit")

WINDOW_SECONDS = 15 * 60

# X-Forwarded-For is only honoured behind a proxy that sets it
TRUST_PROXY = os.getenv("TRUST_PROXY", "false").lower() in ("1", "true", "yes")
MAX_TRACKED_KEYS = int(os.getenv("RATE_LIMIT_MAX_KEYS", "10000"))


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    message: str
    window_seconds: int = WINDOW_SECONDS


DEFAULT_RULES: Dict[str, RateLimitRule] = {
    "general": RateLimitRule(
        int(os.getenv("RATE_LIMIT_GENERAL", "100")),
        "Too many requests. Please try again later.",
    ),
    "payment": RateLimitRule(
        int(os.getenv("RATE_LIMIT_PAYMENT", "10")),
        "Too many payment attempts. Please wait a few minutes.",
    ),
    "auth": RateLimitRule(
        int(os.getenv("RATE_LIMIT_AUTH", "5")),
        "Too many login attempts. Please try again later.",
    ),
    "notifications": RateLimitRule(
        int(os.getenv("RATE_LIMIT_NOTIFICATIONS", "30")),
        "Notification rate limit exceeded. Please wait a few minutes.",
    ),
}


class RateLimitExceeded(Exception):

    def __init__(self, bucket: str, message: str, retry_after: int):
        super().__init__(message)
        self.bucket = bucket
        self.message = message
        self.retry_after = retry_after


class RateLimiter:

    def __init__(
        self,
        rules: Dict[str, RateLimitRule] = None,
        clock: Callable[[], float] = time.monotonic,
        trust_proxy: bool = TRUST_PROXY,
        max_keys: int = MAX_TRACKED_KEYS,
    ):
        self.rules = dict(rules or DEFAULT_RULES)
        self.trust_proxy = trust_proxy
        self.max_keys = max_keys
        self._clock = clock
        # key -> (window start, count)
        self._windows: Dict[str, Tuple[float, int]] = {}

    def check(self, bucket: str, client: str) -> int:
        """Count one hit. Returns remaining hits, raises RateLimitExceeded past the limit."""
        rule = self.rules[bucket]
        key = f"{bucket}:{client}"
        now = self._clock()

        started, count = self._windows.get(key, (now, 0))
        if now - started >= rule.window_seconds:
            started, count = now, 0

        if count >= rule.limit:
            retry_after = int(rule.window_seconds - (now - started)) + 1
            logger.info("rate_limit_exceeded", bucket=bucket, client=client)
            raise RateLimitExceeded(bucket, rule.message, retry_after)

        if key not in self._windows and len(self._windows) >= self.max_keys:
            self.purge_expired(now)
        self._windows[key] = (started, count + 1)
        return rule.limit - count - 1

    def purge_expired(self, now: float = None) -> int:
        """Drop windows that have rolled over. Returns how many were dropped."""
        now = self._clock() if now is None else now
        expired = [
            key for key, (started, _) in self._windows.items()
            if now - started >= self.rules[key.split(":", 1)[0]].window_seconds
        ]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def client_key(self, request: Request) -> str:
        return client_ip(request, self.trust_proxy)

    def reset(self) -> None:
        self._windows.clear()

    def __len__(self) -> int:
        return len(self._windows)


def client_ip(request: Request, trust_proxy: bool = TRUST_PROXY) -> str:
    forwarded = request.headers.get("x-forwarded-for") if trust_proxy else None
    if forwarded:
        # the proxy appends the address it saw; earlier entries are client-supplied
        return forwarded.split(",")[-1].strip()
    return request.client.host if request.client else "unknown"


def limit(bucket: str):
    """FastAPI dependency counting the request against one bucket."""
    async def dependency(request: Request) -> None:
        limiter = request.app.state.services.rate_limiter
        limiter.check(bucket, limiter.client_key(request))
    return dependency
