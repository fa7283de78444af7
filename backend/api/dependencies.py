"""
Server configuration, the service container, and request dependencies.
"""

import hashlib
import hmac
import os
from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import Depends, Header, Request

from api.errors import ApiError
from api.rate_limit import RateLimiter
from database import LedgerRepository
from entitlements.cache import TTLCache
from entitlements.gate import EntitlementConfig, EntitlementGate
from payments.fulfillment import FulfillmentEngine
from payments.gateway_client import InstamojoClient, InstamojoConfig, IPaymentGateway
from payments.webhooks import PaymentVerifier
from schemas.ledger_models import Entitlement
from services.email_service import EmailService
from services.identity import GoogleIdentityVerifier, IdentityProviderUnavailable
from services.push_service import FirebasePushTransport, PushService
from storage.ledger_store import ILedgerStore, InMemoryLedgerStore
from storage.postgres_store import Database, PostgresLedgerStore
from storage.postgres_store import config as db_config
from tasks.order_sweep import OrderSweeper

logger = structlog.get_logger().bind(component="dependencies")

DEV_ADMIN_PASSWORD = "dev-only-change-me"


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    # Server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "3000"))
    ENV = os.getenv("ENV", os.getenv("NODE_ENV", "development"))
    IS_PRODUCTION = ENV == "production"

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

    # Admin
    ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")

    # Public URLs used in payment links
    FRONTEND_URL = os.getenv("FRONTEND_URL", "https://tlangau.onrender.com").rstrip("/")
    BACKEND_URL = os.getenv("BACKEND_URL", "https://tlangau.onrender.com").rstrip("/")

    # Access-code emails per order (first delivery + resends)
    MAX_CODE_EMAILS_PER_ORDER = int(os.getenv("MAX_CODE_EMAILS_PER_ORDER", "5"))


config = ServerConfig()


def resolve_admin_password(settings: ServerConfig) -> str:
    """Configured admin password. Missing in production is fatal."""
    if settings.ADMIN_PASSWORD:
        return settings.ADMIN_PASSWORD
    if settings.IS_PRODUCTION:
        raise RuntimeError("ADMIN_PASSWORD must be set in production")
    logger.warning("admin_password_default", hint="set ADMIN_PASSWORD before deploying")
    return DEV_ADMIN_PASSWORD


# =============================================================================
# SERVICE CONTAINER
# =============================================================================

@dataclass
class AppServices:
    settings: ServerConfig
    admin_password: str
    store: ILedgerStore
    repository: LedgerRepository
    gateway: IPaymentGateway
    email_service: EmailService
    engine: FulfillmentEngine
    verifier: PaymentVerifier
    gate: EntitlementGate
    identity: GoogleIdentityVerifier
    push: PushService
    sweeper: OrderSweeper
    rate_limiter: RateLimiter

    async def startup(self) -> None:
        if isinstance(self.store, PostgresLedgerStore):
            await Database.initialize()
        transport = self.push.transport
        if isinstance(transport, FirebasePushTransport):
            transport.initialize()

    async def shutdown(self) -> None:
        await self.sweeper.stop()
        await self.gateway.close()
        await self.identity.close()
        await self.store.close()


def build_services(settings: Optional[ServerConfig] = None) -> AppServices:
    """Wire every component from environment configuration."""
    settings = settings or config

    if db_config.DATABASE_URL:
        store: ILedgerStore = PostgresLedgerStore()
    else:
        logger.warning("database_url_missing", fallback="in_memory")
        store = InMemoryLedgerStore()

    repository = LedgerRepository(store)
    instamojo = InstamojoConfig.from_env()
    gateway = InstamojoClient(instamojo)
    email_service = EmailService()
    engine = FulfillmentEngine(
        repository,
        email_service,
        max_code_emails=settings.MAX_CODE_EMAILS_PER_ORDER,
    )
    entitlement_config = EntitlementConfig.from_env()

    return AppServices(
        settings=settings,
        admin_password=resolve_admin_password(settings),
        store=store,
        repository=repository,
        gateway=gateway,
        email_service=email_service,
        engine=engine,
        verifier=PaymentVerifier(
            repository,
            gateway,
            engine,
            secret=instamojo.private_salt,
            hardened=settings.IS_PRODUCTION,
        ),
        gate=EntitlementGate(repository, TTLCache(entitlement_config.access_cache_ttl_seconds)),
        identity=GoogleIdentityVerifier(TTLCache(entitlement_config.token_cache_ttl_seconds)),
        push=PushService(FirebasePushTransport()),
        sweeper=OrderSweeper(repository),
        rate_limiter=RateLimiter(),
    )


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_services(request: Request) -> AppServices:
    return request.app.state.services


def _digest(value: str) -> bytes:
    return hashlib.sha256(value.encode()).digest()


def password_matches(provided: str, expected: str) -> bool:
    return hmac.compare_digest(_digest(provided), _digest(expected))


async def _body_password(request: Request) -> Optional[str]:
    if "application/json" not in request.headers.get("content-type", ""):
        return None
    try:
        body = await request.json()
    except ValueError:
        return None
    if isinstance(body, dict) and body.get("password"):
        return str(body["password"])
    return None


async def require_admin(
    request: Request,
    services: AppServices = Depends(get_services),
    x_admin_password: Optional[str] = Header(default=None),
) -> None:
    provided = x_admin_password or await _body_password(request) or request.query_params.get("password")
    if not provided:
        raise ApiError(401, error="Unauthorized", message="Admin password required")
    if not password_matches(provided, services.admin_password):
        logger.warning("admin_auth_failed", path=request.url.path)
        raise ApiError(401, error="Unauthorized", message="Invalid admin password")


async def require_entitlement(
    services: AppServices = Depends(get_services),
    authorization: Optional[str] = Header(default=None),
) -> Entitlement:
    """Bearer token -> email -> current entitlement."""
    if not services.push.ready:
        raise ApiError(503, message="Server is starting up. Please try again in a few seconds.")

    try:
        email = await services.identity.verify(authorization)
    except IdentityProviderUnavailable:
        raise ApiError(503, message="Authentication service unavailable. Please try again.")
    if not email:
        raise ApiError(401, message="Authentication required. Please sign in with Google.")

    return await services.gate.authorize(email)
