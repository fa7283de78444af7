"""
Shared fixtures: in-memory ledger, fake providers, and an app client wired
with them.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from api.dependencies import AppServices, ServerConfig
from api.rate_limit import RateLimiter
from api.server import create_app
from database import LedgerRepository
from entitlements.cache import TTLCache
from entitlements.gate import EntitlementGate
from payments.fulfillment import FulfillmentEngine
from payments.gateway_client import GatewayError, IPaymentGateway, PaymentLink
from payments.webhooks import PaymentVerifier
from schemas.ledger_models import AccessCode, Order, OrderStatus, PaymentRecord
from services.push_service import IPushTransport, PushDeliveryError, PushMessage, PushResult, PushService
from storage.ledger_store import InMemoryLedgerStore
from tasks.order_sweep import OrderSweeper

ADMIN_PASSWORD = "secret"
WEBHOOK_SALT = "test-salt"


# =============================================================================
# FAKES
# =============================================================================

class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeGateway(IPaymentGateway):

    def __init__(self, configured: bool = True):
        self._configured = configured
        self.payments: Dict[str, PaymentRecord] = {}
        self.requests: Dict[str, dict] = {}
        self.created: List[dict] = []
        self.calls: List[str] = []
        self.create_error: Optional[GatewayError] = None

    @property
    def configured(self) -> bool:
        return self._configured

    async def create_payment_request(self, **kwargs) -> PaymentLink:
        self.calls.append("create_payment_request")
        if self.create_error is not None:
            raise self.create_error
        self.created.append(kwargs)
        request_id = f"REQ{len(self.created)}"
        return PaymentLink(id=request_id, longurl=f"https://pay.example.com/{request_id}")

    async def get_payment(self, payment_id: str) -> PaymentRecord:
        self.calls.append("get_payment")
        if payment_id not in self.payments:
            raise GatewayError("Payment not found", status_code=404)
        return self.payments[payment_id]

    async def get_payment_request(self, request_id: str) -> dict:
        self.calls.append("get_payment_request")
        return self.requests.get(request_id, {})


class FakeEmailService:

    def __init__(self, result: bool = True, configured: bool = True):
        self.result = result
        self.configured = configured
        self.sent: List[tuple] = []

    async def send_access_code(self, email: str, code: str, services) -> bool:
        self.sent.append((email, code, list(services or [])))
        return self.result


class FakePushTransport(IPushTransport):

    def __init__(self, ready: bool = True, fail: bool = False):
        self._ready = ready
        self.fail = fail
        self.sent: List[PushMessage] = []

    @property
    def ready(self) -> bool:
        return self._ready

    async def send(self, message: PushMessage) -> str:
        if self.fail:
            raise PushDeliveryError("topic unavailable")
        self.sent.append(message)
        return f"projects/tlangau/messages/{len(self.sent)}"

    async def send_each(self, messages: List[PushMessage]) -> PushResult:
        result = PushResult()
        for message in messages:
            result.message_ids.append(await self.send(message))
            result.sent += 1
        return result


class FakeIdentity:

    def __init__(self, tokens: Optional[Dict[str, str]] = None):
        self.tokens = tokens or {}

    async def verify(self, authorization: Optional[str]) -> Optional[str]:
        if not authorization or not authorization.startswith("Bearer "):
            return None
        return self.tokens.get(authorization.split(" ", 1)[1])

    async def close(self) -> None:
        pass


async def _no_sleep(_seconds: float) -> None:
    return None


# =============================================================================
# BUILDERS
# =============================================================================

def make_order(order_id: str = "order_1", email: str = "buyer@example.com",
               services=("ring", "message"), request_id: Optional[str] = "REQ1", **extra) -> Order:
    return Order(
        order_id=order_id,
        email=email,
        amount=len(services) * 1000,
        status=extra.pop("status", OrderStatus.PENDING),
        services=list(services),
        payment_request_id=request_id,
        **extra,
    )


def make_payment(payment_id: str = "PAY1", status: str = "Credit", amount: str = "20.00",
                 request_id: str = "REQ1", buyer: str = "buyer@example.com") -> PaymentRecord:
    return PaymentRecord(
        id=payment_id,
        status=status,
        amount=amount,
        payment_request={"id": request_id},
        buyer_email=buyer,
    )


def make_code(code: str = "ABCDEFGH1234", email: str = "buyer@example.com", services=("ring",),
              expires_in: timedelta = timedelta(days=30), **extra) -> AccessCode:
    now = datetime.now(timezone.utc)
    return AccessCode(
        code=code,
        email=email,
        services=list(services),
        used=extra.pop("used", False),
        created_at=extra.pop("created_at", now),
        expires_at=now + expires_in,
        **extra,
    )


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def repository(store):
    return LedgerRepository(store)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def email_service():
    return FakeEmailService()


@pytest.fixture
def engine(repository, email_service):
    return FulfillmentEngine(repository, email_service)


@pytest.fixture
def verifier(repository, gateway, engine):
    return PaymentVerifier(repository, gateway, engine, secret=WEBHOOK_SALT, hardened=True)


@pytest.fixture
def gate(repository):
    return EntitlementGate(repository, TTLCache(300.0))


@pytest.fixture
def push_transport():
    return FakePushTransport()


@pytest.fixture
def identity():
    return FakeIdentity({"good-token": "buyer@example.com", "other-token": "other@example.com"})


@pytest.fixture
def services(store, repository, gateway, email_service, engine, verifier, gate, push_transport, identity):
    settings = ServerConfig()
    settings.IS_PRODUCTION = False
    settings.CORS_ORIGINS = ["*"]
    return AppServices(
        settings=settings,
        admin_password=ADMIN_PASSWORD,
        store=store,
        repository=repository,
        gateway=gateway,
        email_service=email_service,
        engine=engine,
        verifier=verifier,
        gate=gate,
        identity=identity,
        push=PushService(push_transport, sleep=_no_sleep),
        sweeper=OrderSweeper(repository),
        rate_limiter=RateLimiter(),
    )


@pytest.fixture
def app_client(services):
    with TestClient(create_app(services, start_background_tasks=False)) as client:
        yield client


def run(coro):
    return asyncio.run(coro)
