# payments/__init__.py
# ============================================================================
# TLANGAU SERVER - PAYMENTS MODULE
# ============================================================================
# Provider client, fulfillment engine, webhook/poll verifier
# ============================================================================

from payments.codes import generate_access_code
from payments.fulfillment import FulfillmentEngine
from payments.gateway_client import (
    GatewayError,
    GatewayNotConfigured,
    GatewayTimeout,
    GatewayUnavailable,
    InstamojoClient,
    InstamojoConfig,
    IPaymentGateway,
)
from payments.webhooks import (
    OrderNotFoundError,
    PaymentVerifier,
    WebhookPayloadError,
    WebhookSignatureError,
)

__all__ = [
    "generate_access_code",
    "FulfillmentEngine",
    "GatewayError",
    "GatewayNotConfigured",
    "GatewayTimeout",
    "GatewayUnavailable",
    "InstamojoClient",
    "InstamojoConfig",
    "IPaymentGateway",
    "OrderNotFoundError",
    "PaymentVerifier",
    "WebhookPayloadError",
    "WebhookSignatureError",
]
