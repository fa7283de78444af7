# services/__init__.py
# ============================================================================
# TLANGAU SERVER - SERVICES MODULE
# ============================================================================
# Outbound collaborators: email delivery, push notifications, identity
# ============================================================================

from services.email_service import (
    EmailConfig,
    EmailService,
    render_access_code_email,
)

from services.identity import (
    GoogleIdentityVerifier,
    IdentityProviderUnavailable,
)

from services.push_service import (
    FirebasePushTransport,
    PushDeliveryError,
    PushService,
    build_ring_message,
    build_topic_messages,
)

__all__ = [
    # Email
    "EmailConfig",
    "EmailService",
    "render_access_code_email",
    # Identity
    "GoogleIdentityVerifier",
    "IdentityProviderUnavailable",
    # Push
    "FirebasePushTransport",
    "PushDeliveryError",
    "PushService",
    "build_ring_message",
    "build_topic_messages",
]
