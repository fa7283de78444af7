"""
Push Service - Firebase Cloud Messaging
=======================================
Ring alerts and text messages to FCM topics.

Features:
- Pure message builders (ring / message) independent of the transport
- firebase-admin transport; blocking SDK calls run in a worker thread
- One topic uses send(), several use send_each() with per-topic results
- 2 attempts, 500ms apart
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import firebase_admin
import structlog
from firebase_admin import credentials, messaging
from firebase_admin.exceptions import FirebaseError

logger = structlog.get_logger().bind(component="push_service")

RING_TTL_SECONDS = 300
MESSAGE_TTL_SECONDS = 28 * 24 * 3600
PREVIEW_LIMIT = 100


# =============================================================================
# CONFIGURATION
# =============================================================================

class FirebaseConfig:
    """Firebase credentials"""

    # Service account JSON, inline
    SERVICE_ACCOUNT = os.getenv("FIREBASE_SERVICE_ACCOUNT", "")

    # Or a path to the service account file
    CREDENTIALS_PATH = os.getenv("GOOGLE_APPLICATION_CREDENTIALS", "")

    DATABASE_URL = os.getenv("FIREBASE_DATABASE_URL", "")

    @property
    def configured(self) -> bool:
        return bool(self.SERVICE_ACCOUNT or self.CREDENTIALS_PATH)


config = FirebaseConfig()


# =============================================================================
# MESSAGES
# =============================================================================

@dataclass
class PushMessage:
    topic: str
    data: Dict[str, str]
    title: str
    body: str
    ttl_seconds: int
    apns_extra: Dict[str, Any] = field(default_factory=dict)
    mutable_content: bool = False


@dataclass
class PushResult:
    sent: int = 0
    failed: int = 0
    message_ids: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.sent + self.failed

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": self.sent > 0,
            "messageIds": self.message_ids,
            "sent": self.sent,
            "failed": self.failed,
            "total": self.total,
        }


class PushDeliveryError(Exception):
    pass


def _timestamp_ms() -> str:
    return str(int(datetime.now(timezone.utc).timestamp() * 1000))


def build_ring_message(fcm_topic: str, bundle_name: str, topic_name: str, ring_type: str = "wet") -> PushMessage:
    label = "Ṭawihthei lo" if ring_type == "dry" else "Ṭawihthei"
    return PushMessage(
        topic=fcm_topic,
        data={
            "type": "ring",
            "ringType": ring_type,
            "priority": "high",
            "timestamp": _timestamp_ms(),
            "bundleName": bundle_name,
            "topicName": topic_name,
        },
        title=f"Ring Alert: {bundle_name}",
        body=f"{topic_name} - {label}",
        ttl_seconds=RING_TTL_SECONDS,
        apns_extra={"interruption-level": "time-sensitive"},
    )


def build_topic_messages(
    fcm_topics: List[str],
    bundle_name: str,
    message_text: str,
    extras: Optional[Dict[str, Any]] = None,
) -> List[PushMessage]:
    data = {
        "type": "message",
        "messageText": message_text,
        "priority": "high",
        "timestamp": _timestamp_ms(),
        "bundleName": bundle_name,
        "topicName": bundle_name,
    }
    for key, value in (extras or {}).items():
        if value not in (None, ""):
            data[key] = str(value)

    preview = message_text if len(message_text) <= PREVIEW_LIMIT else message_text[:97] + "..."
    return [
        PushMessage(
            topic=topic,
            data=dict(data),
            title=bundle_name,
            body=preview,
            ttl_seconds=MESSAGE_TTL_SECONDS,
            mutable_content=True,
        )
        for topic in fcm_topics
    ]


# =============================================================================
# TRANSPORT
# =============================================================================

class IPushTransport(ABC):

    @property
    def ready(self) -> bool:
        return True

    @abstractmethod
    async def send(self, message: PushMessage) -> str:
        """Deliver one message. Returns the provider message id."""

    @abstractmethod
    async def send_each(self, messages: List[PushMessage]) -> PushResult:
        pass


class FirebasePushTransport(IPushTransport):

    def __init__(self, firebase_config: FirebaseConfig = config):
        self.config = firebase_config
        self._app: Optional[firebase_admin.App] = None

    @property
    def ready(self) -> bool:
        return self._app is not None

    def initialize(self) -> bool:
        if self._app is not None:
            return True
        if not self.config.configured:
            logger.warning("firebase_not_configured")
            return False
        try:
            if self.config.SERVICE_ACCOUNT:
                cred = credentials.Certificate(json.loads(self.config.SERVICE_ACCOUNT))
            else:
                cred = credentials.Certificate(self.config.CREDENTIALS_PATH)
            options = {"databaseURL": self.config.DATABASE_URL} if self.config.DATABASE_URL else None
            self._app = firebase_admin.initialize_app(cred, options)
            logger.info("firebase_initialized")
            return True
        except (ValueError, OSError) as e:
            logger.error("firebase_init_failed", error=str(e))
            return False

    @staticmethod
    def to_fcm(message: PushMessage) -> messaging.Message:
        aps = messaging.Aps(
            alert=messaging.ApsAlert(title=message.title, body=message.body),
            sound="default",
            content_available=True,
            mutable_content=message.mutable_content or None,
            custom_data=message.apns_extra or None,
        )
        return messaging.Message(
            topic=message.topic,
            data=message.data,
            android=messaging.AndroidConfig(priority="high", ttl=message.ttl_seconds),
            apns=messaging.APNSConfig(
                headers={"apns-priority": "10", "apns-push-type": "alert"},
                payload=messaging.APNSPayload(aps=aps),
            ),
            webpush=messaging.WebpushConfig(headers={"Urgency": "high"}),
        )

    async def send(self, message: PushMessage) -> str:
        if not self.ready:
            raise PushDeliveryError("Firebase is not initialized")
        try:
            return await asyncio.to_thread(messaging.send, self.to_fcm(message), False, self._app)
        except (FirebaseError, ValueError) as e:
            raise PushDeliveryError(str(e)) from e

    async def send_each(self, messages: List[PushMessage]) -> PushResult:
        if not self.ready:
            raise PushDeliveryError("Firebase is not initialized")
        try:
            batch = await asyncio.to_thread(
                messaging.send_each, [self.to_fcm(m) for m in messages], False, self._app
            )
        except (FirebaseError, ValueError) as e:
            raise PushDeliveryError(str(e)) from e

        result = PushResult()
        for message, response in zip(messages, batch.responses):
            if response.success:
                result.sent += 1
                result.message_ids.append(response.message_id)
            else:
                result.failed += 1
                logger.warning("push_topic_failed", topic=message.topic, error=str(response.exception))
        return result


# =============================================================================
# SERVICE
# =============================================================================

class PushService:

    def __init__(
        self,
        transport: IPushTransport,
        attempts: int = 2,
        retry_delay_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.transport = transport
        self.attempts = attempts
        self.retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep

    @property
    def ready(self) -> bool:
        return self.transport.ready

    async def send_ring(self, message: PushMessage) -> str:
        """Message id of the delivered ring, or PushDeliveryError after the last attempt."""
        for attempt in range(1, self.attempts + 1):
            try:
                message_id = await self.transport.send(message)
                logger.info("ring_sent", topic=message.topic, message_id=message_id)
                return message_id
            except PushDeliveryError as e:
                logger.warning("ring_failed", topic=message.topic, attempt=attempt, error=str(e))
                if attempt == self.attempts:
                    raise
                await self._sleep(self.retry_delay_seconds)
        raise PushDeliveryError("Failed to send ring notification")

    async def send_messages(self, messages: List[PushMessage]) -> PushResult:
        for attempt in range(1, self.attempts + 1):
            try:
                if len(messages) == 1:
                    message_id = await self.transport.send(messages[0])
                    result = PushResult(sent=1, message_ids=[message_id])
                else:
                    result = await self.transport.send_each(messages)
                logger.info("messages_sent", sent=result.sent, total=len(messages))
                return result
            except PushDeliveryError as e:
                logger.warning("messages_failed", attempt=attempt, topics=len(messages), error=str(e))
                if attempt == self.attempts:
                    raise
                await self._sleep(self.retry_delay_seconds)
        raise PushDeliveryError("Failed to send message notification")
