"""
Service-gated push routes.

send-ring needs "ring"; send-message needs "message", or "broadcast"
when isBroadcast is set.
"""

import structlog
from fastapi import APIRouter, Depends

from api.dependencies import AppServices, get_services, require_entitlement
from api.errors import ApiError
from api.rate_limit import limit
from entitlements.gate import EntitlementGate
from schemas.api_models import SendMessageRequest, SendRingRequest
from schemas.ledger_models import Entitlement
from services.push_service import PushDeliveryError, build_ring_message, build_topic_messages

logger = structlog.get_logger().bind(component="notifications")

router = APIRouter(prefix="/api", dependencies=[Depends(limit("notifications"))])


@router.post("/send-ring")
async def send_ring(
    body: SendRingRequest,
    entitlement: Entitlement = Depends(require_entitlement),
    services: AppServices = Depends(get_services),
):
    EntitlementGate.require_service(entitlement, "ring")
    if not (body.fcmTopicName and body.bundleName and body.topicName):
        raise ApiError(400, message="Missing required fields: fcmTopicName, bundleName, topicName")

    ring_type = body.ringType or "wet"
    logger.info("ring_requested", bundle=body.bundleName, topic=body.topicName,
                ring_type=ring_type, email=entitlement.email)

    message = build_ring_message(body.fcmTopicName, body.bundleName, body.topicName, ring_type)
    try:
        message_id = await services.push.send_ring(message)
    except PushDeliveryError:
        raise ApiError(500, message="Failed to send ring notification")
    return {"success": True, "messageId": message_id}


@router.post("/send-message")
async def send_message(
    body: SendMessageRequest,
    entitlement: Entitlement = Depends(require_entitlement),
    services: AppServices = Depends(get_services),
):
    EntitlementGate.require_service(entitlement, "broadcast" if body.isBroadcast else "message")

    topics = body.topics
    if not topics or not body.bundleName or not body.messageText:
        raise ApiError(400, message="Missing required fields: fcmTopicName(s), bundleName, messageText")

    logger.info("message_requested", bundle=body.bundleName, topics=len(topics),
                broadcast=body.isBroadcast, email=entitlement.email)

    messages = build_topic_messages(topics, body.bundleName, body.messageText, body.extras)
    try:
        result = await services.push.send_messages(messages)
    except PushDeliveryError:
        raise ApiError(500, message="Failed to send message notification")
    return result.to_response()
