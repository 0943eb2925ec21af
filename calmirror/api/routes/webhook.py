"""Push-notification ingress for calendar channels."""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from calmirror.api.dependencies import ServicesDep
from calmirror.api.models import MessageResponse, NotificationAck
from calmirror.core.notifications import NotificationOutcome

logger = logging.getLogger(__name__)

router = APIRouter()

_ACK_MESSAGES = {
    NotificationOutcome.IGNORED: "Notification ignored",
    NotificationOutcome.UNKNOWN_CHANNEL: "User not found",
    NotificationOutcome.NO_CREDENTIAL: "No access token",
    NotificationOutcome.CREDENTIAL_REJECTED: "Access token rejected",
    NotificationOutcome.RECONCILED: "Webhook processed",
    NotificationOutcome.SCHEDULED: "Webhook accepted",
}


@router.post("/calendar", response_model=NotificationAck, name="receive_notification")
async def receive_notification(request: Request, services: ServicesDep):
    """Receive a push notification.

    Missing correlation headers yield 400. Unknown channels, missing
    credentials and unrecognized states are acknowledged with 200 so the
    provider does not retry. Fetch or store failures of an inline
    reconciliation surface as 5xx so the provider's redelivery applies.
    """
    receiver = services.receiver
    notification = receiver.parse(request.headers)
    outcome = await receiver.handle(notification)
    logger.debug(f"Notification on {notification.channel_id}: {outcome.value}")
    return NotificationAck(message=_ACK_MESSAGES[outcome], outcome=outcome.value)


@router.get("/calendar")
async def verify_webhook(request: Request):
    """Answer the subscription handshake by echoing the challenge verbatim."""
    challenge = request.query_params.get("hub.challenge")
    if challenge:
        logger.info("Responding to webhook verification challenge")
        return PlainTextResponse(challenge, status_code=200)

    return MessageResponse(message="Webhook endpoint")
