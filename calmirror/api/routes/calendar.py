"""Calendar mirror endpoints: reconciliation entry point, events, channel setup."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from calmirror.api.dependencies import CurrentUserDep, ServicesDep
from calmirror.api.models import (
    ChannelResponse,
    EventCreateRequest,
    EventListResponse,
    EventResponse,
    MessageResponse,
    ReconcileResponse,
)
from calmirror.core.exceptions import EventNotFound
from calmirror.core.reconcile import map_remote_event

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/events", response_model=EventListResponse)
async def list_events(user: CurrentUserDep, services: ServicesDep):
    """Reconcile the caller's calendar and return the mirrored upcoming events.

    This is the entry point the polling client hits on every tick.
    """
    result = await services.engine.reconcile(user)
    events = await services.store.list_mirrored_events(
        user.email, since=datetime.now(timezone.utc)
    )
    return EventListResponse(
        events=[EventResponse.from_event(event) for event in events],
        merged_count=result.merged_count,
    )


@router.post("/sync", response_model=ReconcileResponse)
async def sync_events(user: CurrentUserDep, services: ServicesDep):
    """Run one reconciliation and report its statistics."""
    result = await services.engine.reconcile(user)
    return ReconcileResponse.from_result(result)


@router.post("/events", response_model=EventResponse)
async def create_event(request: EventCreateRequest, user: CurrentUserDep, services: ServicesDep):
    """Create an event on the remote calendar and mirror it."""
    logger.info(f"Creating event {request.title!r} for {user.email}")
    async with services.engine.provider_factory(user.access_token) as provider:
        remote = await provider.create_event(
            title=request.title,
            start=request.start_time,
            end=request.end_time,
            description=request.description,
            location=request.location,
        )

    event = map_remote_event(user.email, remote)
    if event is None:
        # Provider echoed something we cannot key; the next reconciliation picks it up
        logger.warning(f"Created event for {user.email} could not be mirrored immediately")
        return EventResponse(
            id=remote.id or "",
            title=request.title,
            description=request.description,
            location=request.location,
            start_time=request.start_time,
            end_time=request.end_time,
        )

    await services.store.upsert_mirrored_event(event)
    return EventResponse.from_event(event)


@router.delete("/events/{event_id}", response_model=MessageResponse)
async def delete_event(event_id: str, user: CurrentUserDep, services: ServicesDep):
    """Delete an event from the remote calendar and from the mirror."""
    existing = await services.store.get_mirrored_event(user.email, event_id)
    if existing is None:
        raise EventNotFound(f"Event {event_id} not found")

    async with services.engine.provider_factory(user.access_token) as provider:
        await provider.delete_event(event_id)

    await services.store.delete_mirrored_event(user.email, event_id)
    logger.info(f"Event {event_id} deleted for {user.email}")
    return MessageResponse(message="Event deleted successfully")


@router.post("/webhook/setup", response_model=ChannelResponse)
async def setup_webhook(request: Request, user: CurrentUserDep, services: ServicesDep):
    """Open a fresh push channel for the caller, replacing any previous one."""
    callback_address = services.config.webhook.callback_url or str(
        request.url_for("receive_notification")
    )
    channel = await services.subscriptions.rotate(user, callback_address)
    return ChannelResponse.from_descriptor(channel)


@router.delete("/webhook", response_model=MessageResponse)
async def remove_webhook(user: CurrentUserDep, services: ServicesDep):
    """Stop the caller's push channel."""
    await services.subscriptions.close(user)
    return MessageResponse(message="Webhook removed")
