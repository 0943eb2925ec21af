"""Classification and dispatch of inbound push notifications."""

import asyncio
import logging
from enum import Enum
from typing import Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from calmirror.core.exceptions import CalMirrorError, InvalidNotification, Unauthorized
from calmirror.core.models import User
from calmirror.core.reconcile import ReconciliationEngine
from calmirror.utils.db import EventStore
from calmirror.utils.logging import CATEGORY_WEBHOOK, category

logger = logging.getLogger(__name__)

# Header names the provider uses for correlation fields
HEADER_CHANNEL_ID = "x-goog-channel-id"
HEADER_RESOURCE_STATE = "x-goog-resource-state"
HEADER_RESOURCE_ID = "x-goog-resource-id"
HEADER_RESOURCE_URI = "x-goog-resource-uri"
HEADER_MESSAGE_NUMBER = "x-goog-message-number"
HEADER_CHANGED = "x-goog-changed"

# "sync" confirms a new channel; the others signal an actual change.
# None of them carry event data, so all of them mean "go fetch".
RECONCILE_STATES = frozenset({"sync", "exists", "not_exists"})


class NotificationAction(str, Enum):
    RECONCILE = "reconcile"
    IGNORE = "ignore"


class NotificationOutcome(str, Enum):
    """What the receiver did with a valid notification."""

    IGNORED = "ignored"
    UNKNOWN_CHANNEL = "unknown_channel"
    NO_CREDENTIAL = "no_credential"
    CREDENTIAL_REJECTED = "credential_rejected"
    RECONCILED = "reconciled"
    SCHEDULED = "scheduled"


class ChannelNotification(BaseModel):
    """
    Correlation fields of one push delivery.

    ``channel_id`` and ``resource_state`` are required. The rest are optional
    hints; malformed optional values are dropped rather than rejected.
    """

    model_config = ConfigDict(extra="ignore")

    channel_id: str = Field(min_length=1)
    resource_state: str = Field(min_length=1)
    resource_id: str | None = None
    resource_uri: str | None = None
    message_number: int | None = None
    changed: list[str] = Field(default_factory=list)

    @field_validator("resource_state", mode="before")
    @classmethod
    def normalize_state(cls, v: str) -> str:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("message_number", mode="before")
    @classmethod
    def parse_message_number(cls, v):
        if v in (None, ""):
            return None
        try:
            return int(v)
        except (TypeError, ValueError):
            return None

    @field_validator("changed", mode="before")
    @classmethod
    def split_changed(cls, v):
        if not v:
            return []
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "ChannelNotification":
        """
        Build from delivery headers.

        Raises:
            InvalidNotification: A required correlation field is missing or empty
        """
        lowered = {key.lower(): value for key, value in headers.items()}
        try:
            return cls(
                channel_id=lowered.get(HEADER_CHANNEL_ID) or "",
                resource_state=lowered.get(HEADER_RESOURCE_STATE) or "",
                resource_id=lowered.get(HEADER_RESOURCE_ID),
                resource_uri=lowered.get(HEADER_RESOURCE_URI),
                message_number=lowered.get(HEADER_MESSAGE_NUMBER),
                changed=lowered.get(HEADER_CHANGED),
            )
        except ValidationError as e:
            missing = ", ".join(str(err["loc"][0]) for err in e.errors())
            raise InvalidNotification(f"Invalid notification - missing or bad fields: {missing}") from e


def classify(notification: ChannelNotification) -> NotificationAction:
    """Decide whether a valid notification should trigger reconciliation."""
    if notification.resource_state in RECONCILE_STATES:
        return NotificationAction.RECONCILE
    return NotificationAction.IGNORE


class NotificationReceiver:
    """
    Ingress for push notifications.

    Resolves the owning user through the channel id and triggers the
    reconciliation engine, either inline or as a detached task so the
    provider gets its acknowledgment promptly. Correlation misses (unknown
    channel, no credential) are absorbed as successful no-ops; fetch and
    store failures of an inline run propagate to the caller.
    """

    def __init__(self, store: EventStore, engine: ReconciliationEngine, inline: bool = False):
        """
        Initialize the receiver.

        Args:
            store: Event store used to resolve channel owners
            engine: Reconciliation engine to trigger
            inline: Reconcile before returning instead of in a detached task
        """
        self.store = store
        self.engine = engine
        self.inline = inline
        self._tasks: set[asyncio.Task] = set()

    def parse(self, headers: Mapping[str, str]) -> ChannelNotification:
        try:
            return ChannelNotification.from_headers(headers)
        except InvalidNotification as e:
            logger.warning(f"Rejected notification: {e}")
            raise

    async def handle(self, notification: ChannelNotification) -> NotificationOutcome:
        """
        Act on a valid notification.

        Raises:
            ProviderUnavailable: Inline fetch failed
            StoreUnavailable: Channel lookup or inline merge failed
        """
        action = classify(notification)
        if action is NotificationAction.IGNORE:
            logger.info(
                f"Ignoring notification state {notification.resource_state!r} "
                f"on channel {notification.channel_id}",
                extra=category(CATEGORY_WEBHOOK),
            )
            return NotificationOutcome.IGNORED

        user = await self.store.find_user_by_channel_id(notification.channel_id)
        if user is None:
            logger.info(f"No user found for channel: {notification.channel_id}")
            return NotificationOutcome.UNKNOWN_CHANNEL

        if not user.has_credential:
            logger.info(f"No access token for user: {user.email}")
            return NotificationOutcome.NO_CREDENTIAL

        logger.info(
            f"Notification {notification.resource_state!r} for {user.email} "
            f"(channel {notification.channel_id}, message {notification.message_number})",
            extra=category(CATEGORY_WEBHOOK),
        )

        if not self.inline:
            self._spawn(user)
            return NotificationOutcome.SCHEDULED

        try:
            await self.engine.reconcile(user)
        except Unauthorized as e:
            # Credential refresh happens elsewhere; redelivery would not help
            logger.warning(f"Credential rejected while reconciling {user.email}: {e}")
            return NotificationOutcome.CREDENTIAL_REJECTED
        return NotificationOutcome.RECONCILED

    def _spawn(self, user: User) -> None:
        task = asyncio.create_task(self._reconcile_detached(user))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _reconcile_detached(self, user: User) -> None:
        try:
            await self.engine.reconcile(user)
        except CalMirrorError as e:
            # Next notification or poll tick recovers
            logger.error(f"Background reconciliation failed for {user.email}: {e}")
        except Exception:  # pylint: disable=broad-except
            # Nothing awaits this task before drain(), so log here
            logger.exception(f"Unexpected error in background reconciliation for {user.email}")

    async def drain(self) -> None:
        """Wait for detached reconciliations to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
