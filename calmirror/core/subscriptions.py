"""Push-notification channel lifecycle per user."""

import asyncio
import logging
import secrets
import time
import weakref
from datetime import datetime, timedelta, timezone

from calmirror.core.exceptions import (
    CalMirrorError,
    InvalidCallbackAddress,
    ProviderUnavailable,
    Unauthorized,
)
from calmirror.core.models import ChannelDescriptor, User
from calmirror.sources.base import ProviderFactory
from calmirror.utils.db import EventStore
from calmirror.utils.logging import CATEGORY_CHANNELS, category

logger = logging.getLogger(__name__)

CHANNEL_ID_PREFIX = "calmirror"


def generate_channel_id() -> str:
    """
    Return a fresh channel identifier.

    Millisecond time plus a random token, restricted to the characters the
    provider accepts in channel ids.
    """
    return f"{CHANNEL_ID_PREFIX}-{int(time.time() * 1000)}-{secrets.token_hex(6)}"


def validate_callback_address(callback_address: str | None) -> str:
    """Ensure the callback is an absolute HTTPS URL."""
    if not callback_address or not callback_address.startswith("https://"):
        raise InvalidCallbackAddress(
            f"Callback address must be a public https:// URL, got {callback_address!r}"
        )
    return callback_address


class SubscriptionManager:
    """
    Opens, rotates and closes the push channel of each user.

    This is the only writer of the user's channel descriptor. A user has at
    most one active channel: rotation persists the new descriptor first and
    then stops the previous channel on a best-effort basis (a channel that
    cannot be stopped simply expires on its own).
    """

    def __init__(
        self,
        store: EventStore,
        provider_factory: ProviderFactory,
        channel_ttl: timedelta = timedelta(days=7),
    ):
        """
        Initialize the manager.

        Args:
            store: Event store holding the channel descriptors
            provider_factory: Builds a provider client from a bearer credential
            channel_ttl: Requested channel lifetime
        """
        self.store = store
        self.provider_factory = provider_factory
        self.channel_ttl = channel_ttl
        # One entry per user with a rotation or close in flight
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, email: str) -> asyncio.Lock:
        lock = self._locks.get(email)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[email] = lock
        return lock

    async def _current_channel(self, user: User) -> ChannelDescriptor | None:
        stored = await self.store.get_user(user.email)
        return stored.channel if stored is not None else user.channel

    def _require_credential(self, user: User) -> str:
        if not user.has_credential:
            raise Unauthorized(f"No access token for user: {user.email}")
        return user.access_token

    async def open(self, user: User, callback_address: str) -> ChannelDescriptor:
        """
        Request a new push channel. Does not touch stored state.

        Raises:
            InvalidCallbackAddress: Callback is not https
            Unauthorized: User has no credential or the provider rejects it
            ProviderUnavailable: The remote call failed
        """
        validate_callback_address(callback_address)
        access_token = self._require_credential(user)

        channel_id = generate_channel_id()
        expiration = datetime.now(timezone.utc) + self.channel_ttl
        logger.info(f"Opening channel {channel_id} for {user.email} -> {callback_address}")

        async with self.provider_factory(access_token) as provider:
            channel = await provider.open_channel(channel_id, callback_address, expiration)

        logger.info(
            f"Channel {channel.channel_id} open for {user.email} "
            f"(resource {channel.resource_id}, expires {channel.expiration.isoformat()})",
            extra=category(CATEGORY_CHANNELS),
        )
        return channel

    async def rotate(self, user: User, callback_address: str) -> ChannelDescriptor:
        """
        Replace the user's channel: open, persist, then close the previous one.

        Rotations and closes for one user are serialized, and the previous
        channel is read from the store rather than from ``user``, so two
        overlapping rotations never leave an orphaned channel open.

        Returns:
            The new active channel descriptor
        """
        async with self._lock_for(user.email):
            previous = await self._current_channel(user)
            channel = await self.open(user, callback_address)

            await self.store.save_user_channel(user.email, channel)
            user.channel = channel

            if previous is not None and previous.channel_id != channel.channel_id:
                await self._close_quietly(user, previous)

        return channel

    async def close(self, user: User) -> None:
        """Stop the user's channel (best effort) and clear the stored descriptor."""
        async with self._lock_for(user.email):
            previous = await self._current_channel(user)
            if previous is None:
                logger.debug(f"No channel to close for {user.email}")
                user.channel = None
                return

            await self.store.save_user_channel(user.email, None)
            user.channel = None
            await self._close_quietly(user, previous)

    async def _close_quietly(self, user: User, channel: ChannelDescriptor) -> None:
        if not user.has_credential:
            logger.warning(
                f"Cannot stop channel {channel.channel_id} for {user.email}: no access token"
            )
            return

        logger.info(f"Stopping previous channel {channel.channel_id} for {user.email}")
        try:
            async with self.provider_factory(user.access_token) as provider:
                await provider.close_channel(channel.channel_id, channel.resource_id)
        except CalMirrorError as e:
            # Stale channels expire on their own; the worst case is duplicate notifications
            logger.warning(f"Failed to stop channel {channel.channel_id}: {e}")

    async def renew_expiring(self, callback_address: str, margin: timedelta) -> dict[str, int]:
        """
        Rotate every channel that expires within ``margin``.

        Returns:
            Dictionary with 'renewed' and 'failed' counts
        """
        deadline = datetime.now(timezone.utc) + margin
        users = await self.store.list_users_with_channels_expiring_before(deadline)
        stats = {"renewed": 0, "failed": 0}

        for user in users:
            try:
                await self.rotate(user, callback_address)
                stats["renewed"] += 1
            except (Unauthorized, ProviderUnavailable, InvalidCallbackAddress) as e:
                stats["failed"] += 1
                logger.error(f"Failed to renew channel for {user.email}: {e}")

        if users:
            logger.info(
                f"Channel renewal: {stats['renewed']} renewed, {stats['failed']} failed",
                extra=category(CATEGORY_CHANNELS),
            )
        return stats
