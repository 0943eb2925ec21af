"""Base class for calendar provider clients."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable

from calmirror.core.models import ChannelDescriptor, RemoteEvent


class ProviderClient(ABC):
    """
    Abstract client for the remote calendar, bound to one user's credential.

    Implementations raise ``Unauthorized`` when the credential is rejected and
    ``ProviderUnavailable`` for timeouts, transport errors and server failures.
    Instances are async context managers so callers release connections.
    """

    @abstractmethod
    async def list_upcoming_events(self) -> list[RemoteEvent]:
        """
        Fetch a bounded forward snapshot: events starting now or later,
        ordered by start time, capped at one page.
        """
        pass

    @abstractmethod
    async def create_event(
        self,
        title: str,
        start: datetime,
        end: datetime,
        description: str | None = None,
        location: str | None = None,
    ) -> RemoteEvent:
        """
        Create an event on the remote calendar.

        Returns:
            The created event as the provider reports it
        """
        pass

    @abstractmethod
    async def delete_event(self, event_id: str) -> None:
        """
        Delete a remote event. Deleting an event that is already gone is not an error.
        """
        pass

    @abstractmethod
    async def open_channel(
        self, channel_id: str, callback_address: str, expiration: datetime
    ) -> ChannelDescriptor:
        """
        Ask the provider to push change signals for the calendar to ``callback_address``.

        Returns:
            Descriptor with the provider-assigned resource id and effective expiration
        """
        pass

    @abstractmethod
    async def close_channel(self, channel_id: str, resource_id: str) -> None:
        """Stop a push channel."""
        pass

    async def aclose(self) -> None:
        """Release any held connections."""

    async def __aenter__(self) -> "ProviderClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


# Binds a provider client to one user's bearer credential
ProviderFactory = Callable[[str], ProviderClient]
