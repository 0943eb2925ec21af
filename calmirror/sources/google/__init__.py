"""Google Calendar provider."""

from calmirror.core.config import GoogleConfig
from calmirror.sources.base import ProviderClient, ProviderFactory
from calmirror.sources.google.client import GoogleCalendarClient


def google_client_factory(config: GoogleConfig) -> ProviderFactory:
    """Return a factory that binds a GoogleCalendarClient to a user's credential."""

    def factory(access_token: str) -> ProviderClient:
        return GoogleCalendarClient(access_token, config)

    return factory


__all__ = ["GoogleCalendarClient", "google_client_factory"]
