"""Google Calendar v3 REST client used by the sync core."""

import logging
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import httpx

from calmirror.core.config import GoogleConfig
from calmirror.core.exceptions import ProviderUnavailable, Unauthorized
from calmirror.core.models import ChannelDescriptor, RemoteEvent
from calmirror.sources.base import ProviderClient

logger = logging.getLogger(__name__)


def _rfc3339(value: datetime) -> str:
    """Format a datetime the way the Calendar API expects (UTC, 'Z' suffix)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_expiration(value: Any, fallback: datetime) -> datetime:
    """Channel expirations come back as milliseconds since the epoch, as a string."""
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        return fallback


class GoogleCalendarClient(ProviderClient):
    """
    Client for one user's Google Calendar.

    Uses the Calendar v3 REST API directly with the user's bearer credential.
    Every request carries the configured timeout so a stalled fetch surfaces as
    ``ProviderUnavailable`` instead of hanging a reconciliation.
    """

    def __init__(
        self,
        access_token: str,
        config: GoogleConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            access_token: The user's bearer credential
            config: Provider settings (base URL, calendar, timeout, page size)
            transport: Optional httpx transport, used by tests
        """
        self.config = config or GoogleConfig()
        self.calendar_path = f"/calendars/{quote(self.config.calendar_id, safe='')}"
        self._client = httpx.AsyncClient(
            base_url=self.config.api_base_url,
            timeout=self.config.request_timeout,
            headers={"Authorization": f"Bearer {access_token}"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> httpx.Response:
        """Send a request and map failures onto the sync error taxonomy."""
        try:
            response = await self._client.request(method, path, params=params, json=json_body)
        except httpx.TimeoutException as e:
            logger.warning(f"Google Calendar {method} {path} timed out")
            raise ProviderUnavailable(f"Google Calendar request timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.warning(f"Google Calendar {method} {path} failed: {e}")
            raise ProviderUnavailable(f"Google Calendar request failed: {e}") from e

        if response.status_code in (401, 403):
            logger.warning(f"Google Calendar rejected credential: HTTP {response.status_code}")
            raise Unauthorized(f"Google Calendar rejected credential (HTTP {response.status_code})")
        if response.status_code in (404, 410) and allow_not_found:
            logger.debug(f"Google Calendar {method} {path}: already gone")
            return response
        if response.status_code >= 400:
            logger.error(f"Google Calendar {method} {path} failed: HTTP {response.status_code}")
            logger.debug(f"Response: {response.text}")
            raise ProviderUnavailable(
                f"Google Calendar request failed (HTTP {response.status_code})"
            )
        return response

    async def _request_json(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        response = await self._request(method, path, **kwargs)
        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderUnavailable("Google Calendar returned invalid JSON") from e
        if not isinstance(payload, dict):
            raise ProviderUnavailable("Google Calendar returned an unexpected payload")
        return payload

    async def list_upcoming_events(self) -> list[RemoteEvent]:
        logger.debug("Fetching upcoming events from Google Calendar")
        payload = await self._request_json(
            "GET",
            f"{self.calendar_path}/events",
            params={
                "timeMin": _rfc3339(datetime.now(timezone.utc)),
                "maxResults": self.config.page_size,
                "singleEvents": "true",
                "orderBy": "startTime",
            },
        )
        items = payload.get("items") or []
        events = [RemoteEvent.from_api(item) for item in items if isinstance(item, dict)]
        logger.debug(f"Google Calendar returned {len(events)} events")
        return events

    async def create_event(
        self,
        title: str,
        start: datetime,
        end: datetime,
        description: str | None = None,
        location: str | None = None,
    ) -> RemoteEvent:
        body: dict[str, Any] = {
            "summary": title,
            "start": {"dateTime": _rfc3339(start), "timeZone": self.config.default_timezone},
            "end": {"dateTime": _rfc3339(end), "timeZone": self.config.default_timezone},
        }
        if description:
            body["description"] = description
        if location:
            body["location"] = location

        payload = await self._request_json("POST", f"{self.calendar_path}/events", json_body=body)
        logger.info(f"Event created in Google Calendar with ID: {payload.get('id')}")
        return RemoteEvent.from_api(payload)

    async def delete_event(self, event_id: str) -> None:
        await self._request(
            "DELETE",
            f"{self.calendar_path}/events/{quote(event_id, safe='')}",
            allow_not_found=True,
        )
        logger.info(f"Event deleted from Google Calendar: {event_id}")

    async def open_channel(
        self, channel_id: str, callback_address: str, expiration: datetime
    ) -> ChannelDescriptor:
        payload = await self._request_json(
            "POST",
            f"{self.calendar_path}/events/watch",
            json_body={
                "id": channel_id,
                "type": "web_hook",
                "address": callback_address,
                "expiration": str(int(expiration.timestamp() * 1000)),
            },
        )
        resource_id = payload.get("resourceId")
        if not resource_id:
            raise ProviderUnavailable("Google Calendar watch response missing resourceId")

        return ChannelDescriptor(
            channel_id=payload.get("id") or channel_id,
            resource_id=resource_id,
            expiration=_parse_expiration(payload.get("expiration"), expiration),
        )

    async def close_channel(self, channel_id: str, resource_id: str) -> None:
        await self._request(
            "POST",
            "/channels/stop",
            json_body={"id": channel_id, "resourceId": resource_id},
            allow_not_found=True,
        )
        logger.info(f"Stopped Google Calendar channel {channel_id}")
