"""HTTP client for the calendar mirror API, as used by a polling front end."""

import logging
from collections import deque
from datetime import datetime
from typing import Any

import httpx

logger = logging.getLogger(__name__)

MAX_NOTICES = 20


class MirrorClient:
    """
    Calls the server's reconciliation entry point on behalf of one signed-in user.

    Transient failures never raise: they are recorded as notices and the last
    successfully fetched events stay available, so a view built on this client
    keeps showing prior state after a failed sync.
    """

    def __init__(
        self,
        server_url: str,
        user_email: str,
        user_header: str = "X-Forwarded-Email",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            server_url: Base URL of the calmirror API
            user_email: Signed-in user
            user_header: Header carrying the user identity
            timeout: Request timeout in seconds
            transport: Optional httpx transport, used by tests
        """
        self.user_email = user_email
        self.events: list[dict[str, Any]] = []
        self.notices: deque[str] = deque(maxlen=MAX_NOTICES)
        self.last_synced_at: datetime | None = None
        self.sync_count = 0
        self._client = httpx.AsyncClient(
            base_url=server_url.rstrip("/"),
            timeout=timeout,
            headers={user_header: user_email},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "MirrorClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _notice(self, message: str) -> None:
        logger.warning(message)
        self.notices.append(message)

    async def refresh(self) -> bool:
        """
        Trigger reconciliation on the server and fetch the mirrored events.

        Returns:
            True on success, False if the previous events were kept
        """
        self.sync_count += 1
        try:
            response = await self._client.get("/api/calendar/events")
        except httpx.HTTPError as e:
            self._notice(f"Error fetching events: {e}")
            return False

        if response.status_code >= 400:
            self._notice(f"Failed to fetch events (HTTP {response.status_code})")
            return False

        try:
            payload = response.json()
        except ValueError:
            self._notice("Failed to fetch events (invalid response)")
            return False

        self.events = payload.get("events", [])
        self.last_synced_at = datetime.now()
        logger.debug(f"Fetched {len(self.events)} events for {self.user_email}")
        return True

    async def setup_webhook(self) -> dict[str, Any] | None:
        """
        Ask the server to (re)open the push channel for this user.

        Returns:
            Channel details, or None if setup failed
        """
        try:
            response = await self._client.post("/api/calendar/webhook/setup")
        except httpx.HTTPError as e:
            self._notice(f"Error setting up webhook: {e}")
            return None

        if response.status_code >= 400:
            self._notice(f"Failed to setup webhook (HTTP {response.status_code})")
            return None
        return response.json()
