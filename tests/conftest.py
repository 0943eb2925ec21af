"""Shared fixtures: an in-memory fake provider and a temp-file event store."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from calmirror.api.app import create_app
from calmirror.core.config import AppConfig, GeneralConfig, WebhookConfig
from calmirror.core.exceptions import ProviderUnavailable, Unauthorized
from calmirror.core.models import ChannelDescriptor, RemoteEvent
from calmirror.sources.base import ProviderClient
from calmirror.utils.db import EventStore

USER_EMAIL = "alice@example.com"
ACCESS_TOKEN = "token-alice"
CALLBACK = "https://mirror.example.com/api/webhook/calendar"


def iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


def remote_event(
    event_id: str | None,
    start: datetime,
    hours: int = 1,
    summary: str | None = "Meeting",
    **fields,
) -> RemoteEvent:
    """Build a timed remote event starting at ``start``."""
    return RemoteEvent(
        id=event_id,
        summary=summary,
        start_datetime=iso(start),
        end_datetime=iso(start + timedelta(hours=hours)),
        **fields,
    )


class FakeProvider(ProviderClient):
    """Provider double sharing state with its FakeProviderBackend."""

    def __init__(self, backend: "FakeProviderBackend", access_token: str):
        self.backend = backend
        self.access_token = access_token

    def _check(self, operation: str) -> None:
        self.backend.calls.append(operation)
        if self.access_token in self.backend.rejected_tokens:
            raise Unauthorized("credential rejected")
        failure = self.backend.failures.get(operation)
        if failure is not None:
            raise failure

    async def list_upcoming_events(self) -> list[RemoteEvent]:
        self._check("list")
        if self.backend.list_gate is not None:
            await self.backend.list_gate.wait()
        return list(self.backend.snapshot)

    async def create_event(self, title, start, end, description=None, location=None):
        self._check("create")
        self.backend.created_count += 1
        event = RemoteEvent(
            id=f"created-{self.backend.created_count}",
            summary=title,
            description=description,
            location=location,
            start_datetime=iso(start),
            end_datetime=iso(end),
        )
        self.backend.snapshot.append(event)
        return event

    async def delete_event(self, event_id: str) -> None:
        self._check("delete")
        self.backend.deleted.append(event_id)
        self.backend.snapshot = [e for e in self.backend.snapshot if e.id != event_id]

    async def open_channel(self, channel_id, callback_address, expiration):
        self._check("open")
        channel = ChannelDescriptor(
            channel_id=channel_id,
            resource_id=f"resource-{channel_id}",
            expiration=expiration,
        )
        self.backend.opened.append(channel)
        return channel

    async def close_channel(self, channel_id: str, resource_id: str) -> None:
        self._check("close")
        self.backend.closed.append(channel_id)

    async def aclose(self) -> None:
        self.backend.closed_clients += 1


class FakeProviderBackend:
    """Remote calendar state plus failure injection, shared by all fake clients."""

    def __init__(self):
        self.snapshot: list[RemoteEvent] = []
        self.calls: list[str] = []
        self.failures: dict[str, Exception] = {}
        self.rejected_tokens: set[str] = set()
        self.opened: list[ChannelDescriptor] = []
        self.closed: list[str] = []
        self.deleted: list[str] = []
        self.created_count = 0
        self.closed_clients = 0
        self.list_gate = None

    def factory(self, access_token: str) -> FakeProvider:
        return FakeProvider(self, access_token)

    def fail(self, operation: str, error: Exception | None = None) -> None:
        self.failures[operation] = error or ProviderUnavailable(f"{operation} failed")


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def provider() -> FakeProviderBackend:
    return FakeProviderBackend()


@pytest.fixture
async def store(tmp_path) -> EventStore:
    event_store = EventStore(tmp_path / "calmirror.db")
    await event_store.initialize()
    return event_store


@pytest.fixture
async def user(store):
    return await store.upsert_user(USER_EMAIL, access_token=ACCESS_TOKEN, name="Alice")


@pytest.fixture
def config(tmp_path) -> AppConfig:
    return AppConfig(
        general=GeneralConfig(data_dir=tmp_path),
        webhook=WebhookConfig(callback_url=CALLBACK, reconcile_mode="inline"),
    )


@pytest.fixture
def app(config, provider):
    return create_app(config, provider_factory=provider.factory)


@pytest.fixture
def services(app):
    return app.state.services


@pytest.fixture
async def client(app, services):
    await services.store.initialize()
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as http_client:
        yield http_client
    await services.receiver.drain()
