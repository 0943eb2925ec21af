from datetime import timedelta

import httpx

from calmirror.client import MirrorClient

from .conftest import USER_EMAIL, remote_event


def make_client(handler) -> MirrorClient:
    return MirrorClient("http://mirror.test/", USER_EMAIL, transport=httpx.MockTransport(handler))


class TestRefresh:
    async def test_refresh_stores_events_and_sends_identity(self):
        seen = {}

        def handler(request):
            seen["request"] = request
            return httpx.Response(200, json={"events": [{"id": "e1", "title": "Standup"}], "merged_count": 1})

        async with make_client(handler) as client:
            assert await client.refresh() is True

        assert seen["request"].url.path == "/api/calendar/events"
        assert seen["request"].headers["X-Forwarded-Email"] == USER_EMAIL
        assert client.events == [{"id": "e1", "title": "Standup"}]
        assert client.last_synced_at is not None
        assert not client.notices

    async def test_failure_keeps_previous_events(self):
        responses = [
            httpx.Response(200, json={"events": [{"id": "e1"}]}),
            httpx.Response(502, json={"error": "ProviderUnavailable"}),
        ]

        async with make_client(lambda request: responses.pop(0)) as client:
            assert await client.refresh() is True
            assert await client.refresh() is False

        assert client.events == [{"id": "e1"}]
        assert client.sync_count == 2
        assert client.notices[-1] == "Failed to fetch events (HTTP 502)"

    async def test_transport_error_becomes_notice(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with make_client(handler) as client:
            assert await client.refresh() is False

        assert client.events == []
        assert client.notices[-1].startswith("Error fetching events")

    async def test_refresh_against_running_app(self, app, client, services, provider, now):
        await services.store.upsert_user(USER_EMAIL, access_token="token-alice")
        provider.snapshot = [remote_event("e1", now + timedelta(hours=1), summary="Standup")]

        mirror = MirrorClient(
            "http://test",
            USER_EMAIL,
            transport=httpx.ASGITransport(app=app),
        )
        async with mirror:
            assert await mirror.refresh() is True

        assert [event["id"] for event in mirror.events] == ["e1"]
        assert await services.store.count_mirrored_events(USER_EMAIL) == 1


class TestSetupWebhook:
    async def test_returns_channel_details(self):
        def handler(request):
            assert request.method == "POST"
            assert request.url.path == "/api/calendar/webhook/setup"
            return httpx.Response(200, json={"channelId": "c1", "resourceId": "r1"})

        async with make_client(handler) as client:
            channel = await client.setup_webhook()

        assert channel["channelId"] == "c1"

    async def test_failure_returns_none(self):
        async with make_client(lambda request: httpx.Response(401)) as client:
            assert await client.setup_webhook() is None
        assert "401" in client.notices[-1]
