import logging
from datetime import timedelta

import pytest

from calmirror.core.exceptions import InvalidNotification, ProviderUnavailable
from calmirror.core.models import ChannelDescriptor
from calmirror.core.notifications import (
    ChannelNotification,
    NotificationAction,
    NotificationOutcome,
    NotificationReceiver,
    classify,
)
from calmirror.core.reconcile import ReconciliationEngine

from .conftest import USER_EMAIL, remote_event

CHANNEL_ID = "calmirror-1-abc"


def headers(state="exists", channel_id=CHANNEL_ID, **extra):
    values = {"X-Goog-Channel-ID": channel_id, "X-Goog-Resource-State": state}
    values.update(extra)
    return values


@pytest.fixture
def engine(store, provider):
    return ReconciliationEngine(store, provider.factory)


@pytest.fixture
async def subscribed_user(store, user, now):
    channel = ChannelDescriptor(CHANNEL_ID, "resource-1", now + timedelta(days=7))
    await store.save_user_channel(user.email, channel)
    return await store.get_user(user.email)


class TestChannelNotification:
    def test_parses_required_and_optional_fields(self):
        notification = ChannelNotification.from_headers(
            headers(
                state="Exists",
                **{
                    "X-Goog-Resource-ID": "resource-1",
                    "X-Goog-Message-Number": "7",
                    "X-Goog-Changed": "content, properties",
                    "X-Something-Else": "ignored",
                },
            )
        )
        assert notification.channel_id == CHANNEL_ID
        assert notification.resource_state == "exists"
        assert notification.resource_id == "resource-1"
        assert notification.message_number == 7
        assert notification.changed == ["content", "properties"]

    def test_bad_message_number_is_dropped(self):
        notification = ChannelNotification.from_headers(
            headers(**{"X-Goog-Message-Number": "seven"})
        )
        assert notification.message_number is None

    @pytest.mark.parametrize(
        "values",
        [
            {"X-Goog-Channel-ID": CHANNEL_ID},
            {"X-Goog-Resource-State": "exists"},
            {"X-Goog-Channel-ID": "", "X-Goog-Resource-State": "exists"},
            {},
        ],
    )
    def test_missing_required_field_is_invalid(self, values):
        with pytest.raises(InvalidNotification):
            ChannelNotification.from_headers(values)

    @pytest.mark.parametrize("state", ["sync", "exists", "not_exists"])
    def test_change_states_trigger_reconcile(self, state):
        notification = ChannelNotification.from_headers(headers(state=state))
        assert classify(notification) is NotificationAction.RECONCILE

    def test_unknown_state_is_ignored(self):
        notification = ChannelNotification.from_headers(headers(state="mystery"))
        assert classify(notification) is NotificationAction.IGNORE


class TestInlineReceiver:
    @pytest.fixture
    def receiver(self, store, engine):
        return NotificationReceiver(store, engine, inline=True)

    async def test_known_channel_reconciles(self, receiver, store, provider, subscribed_user, now):
        provider.snapshot = [remote_event("e1", now + timedelta(hours=1))]

        outcome = await receiver.handle(receiver.parse(headers()))

        assert outcome is NotificationOutcome.RECONCILED
        assert await store.count_mirrored_events(USER_EMAIL) == 1

    async def test_sync_state_also_reconciles(self, receiver, store, provider, subscribed_user, now):
        provider.snapshot = [remote_event("e1", now + timedelta(hours=1))]
        outcome = await receiver.handle(receiver.parse(headers(state="sync")))
        assert outcome is NotificationOutcome.RECONCILED

    async def test_unknown_channel_changes_nothing(self, receiver, store, provider, subscribed_user, now):
        provider.snapshot = [remote_event("e1", now + timedelta(hours=1))]

        outcome = await receiver.handle(receiver.parse(headers(channel_id="stale-channel")))

        assert outcome is NotificationOutcome.UNKNOWN_CHANNEL
        assert provider.calls == []
        assert await store.count_mirrored_events() == 0

    async def test_ignored_state_does_not_fetch(self, receiver, provider, subscribed_user):
        outcome = await receiver.handle(receiver.parse(headers(state="mystery")))
        assert outcome is NotificationOutcome.IGNORED
        assert provider.calls == []

    async def test_user_without_credential_is_acknowledged(self, receiver, store, provider, subscribed_user):
        await store.upsert_user(USER_EMAIL, access_token=None)

        outcome = await receiver.handle(receiver.parse(headers()))

        assert outcome is NotificationOutcome.NO_CREDENTIAL
        assert provider.calls == []

    async def test_rejected_credential_is_acknowledged(self, receiver, provider, subscribed_user):
        provider.rejected_tokens.add(subscribed_user.access_token)
        outcome = await receiver.handle(receiver.parse(headers()))
        assert outcome is NotificationOutcome.CREDENTIAL_REJECTED

    async def test_fetch_failure_propagates(self, receiver, provider, subscribed_user):
        provider.fail("list")
        with pytest.raises(ProviderUnavailable):
            await receiver.handle(receiver.parse(headers()))

    def test_parse_rejects_missing_state(self, receiver):
        with pytest.raises(InvalidNotification):
            receiver.parse({"X-Goog-Channel-ID": CHANNEL_ID})


class TestBackgroundReceiver:
    @pytest.fixture
    def receiver(self, store, engine):
        return NotificationReceiver(store, engine)

    async def test_reconciliation_runs_after_acknowledgment(self, receiver, store, provider, subscribed_user, now):
        provider.snapshot = [remote_event("e1", now + timedelta(hours=1))]

        outcome = await receiver.handle(receiver.parse(headers()))
        assert outcome is NotificationOutcome.SCHEDULED

        await receiver.drain()
        assert await store.count_mirrored_events(USER_EMAIL) == 1

    async def test_background_failure_is_contained(self, receiver, store, provider, subscribed_user):
        provider.fail("list")

        outcome = await receiver.handle(receiver.parse(headers()))
        await receiver.drain()

        assert outcome is NotificationOutcome.SCHEDULED
        assert await store.count_mirrored_events() == 0

    async def test_unexpected_background_error_is_logged(self, receiver, provider, subscribed_user, caplog):
        provider.fail("list", RuntimeError("connection reset"))

        with caplog.at_level(logging.ERROR, logger="calmirror.core.notifications"):
            await receiver.handle(receiver.parse(headers()))
            await receiver.drain()

        records = [r for r in caplog.records if r.name == "calmirror.core.notifications"]
        assert len(records) == 1
        assert records[0].exc_info[0] is RuntimeError
        assert USER_EMAIL in records[0].getMessage()
