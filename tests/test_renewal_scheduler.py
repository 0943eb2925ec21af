from datetime import timedelta

from calmirror.api.scheduler import RENEWAL_JOB_ID, ChannelRenewalScheduler
from calmirror.core.config import AppConfig, GeneralConfig, WebhookConfig
from calmirror.core.models import ChannelDescriptor
from calmirror.core.subscriptions import SubscriptionManager

from .conftest import CALLBACK, USER_EMAIL


async def test_run_renewal_rotates_expiring_channels(tmp_path, store, provider, user, now):
    await store.save_user_channel(USER_EMAIL, ChannelDescriptor("old", "r", now + timedelta(hours=1)))
    config = AppConfig(general=GeneralConfig(data_dir=tmp_path), webhook=WebhookConfig(callback_url=CALLBACK))
    renewals = ChannelRenewalScheduler(config, SubscriptionManager(store, provider.factory))

    stats = await renewals.run_renewal()

    assert stats == {"renewed": 1, "failed": 0}
    assert renewals.last_stats == stats
    assert provider.closed == ["old"]


async def test_start_registers_job_and_stop_shuts_down(tmp_path, store, provider):
    config = AppConfig(general=GeneralConfig(data_dir=tmp_path), webhook=WebhookConfig(callback_url=CALLBACK))
    renewals = ChannelRenewalScheduler(config, SubscriptionManager(store, provider.factory))

    await renewals.start()
    try:
        assert renewals.is_running
        assert renewals.scheduler.get_job(RENEWAL_JOB_ID) is not None
    finally:
        await renewals.stop()
    assert not renewals.is_running


async def test_start_without_callback_is_disabled(tmp_path, store, provider):
    config = AppConfig(general=GeneralConfig(data_dir=tmp_path))
    renewals = ChannelRenewalScheduler(config, SubscriptionManager(store, provider.factory))

    await renewals.start()

    assert not renewals.is_running
    assert await renewals.run_renewal() is None
