"""Scheduler for renewing push channels before they expire.

This module provides APScheduler integration for the channel renewal sweep.
Channels self-expire after at most a week, so a periodic job rotates every
channel that is about to lapse.
"""

import logging
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from calmirror.core.config import AppConfig
from calmirror.core.exceptions import CalMirrorError
from calmirror.core.subscriptions import SubscriptionManager

logger = logging.getLogger(__name__)

RENEWAL_JOB_ID = "channel_renewal"


class ChannelRenewalScheduler:
    """Runs SubscriptionManager.renew_expiring on an interval."""

    def __init__(self, config: AppConfig, subscriptions: SubscriptionManager):
        """Initialize the renewal scheduler.

        Args:
            config: Application configuration
            subscriptions: Subscription manager performing the rotations
        """
        self.config = config
        self.subscriptions = subscriptions
        self.scheduler = AsyncIOScheduler()
        self._running = False
        self.last_run: datetime | None = None
        self.last_stats: dict[str, int] | None = None

    @property
    def is_running(self) -> bool:
        """Return True if the scheduler is actively running."""
        return self._running

    async def start(self) -> None:
        """Start the scheduler and register the renewal job."""
        if self._running:
            logger.warning("Renewal scheduler already running")
            return

        if not self.config.webhook.callback_url:
            logger.warning("Webhook callback_url not configured; channel renewal disabled")
            return

        self.scheduler.add_job(
            self.run_renewal,
            trigger=IntervalTrigger(minutes=self.config.webhook.renewal_check_minutes),
            id=RENEWAL_JOB_ID,
            name="Channel renewal",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(),
        )
        self.scheduler.start()
        self._running = True

        logger.info(
            f"Renewal scheduler started (every {self.config.webhook.renewal_check_minutes} min)"
        )

    async def stop(self) -> None:
        """Stop the scheduler."""
        if not self._running:
            return

        self.scheduler.shutdown(wait=False)
        self._running = False

        logger.info("Renewal scheduler stopped")

    async def run_renewal(self) -> dict[str, int] | None:
        """Rotate channels expiring within the configured margin."""
        callback_url = self.config.webhook.callback_url
        if not callback_url:
            return None

        margin = timedelta(hours=self.config.webhook.renewal_margin_hours)
        try:
            stats = await self.subscriptions.renew_expiring(callback_url, margin)
        except CalMirrorError as exc:
            logger.error("Channel renewal sweep failed: %s", exc)
            return None

        self.last_run = datetime.now()
        self.last_stats = stats
        return stats
