"""Reconciliation of a remote event snapshot into the local mirror."""

import asyncio
import logging
import weakref
from datetime import date, datetime, timezone

from calmirror.core.exceptions import Unauthorized
from calmirror.core.models import MirroredEvent, ReconcileResult, RemoteEvent, User
from calmirror.sources.base import ProviderFactory
from calmirror.utils.db import EventStore
from calmirror.utils.logging import CATEGORY_RECONCILE, category

logger = logging.getLogger(__name__)

UNTITLED = "Untitled"

PRUNE_NONE = "none"
PRUNE_WINDOW = "window"


def _parse_event_time(date_time: str | None, all_day: str | None) -> datetime | None:
    """
    Resolve an event boundary to an aware datetime.

    An exact date-time wins over an all-day date. All-day dates resolve to
    midnight UTC. Returns None when neither value parses.
    """
    if date_time:
        try:
            value = datetime.fromisoformat(date_time.replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Unparseable dateTime: {date_time!r}")
        else:
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return value

    if all_day:
        try:
            day = date.fromisoformat(all_day)
        except ValueError:
            logger.debug(f"Unparseable date: {all_day!r}")
            return None
        return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)

    return None


def map_remote_event(user_email: str, remote: RemoteEvent) -> MirroredEvent | None:
    """
    Map a provider event onto the mirrored shape.

    Returns:
        The mirrored event, or None if the event cannot be keyed or timed
    """
    if not remote.id:
        return None

    start = _parse_event_time(remote.start_datetime, remote.start_date)
    end = _parse_event_time(remote.end_datetime, remote.end_date)
    if start is None or end is None:
        return None

    return MirroredEvent(
        user_email=user_email,
        remote_event_id=remote.id,
        title=remote.summary or UNTITLED,
        description=remote.description or None,
        location=remote.location or None,
        start_time=start,
        end_time=end,
    )


class ReconciliationEngine:
    """
    Merges a bounded remote snapshot into the EventStore.

    Design:
    - Stateless merge: everything persistent lives in the EventStore
    - Upsert on (user, remote event id); last write wins per event
    - Events without an id or usable times are skipped, never fatal
    - No deletions unless the 'window' prune policy is enabled
    - One merge at a time per user; later triggers queue behind the running one

    Failure semantics:
    - Fetch failures propagate before anything is written
    - A store failure propagates mid-batch; earlier upserts stay applied
    """

    def __init__(
        self,
        store: EventStore,
        provider_factory: ProviderFactory,
        prune_policy: str = PRUNE_NONE,
        page_size: int = 50,
    ):
        """
        Initialize the engine.

        Args:
            store: Event store to merge into
            provider_factory: Builds a provider client from a bearer credential
            prune_policy: 'none' or 'window'
            page_size: Snapshot cap the provider applies; a full page disables pruning
        """
        if prune_policy not in (PRUNE_NONE, PRUNE_WINDOW):
            raise ValueError(f"Unknown prune policy: {prune_policy}")
        self.store = store
        self.provider_factory = provider_factory
        self.prune_policy = prune_policy
        self.page_size = page_size
        # Entries drop out once no run for that user holds or awaits the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, email: str) -> asyncio.Lock:
        lock = self._locks.get(email)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[email] = lock
        return lock

    def is_reconciling(self, email: str) -> bool:
        """Return True while a merge for ``email`` is in flight."""
        lock = self._locks.get(email)
        return lock is not None and lock.locked()

    async def reconcile_email(self, email: str) -> ReconcileResult:
        """Load the user fresh from the store and reconcile."""
        user = await self.store.get_user(email)
        if user is None:
            raise Unauthorized(f"Unknown user: {email}")
        return await self.reconcile(user)

    async def reconcile(self, user: User) -> ReconcileResult:
        """
        Fetch the user's upcoming events and merge them into the store.

        Args:
            user: Owner of the calendar; must carry a bearer credential

        Returns:
            ReconcileResult with the number of events merged

        Raises:
            Unauthorized: User has no credential or the provider rejects it
            ProviderUnavailable: Remote fetch failed or timed out
            StoreUnavailable: A write failed mid-merge
        """
        if not user.has_credential:
            raise Unauthorized(f"No access token for user: {user.email}")

        lock = self._lock_for(user.email)
        if lock.locked():
            logger.debug(f"Reconciliation for {user.email} queued behind in-flight run")

        async with lock:
            return await self._reconcile_locked(user)

    async def _reconcile_locked(self, user: User) -> ReconcileResult:
        window_start = datetime.now(timezone.utc)

        logger.info(f"Reconciling calendar for {user.email}", extra=category(CATEGORY_RECONCILE))
        async with self.provider_factory(user.access_token) as provider:
            snapshot = await provider.list_upcoming_events()

        result = ReconcileResult(user_email=user.email, snapshot_size=len(snapshot))
        seen_ids: set[str] = set()

        for remote in snapshot:
            if not remote.id:
                result.skipped_count += 1
                logger.debug(f"Skipping event without id: {remote.summary!r}")
                continue

            try:
                event = map_remote_event(user.email, remote)
            except Exception as e:  # pylint: disable=broad-except
                logger.warning(f"Failed to map event {remote.id}: {e}")
                event = None

            if event is None:
                result.skipped_count += 1
                result.skipped_ids.append(remote.id)
                logger.warning(f"Skipping event {remote.id}: missing or invalid start/end")
                continue

            await self.store.upsert_mirrored_event(event)
            seen_ids.add(event.remote_event_id)
            result.merged_count += 1

        if self.prune_policy == PRUNE_WINDOW:
            if len(snapshot) < self.page_size:
                result.pruned_count = await self.store.prune_mirrored_events(
                    user.email, seen_ids, since=window_start
                )
            else:
                logger.debug(
                    f"Snapshot for {user.email} filled a whole page; skipping prune",
                    extra=category(CATEGORY_RECONCILE),
                )

        logger.info(
            f"Reconciled {user.email}: merged={result.merged_count} "
            f"skipped={result.skipped_count} pruned={result.pruned_count}",
            extra=category(CATEGORY_RECONCILE),
        )
        return result
