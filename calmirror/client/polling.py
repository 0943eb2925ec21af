"""Visibility-gated polling of the reconciliation entry point.

Push notifications can be late, lost, or not set up yet (first load, a tab
returning to the foreground). The poll scheduler covers those gaps by
calling the same reconciliation endpoint on a fixed interval, but only while
the host view is visible, so background sessions cost no traffic.
"""

import logging
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from calmirror.utils.logging import CATEGORY_POLLING, category

logger = logging.getLogger(__name__)

Listener = Callable[[], Awaitable[None]]

VISIBILITY_CHANGE = "visibilitychange"
FOCUS = "focus"
BLUR = "blur"


class PageVisibility:
    """Visibility and focus state of the host view, with change listeners."""

    def __init__(self, hidden: bool = False, focused: bool = True):
        self.hidden = hidden
        self.focused = focused
        self._listeners: dict[str, list[Listener]] = {
            VISIBILITY_CHANGE: [],
            FOCUS: [],
            BLUR: [],
        }

    def add_listener(self, event: str, listener: Listener) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown visibility event: {event}")
        if listener not in self._listeners[event]:
            self._listeners[event].append(listener)

    def remove_listener(self, event: str, listener: Listener) -> None:
        if listener in self._listeners.get(event, []):
            self._listeners[event].remove(listener)

    def listener_count(self) -> int:
        return sum(len(listeners) for listeners in self._listeners.values())

    async def emit(self, event: str) -> None:
        for listener in list(self._listeners.get(event, [])):
            await listener()

    async def set_hidden(self, hidden: bool) -> None:
        self.hidden = hidden
        await self.emit(VISIBILITY_CHANGE)

    async def focus(self) -> None:
        self.focused = True
        await self.emit(FOCUS)

    async def blur(self) -> None:
        self.focused = False
        await self.emit(BLUR)


class PollScheduler:
    """
    Fires a reconciliation callback on a fixed interval while the view is visible.

    - At most one interval job exists; arming always removes the old one first
    - Becoming visible or regaining focus triggers the callback immediately
      and re-arms the interval
    - Hiding or losing focus removes the interval job
    - A tick that still fires while hidden is dropped
    - dispose() removes the job and every listener
    """

    def __init__(
        self,
        callback: Callable[[], Awaitable[object]],
        interval: float,
        enabled: bool = True,
        visibility: PageVisibility | None = None,
        scheduler: AsyncIOScheduler | None = None,
        job_id: str = "calendar-poll",
    ):
        """
        Initialize the poll scheduler.

        Args:
            callback: Coroutine function that performs one reconciliation call
            interval: Tick period in seconds
            enabled: Gate for all polling
            visibility: Host visibility signals (a fresh visible one if omitted)
            scheduler: APScheduler instance to use; one is created and owned if omitted
            job_id: Id of the interval job
        """
        if interval <= 0:
            raise ValueError("interval must be greater than zero")

        self.callback = callback
        self.interval = interval
        self.enabled = enabled
        self.visibility = visibility or PageVisibility()
        self.scheduler = scheduler or AsyncIOScheduler()
        self._owns_scheduler = scheduler is None
        self.job_id = job_id
        self._visible = not self.visibility.hidden
        self._attached = False
        self.dropped_ticks = 0

    @property
    def is_armed(self) -> bool:
        """Return True if the interval job exists."""
        return self.scheduler.get_job(self.job_id) is not None

    @property
    def is_visible(self) -> bool:
        return self._visible

    def start(self) -> None:
        """Attach visibility listeners and arm the interval if enabled."""
        if self._attached:
            logger.debug("Poll scheduler already started")
            return

        self.visibility.add_listener(VISIBILITY_CHANGE, self._handle_visibility_change)
        self.visibility.add_listener(FOCUS, self._handle_focus)
        self.visibility.add_listener(BLUR, self._handle_blur)
        self._attached = True

        if self._owns_scheduler and not self.scheduler.running:
            self.scheduler.start()

        if self.enabled:
            self._start_polling()

        logger.info(
            f"Poll scheduler started (interval={self.interval}s, enabled={self.enabled})",
            extra=category(CATEGORY_POLLING),
        )

    def set_enabled(self, enabled: bool) -> None:
        """Enable or disable polling. Enabling twice never creates a second job."""
        self.enabled = enabled
        if enabled:
            self._start_polling()
        else:
            self._stop_polling()

    def dispose(self) -> None:
        """Cancel the interval job and remove all listeners."""
        self._stop_polling()
        if self._attached:
            self.visibility.remove_listener(VISIBILITY_CHANGE, self._handle_visibility_change)
            self.visibility.remove_listener(FOCUS, self._handle_focus)
            self.visibility.remove_listener(BLUR, self._handle_blur)
            self._attached = False

        if self._owns_scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        logger.info("Poll scheduler disposed")

    def _start_polling(self) -> None:
        self._stop_polling()
        if self.enabled and self._visible:
            self.scheduler.add_job(
                self._tick,
                trigger=IntervalTrigger(seconds=self.interval),
                id=self.job_id,
                name="Calendar poll",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.debug(f"Poll job {self.job_id} armed")

    def _stop_polling(self) -> None:
        if self.scheduler.get_job(self.job_id):
            self.scheduler.remove_job(self.job_id)
            logger.debug(f"Poll job {self.job_id} cleared")

    async def _tick(self) -> None:
        if not self._visible:
            self.dropped_ticks += 1
            logger.debug("Dropping poll tick while hidden", extra=category(CATEGORY_POLLING))
            return
        await self.callback()

    async def _refresh_now(self) -> None:
        # Listeners share one emit loop; a failed refresh must not stop the others
        try:
            await self.callback()
        except Exception:  # pylint: disable=broad-except
            logger.exception("Immediate refresh failed", extra=category(CATEGORY_POLLING))

    async def _handle_visibility_change(self) -> None:
        self._visible = not self.visibility.hidden
        if self._visible and self.enabled:
            self._start_polling()
            await self._refresh_now()
        else:
            self._stop_polling()

    async def _handle_focus(self) -> None:
        self._visible = True
        if self.enabled:
            self._start_polling()
            await self._refresh_now()

    async def _handle_blur(self) -> None:
        self._visible = False
        self._stop_polling()
