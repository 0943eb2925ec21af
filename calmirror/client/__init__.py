"""Client-side polling of the calendar mirror."""

from calmirror.client.mirror import MirrorClient
from calmirror.client.polling import PageVisibility, PollScheduler

__all__ = ["MirrorClient", "PageVisibility", "PollScheduler"]
