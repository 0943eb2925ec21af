"""Data models for users, channels and mirrored events."""

from dataclasses import dataclass, field
from datetime import datetime, timezone


def to_timestamp(value: datetime) -> float:
    """Convert an aware (or naive UTC) datetime to a Unix timestamp."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def from_timestamp(value: float) -> datetime:
    """Convert a stored Unix timestamp back into an aware UTC datetime."""
    return datetime.fromtimestamp(value, tz=timezone.utc)


@dataclass(frozen=True)
class ChannelDescriptor:
    """
    Identity of an open push-notification channel.

    Attributes:
        channel_id: Caller-chosen identifier, unique per open call
        resource_id: Provider-assigned identifier of the watched resource
        expiration: When the provider stops delivering on this channel
    """

    channel_id: str
    resource_id: str
    expiration: datetime

    def expires_within(self, now: datetime, seconds: float) -> bool:
        """Return True if the channel expires less than ``seconds`` after ``now``."""
        return to_timestamp(self.expiration) - to_timestamp(now) < seconds


@dataclass
class User:
    """
    A mirrored calendar owner.

    Attributes:
        email: Stable user key
        access_token: Current bearer credential (refreshed externally)
        refresh_token: Opaque refresh credential, stored but never used here
        name: Display name
        channel: Active push channel, if any
    """

    email: str
    access_token: str | None = None
    refresh_token: str | None = None
    name: str | None = None
    channel: ChannelDescriptor | None = None

    @property
    def has_credential(self) -> bool:
        return bool(self.access_token)


@dataclass
class RemoteEvent:
    """
    An event as returned by the provider, before field mapping.

    All fields are optional because upstream payloads are not trusted to be
    complete; the reconciliation engine decides what is usable.
    """

    id: str | None = None
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start_datetime: str | None = None
    start_date: str | None = None
    end_datetime: str | None = None
    end_date: str | None = None

    @classmethod
    def from_api(cls, item: dict) -> "RemoteEvent":
        """Build from a Calendar v3 event resource, ignoring unknown fields."""
        start = item.get("start") or {}
        end = item.get("end") or {}
        return cls(
            id=item.get("id") or None,
            summary=item.get("summary"),
            description=item.get("description"),
            location=item.get("location"),
            start_datetime=start.get("dateTime"),
            start_date=start.get("date"),
            end_datetime=end.get("dateTime"),
            end_date=end.get("date"),
        )


@dataclass
class MirroredEvent:
    """
    A locally stored copy of a remote event.

    Identity is the merge key ``(user_email, remote_event_id)``.
    """

    user_email: str
    remote_event_id: str
    title: str
    start_time: datetime
    end_time: datetime
    description: str | None = None
    location: str | None = None

    @property
    def merge_key(self) -> tuple[str, str]:
        return (self.user_email, self.remote_event_id)

    def to_dict(self) -> dict:
        return {
            "id": self.remote_event_id,
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
        }


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation run, for logging and API responses."""

    user_email: str
    merged_count: int = 0
    skipped_count: int = 0
    pruned_count: int = 0
    snapshot_size: int = 0
    skipped_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "user_email": self.user_email,
            "merged_count": self.merged_count,
            "skipped_count": self.skipped_count,
            "pruned_count": self.pruned_count,
            "snapshot_size": self.snapshot_size,
        }
