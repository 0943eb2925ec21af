"""Pydantic models for API request/response validation."""

from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from calmirror.core.models import ChannelDescriptor, MirroredEvent, ReconcileResult


class HealthResponse(BaseModel):
    """Response model for health check."""

    status: str = "healthy"
    timestamp: str


class VersionResponse(BaseModel):
    """Response model for version information."""

    version: str
    python_version: str


class MessageResponse(BaseModel):
    message: str


class NotificationAck(BaseModel):
    """Acknowledgment returned to the push transport."""

    message: str
    outcome: str


class ChannelResponse(BaseModel):
    """Response model for an opened push channel."""

    message: str = "Webhook setup successfully"
    channelId: str
    resourceId: str
    expiration: datetime

    @classmethod
    def from_descriptor(cls, channel: ChannelDescriptor) -> "ChannelResponse":
        return cls(
            channelId=channel.channel_id,
            resourceId=channel.resource_id,
            expiration=channel.expiration,
        )


class EventResponse(BaseModel):
    """Response model for a mirrored event."""

    id: str
    title: str
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime

    @classmethod
    def from_event(cls, event: MirroredEvent) -> "EventResponse":
        return cls(
            id=event.remote_event_id,
            title=event.title,
            description=event.description,
            location=event.location,
            start_time=event.start_time,
            end_time=event.end_time,
        )


class EventListResponse(BaseModel):
    events: list[EventResponse]
    merged_count: int


class EventCreateRequest(BaseModel):
    """Request model for creating an event on the remote calendar."""

    title: str = Field(min_length=1)
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime

    @model_validator(mode="after")
    def check_range(self) -> "EventCreateRequest":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class ReconcileResponse(BaseModel):
    """Response model for a reconciliation run."""

    user_email: str
    merged_count: int
    skipped_count: int = 0
    pruned_count: int = 0
    snapshot_size: int = 0

    @classmethod
    def from_result(cls, result: ReconcileResult) -> "ReconcileResponse":
        return cls(**result.as_dict())


class UserCredentialRequest(BaseModel):
    """Credential handed over by the sign-in flow."""

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    name: str | None = None


class UserResponse(BaseModel):
    email: str
    name: str | None = None
    has_credential: bool
    channel_id: str | None = None
    channel_expiration: datetime | None = None
