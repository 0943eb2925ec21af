"""Error taxonomy shared by the sync core and the HTTP layer."""


class CalMirrorError(Exception):
    """Base class for errors that map onto an HTTP-equivalent status.

    Attributes:
        message: Human readable description
        status_code: Status the API layer reports for this error
    """

    status_code = 500

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class Unauthorized(CalMirrorError):
    """No usable bearer credential for the user. Terminal for the trigger."""

    status_code = 401


class InvalidNotification(CalMirrorError):
    """Inbound push signal is missing required correlation fields."""

    status_code = 400


class InvalidCallbackAddress(CalMirrorError):
    """Channel callback address is not a public HTTPS URL."""

    status_code = 400


class EventNotFound(CalMirrorError):
    """Mirrored event does not exist for the user."""

    status_code = 404


class ProviderUnavailable(CalMirrorError):
    """Remote fetch or channel call failed or timed out."""

    status_code = 502


class StoreUnavailable(CalMirrorError):
    """Persistence failure."""

    status_code = 503
