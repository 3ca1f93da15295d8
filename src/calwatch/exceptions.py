"""Error taxonomy shared by the stream engine, channel manager and dispatcher."""

from enum import Enum
from typing import Any, Mapping, Optional


class CalendarServiceError(Exception):
    """Base exception for calendar service errors."""
    pass


class AuthenticationError(CalendarServiceError):
    """Authentication-related errors."""
    pass


class TransportError(CalendarServiceError):
    """The request could not be issued (network failure, timeout)."""
    pass


class RemoteRejection(CalendarServiceError):
    """The remote service answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str, reason: Optional[str] = None):
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.reason = reason

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500

    @property
    def is_server_error(self) -> bool:
        return self.status_code >= 500


class SyncTokenInvalidError(RemoteRejection):
    """The sync token is no longer accepted (HTTP 410); a full pull is required."""
    pass


class MalformedPayloadError(CalendarServiceError):
    """A 2xx response body did not have the expected shape."""
    pass


class ConversionError(CalendarServiceError):
    """A raw record could not be mapped to its typed form."""

    def __init__(self, message: str, record: Optional[Mapping[str, Any]] = None):
        super().__init__(message)
        self.record = record


class StreamClosedError(CalendarServiceError):
    """A page stream was pulled again after a failed page fetch."""
    pass


class SubscriptionError(CalendarServiceError):
    """A watch request was rejected or could not be issued."""
    pass


class StopError(CalendarServiceError):
    """A channel stop request failed."""
    pass


class ChannelExpiredError(StopError):
    """The remote service no longer knows the channel."""
    pass


class DispatchErrorReason(str, Enum):
    """Why an inbound notification was refused."""

    UNRECOGNIZED = "unrecognized"
    TOKEN_MISMATCH = "token_mismatch"
    MISSING_SYNC_TOKEN = "missing_sync_token"


class DispatchError(CalendarServiceError):
    """An inbound notification could not be handled."""

    def __init__(self, reason: DispatchErrorReason, message: str, channel_id: Optional[str] = None):
        super().__init__(message)
        self.reason = reason
        self.channel_id = channel_id
