"""Google Calendar push channels and incremental event pulls."""

__version__ = "0.1.0"

from .services import GoogleCalendarService, GoogleRequestIssuer
from .channels import ChannelManager
from .dispatcher import EventCallbacks, NotificationDispatcher
from .pagination import PageStream, PageToken, SyncToken, open_stream

__all__ = [
    'ChannelManager',
    'EventCallbacks',
    'GoogleCalendarService',
    'GoogleRequestIssuer',
    'NotificationDispatcher',
    'PageStream',
    'PageToken',
    'SyncToken',
    'open_stream',
]
