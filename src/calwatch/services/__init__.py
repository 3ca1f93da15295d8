"""Calendar API access."""

from .base import ApiResponse, BaseRequestIssuer
from .google import GoogleCalendarService, GoogleRequestIssuer

__all__ = [
    'ApiResponse',
    'BaseRequestIssuer',
    'GoogleCalendarService',
    'GoogleRequestIssuer',
]
