"""Google Calendar API access over httpx."""

import asyncio
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote
import logging

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
import httpx

from ..config import Settings
from ..exceptions import AuthenticationError, TransportError
from ..models import Calendar, Event
from ..pagination import Cursor, PageFetcher, PageStream, open_stream
from .base import ApiResponse, BaseRequestIssuer

logger = logging.getLogger(__name__)


class GoogleRequestIssuer(BaseRequestIssuer):
    """Issues authorized requests against the Calendar v3 API.

    The issuer consumes an authorized-user token file produced elsewhere;
    ``google-auth`` refreshes the access token when it has expired.
    """

    def __init__(self, settings: Settings, credentials: Optional[Credentials] = None):
        self.settings = settings
        self.credentials = credentials
        self.logger = logger.getChild('issuer')
        self._client: Optional[httpx.AsyncClient] = None
        self._refresh_lock = asyncio.Lock()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.google_api_base_url,
                timeout=self.settings.request_timeout_seconds,
                limits=httpx.Limits(
                    max_connections=self.settings.max_concurrent_requests
                ),
            )
        return self._client

    def load_credentials(self) -> Credentials:
        """Load stored credentials from the token file.

        Raises:
            AuthenticationError: If no usable token is stored
        """
        token_path = self.settings.google_token_path
        if not token_path.exists():
            raise AuthenticationError(
                f"Google OAuth token not found at {token_path}. "
                "Authorize the application and store the token there first."
            )
        try:
            return Credentials.from_authorized_user_file(
                str(token_path),
                self.settings.google_scopes,
            )
        except ValueError as e:
            raise AuthenticationError(f"Invalid Google OAuth token file {token_path}: {e}")

    async def _authorization_header(self) -> Dict[str, str]:
        async with self._refresh_lock:
            if self.credentials is None:
                self.credentials = self.load_credentials()
            if not self.credentials.valid:
                if not self.credentials.refresh_token:
                    raise AuthenticationError("Google credentials expired and cannot be refreshed")
                try:
                    await asyncio.get_event_loop().run_in_executor(
                        None,
                        lambda: self.credentials.refresh(Request())
                    )
                except Exception as e:
                    raise AuthenticationError(f"Google token refresh failed: {e}")
                self.logger.info("Refreshed Google access token")
        return {'Authorization': f'Bearer {self.credentials.token}'}

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        json: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> ApiResponse:
        request_headers = await self._authorization_header()
        if headers:
            request_headers.update(headers)

        try:
            response = await self.client.request(
                method,
                path,
                params=params,
                json=json,
                headers=request_headers,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

        payload: Any = None
        if response.content:
            try:
                payload = response.json()
            except ValueError:
                payload = response.text

        self.logger.debug(f"{method} {path} -> {response.status_code}")
        return ApiResponse(
            status_code=response.status_code,
            payload=payload,
            headers=dict(response.headers),
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class GoogleCalendarService:
    """Calendar and event listings plus channel endpoints."""

    def __init__(self, issuer: BaseRequestIssuer, page_size: Optional[int] = None):
        """Initialize Google Calendar service.

        Args:
            issuer: Request issuer
            page_size: ``maxResults`` sent with listing requests
        """
        self.issuer = issuer
        self.page_size = page_size
        self.logger = logger.getChild('calendar')

    @staticmethod
    def _calendar_path(calendar_id: str) -> str:
        return f"calendars/{quote(calendar_id, safe='')}"

    def calendars(self, cursor: Cursor = None, show_deleted: bool = False) -> PageStream[Calendar]:
        """Stream the user's calendar list."""
        params = {'showDeleted': 'true'} if show_deleted else None
        fetcher = PageFetcher(
            self.issuer,
            'users/me/calendarList',
            params=params,
            max_results=self.page_size,
        )
        return open_stream(fetcher, Calendar.from_api, cursor)

    def events(self, calendar_id: str, cursor: Cursor = None) -> PageStream[Event]:
        """Stream the events of a calendar.

        With a ``SyncToken`` cursor only events changed since that token are
        returned, cancelled ones included.
        """
        fetcher = PageFetcher(
            self.issuer,
            f"{self._calendar_path(calendar_id)}/events",
            max_results=self.page_size,
        )
        return open_stream(fetcher, Event.from_api, cursor)

    async def watch_events(self, calendar_id: str, body: Mapping[str, Any]) -> Dict[str, Any]:
        """Register a push channel on a calendar's events.

        Raises:
            TransportError: If the request could not be issued
            RemoteRejection: If Google rejects the registration
        """
        response = await self.issuer.request(
            'POST',
            f"{self._calendar_path(calendar_id)}/events/watch",
            json=body,
        )
        response.raise_for_status()
        return response.payload if isinstance(response.payload, dict) else {}

    async def stop_channel(self, body: Mapping[str, Any]) -> None:
        """Stop a push channel.

        Raises:
            TransportError: If the request could not be issued
            RemoteRejection: If Google rejects the request
        """
        response = await self.issuer.request('POST', 'channels/stop', json=body)
        response.raise_for_status()
