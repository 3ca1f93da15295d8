"""Cursor-driven adapter turning a paged listing endpoint into an async sequence."""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, Generic, List, Mapping, Optional, TypeVar, Union

from .exceptions import MalformedPayloadError, StreamClosedError

if TYPE_CHECKING:
    from .services.base import BaseRequestIssuer

logger = logging.getLogger(__name__)

T = TypeVar('T')

RawRecord = Dict[str, Any]


@dataclass(frozen=True)
class PageToken:
    """Continuation of a pagination walk."""

    value: str


@dataclass(frozen=True)
class SyncToken:
    """Start of an incremental walk returning changes since a previous one."""

    value: str


Cursor = Optional[Union[PageToken, SyncToken]]


@dataclass
class Page:
    """One decoded listing response."""

    records: List[RawRecord] = field(default_factory=list)
    next_page_token: Optional[str] = None
    next_sync_token: Optional[str] = None


class PageFetcher:
    """Issues one listing request per cursor and decodes the page."""

    def __init__(
        self,
        issuer: "BaseRequestIssuer",
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        max_results: Optional[int] = None,
        items_field: str = 'items',
    ):
        """Initialize page fetcher.

        Args:
            issuer: Request issuer
            path: Listing path relative to the API base URL
            params: Fixed query parameters sent with every page
            max_results: Optional ``maxResults`` page size
            items_field: Name of the array field holding the records
        """
        self.issuer = issuer
        self.path = path
        self.params = dict(params or {})
        self.max_results = max_results
        self.items_field = items_field

    def build_params(self, cursor: Cursor) -> Dict[str, Any]:
        params = dict(self.params)
        if self.max_results:
            params['maxResults'] = self.max_results
        if isinstance(cursor, PageToken):
            params['pageToken'] = cursor.value
        elif isinstance(cursor, SyncToken):
            params['syncToken'] = cursor.value
        return params

    async def fetch(self, cursor: Cursor = None) -> Page:
        """Fetch the page addressed by ``cursor``.

        Raises:
            TransportError: If the request could not be issued
            RemoteRejection: If the service answered with a non-2xx status
            MalformedPayloadError: If the body is not a listing page
        """
        response = await self.issuer.request('GET', self.path, params=self.build_params(cursor))
        response.raise_for_status()
        return self.parse(response.payload)

    def parse(self, payload: Any) -> Page:
        if not isinstance(payload, dict):
            raise MalformedPayloadError(f"Listing {self.path} returned {type(payload).__name__}, expected object")

        records = payload.get(self.items_field, [])
        if records is None:
            records = []
        if not isinstance(records, list):
            raise MalformedPayloadError(f"Listing {self.path} field '{self.items_field}' is not an array")

        next_page_token = payload.get('nextPageToken')
        next_sync_token = payload.get('nextSyncToken')
        for name, value in (('nextPageToken', next_page_token), ('nextSyncToken', next_sync_token)):
            if value is not None and not isinstance(value, str):
                raise MalformedPayloadError(f"Listing {self.path} field '{name}' is not a string")

        return Page(
            records=records,
            next_page_token=next_page_token or None,
            next_sync_token=next_sync_token or None,
        )


class PageStream(Generic[T]):
    """Single-pass, single-consumer async sequence over a paged listing.

    Records are yielded in page order, then in the order each page lists them.
    A failed page fetch closes the stream: the error is raised once and every
    later pull raises :class:`StreamClosedError`, since page tokens are
    stateful on the server and cannot be safely re-issued. A failed conversion
    leaves the offending record buffered, so pulling again raises the same
    :class:`ConversionError`.

    Once the stream is exhausted, :attr:`next_sync_token` holds the sync token
    returned by the last page of the walk, if any.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        convert: Callable[[RawRecord], T],
        initial_cursor: Cursor = None,
    ):
        self.fetcher = fetcher
        self.convert = convert
        self._cursor: Cursor = initial_cursor
        self._buffer: Deque[RawRecord] = deque()
        self._started = False
        self._exhausted = False
        self._error: Optional[BaseException] = None
        self._next_sync_token: Optional[str] = None
        self.pages_fetched = 0

    def __aiter__(self) -> "PageStream[T]":
        return self

    async def __anext__(self) -> T:
        if self._error is not None:
            raise StreamClosedError(
                f"Stream over {self.fetcher.path} failed and cannot be resumed"
            ) from self._error

        while not self._buffer:
            if self._started and self._cursor is None:
                self._exhausted = True
                raise StopAsyncIteration
            await self._fetch_next_page()

        record = self._buffer[0]
        item = self.convert(record)
        self._buffer.popleft()
        return item

    async def _fetch_next_page(self) -> None:
        cursor = self._cursor
        try:
            page = await self.fetcher.fetch(cursor)
        except Exception as e:
            self._error = e
            logger.debug(f"Page fetch failed for {self.fetcher.path}: {e}")
            raise

        self._started = True
        self.pages_fetched += 1
        self._buffer.extend(page.records)
        self._cursor = PageToken(page.next_page_token) if page.next_page_token else None
        if page.next_sync_token:
            self._next_sync_token = page.next_sync_token

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    @property
    def next_sync_token(self) -> Optional[str]:
        """Sync token of the completed walk.

        Raises:
            RuntimeError: If the stream has not been drained yet
        """
        if not self._exhausted:
            raise RuntimeError("next_sync_token is only available once the stream is exhausted")
        return self._next_sync_token

    async def collect(self) -> List[T]:
        """Drain the stream into a list."""
        return [item async for item in self]


def open_stream(
    fetcher: PageFetcher,
    convert: Callable[[RawRecord], T],
    initial_cursor: Cursor = None,
) -> PageStream[T]:
    """Open a lazy stream; nothing is fetched until the first pull."""
    return PageStream(fetcher, convert, initial_cursor)
