"""Data models for calendar listings and push-notification channels."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from dateutil.parser import isoparse
from pydantic import BaseModel, Field, ValidationError, validator
import pytz

from .exceptions import ConversionError


class EventStatus(str, Enum):
    """Google Calendar event status values."""

    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class ChangeKind(str, Enum):
    """How a record delivered by an incremental pull is classified."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class ResourceState(str, Enum):
    """Values of the X-Goog-Resource-State notification header."""

    SYNC = "sync"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = isoparse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=pytz.UTC)
    return parsed


def _parse_event_time(value: Optional[Dict[str, Any]]) -> Optional[datetime]:
    """Parse a Google ``{dateTime}`` or ``{date}`` object."""
    if not value:
        return None
    if value.get('dateTime'):
        return _parse_timestamp(value['dateTime'])
    if value.get('date'):
        return _parse_timestamp(value['date'])
    return None


class Calendar(BaseModel):
    """Calendar list entry."""

    id: str = Field(..., description="Calendar ID")
    summary: str = Field("", description="Calendar name")
    description: Optional[str] = Field(None)
    time_zone: str = Field("UTC")
    color: Optional[str] = Field(None)
    access_role: Optional[str] = Field(None)
    is_primary: bool = Field(False)
    deleted: bool = Field(False, description="Set on entries removed since the last sync token")

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Calendar":
        """Convert a calendarList resource.

        Raises:
            ConversionError: If the record cannot be converted
        """
        if not isinstance(data, dict) or not data.get('id'):
            raise ConversionError("Calendar record without id", record=data if isinstance(data, dict) else None)
        try:
            return cls(
                id=data['id'],
                summary=data.get('summaryOverride') or data.get('summary', ''),
                description=data.get('description'),
                time_zone=data.get('timeZone') or 'UTC',
                color=data.get('backgroundColor'),
                access_role=data.get('accessRole'),
                is_primary=data.get('primary', False),
                deleted=data.get('deleted', False),
            )
        except ValidationError as e:
            raise ConversionError(f"Invalid calendar {data.get('id')}: {e}", record=data)


class Event(BaseModel):
    """Calendar event with the fields needed for sequencing and classification.

    Cancelled events returned by an incremental pull carry little more than
    ``id`` and ``status``, so everything else is optional.
    """

    id: str = Field(..., description="Event ID")
    status: EventStatus = Field(EventStatus.CONFIRMED)
    summary: str = Field("", description="Event title")
    description: Optional[str] = Field(None)
    location: Optional[str] = Field(None)
    start: Optional[datetime] = Field(None)
    end: Optional[datetime] = Field(None)
    all_day: bool = Field(False)
    created: Optional[datetime] = Field(None)
    updated: Optional[datetime] = Field(None)
    etag: Optional[str] = Field(None)
    ical_uid: Optional[str] = Field(None)
    recurring_event_id: Optional[str] = Field(None)
    html_link: Optional[str] = Field(None)
    original_data: Optional[Dict[str, Any]] = Field(None, description="Raw API record")

    @validator('start', 'end', 'created', 'updated', pre=True)
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v

    @validator('end')
    def end_not_before_start(cls, v, values):
        start = values.get('start')
        if v is not None and start is not None and v < start:
            raise ValueError(f'End time ({v}) is before start time ({start})')
        return v

    @property
    def is_cancelled(self) -> bool:
        return self.status == EventStatus.CANCELLED

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Event":
        """Convert an events resource.

        Raises:
            ConversionError: If the record cannot be converted
        """
        if not isinstance(data, dict) or not data.get('id'):
            raise ConversionError("Event record without id", record=data if isinstance(data, dict) else None)
        try:
            start = data.get('start') or {}
            return cls(
                id=data['id'],
                status=data.get('status', EventStatus.CONFIRMED.value),
                summary=data.get('summary', ''),
                description=data.get('description'),
                location=data.get('location'),
                start=_parse_event_time(start),
                end=_parse_event_time(data.get('end')),
                all_day='date' in start,
                created=_parse_timestamp(data.get('created')),
                updated=_parse_timestamp(data.get('updated')),
                etag=data.get('etag'),
                ical_uid=data.get('iCalUID'),
                recurring_event_id=data.get('recurringEventId'),
                html_link=data.get('htmlLink'),
                original_data=data,
            )
        except (ValidationError, ValueError, TypeError, OverflowError) as e:
            raise ConversionError(f"Invalid event {data.get('id')}: {e}", record=data)


class Channel(BaseModel):
    """A registered push-notification subscription for one calendar."""

    id: str = Field(..., description="Channel ID chosen by the client")
    resource_id: str = Field(..., description="Opaque ID assigned by Google")
    token: str = Field(..., description="Correlation secret echoed on every notification")
    callback_address: str = Field(..., description="HTTPS address receiving notifications")
    collection: str = Field(..., description="Watched calendar ID")
    expiration: Optional[datetime] = Field(None)
    resource_uri: Optional[str] = Field(None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))

    @validator('expiration', 'created_at', pre=True)
    def ensure_timezone_aware(cls, v):
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v

    def __repr__(self) -> str:
        # keep the token out of logs and tracebacks
        return (
            f"Channel(id={self.id!r}, collection={self.collection!r}, "
            f"resource_id={self.resource_id!r}, expiration={self.expiration!r})"
        )

    __str__ = __repr__


class SyncState(BaseModel):
    """How far incremental sync has progressed for a channel."""

    channel_id: str
    sync_token: Optional[str] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))


class ClassifiedEvent(BaseModel):
    """An event paired with its change classification."""

    event: Event
    kind: ChangeKind


class CallbackFailure(BaseModel):
    """A user callback that raised while handling a classified event."""

    event_id: str
    kind: ChangeKind
    error: str
    error_type: str


class DispatchResult(BaseModel):
    """Outcome of handling one inbound notification."""

    channel_id: str
    resource_state: ResourceState
    message_number: Optional[int] = None
    pulled: bool = False
    full_resync: bool = False
    sync_token: Optional[str] = None
    events: List[ClassifiedEvent] = Field(default_factory=list)
    callback_failures: List[CallbackFailure] = Field(default_factory=list)

    def count(self, kind: ChangeKind) -> int:
        return sum(1 for item in self.events if item.kind == kind)
