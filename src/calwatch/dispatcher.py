"""Inbound webhook handling: correlate, pull incrementally, classify, deliver."""

import inspect
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Set, Tuple, Union

from .channels import ChannelManager
from .exceptions import DispatchError, DispatchErrorReason, SyncTokenInvalidError
from .models import (
    CallbackFailure, Channel, ChangeKind, ClassifiedEvent, DispatchResult, Event, ResourceState
)
from .pagination import Cursor, SyncToken
from .services.google import GoogleCalendarService

logger = logging.getLogger(__name__)

HEADER_CHANNEL_ID = 'X-Goog-Channel-ID'
HEADER_CHANNEL_TOKEN = 'X-Goog-Channel-Token'
HEADER_RESOURCE_ID = 'X-Goog-Resource-ID'
HEADER_RESOURCE_STATE = 'X-Goog-Resource-State'
HEADER_MESSAGE_NUMBER = 'X-Goog-Message-Number'

# Google reports created/updated with millisecond precision
TIMESTAMP_GRANULARITY = timedelta(milliseconds=1)

EventCallback = Callable[[Event], Union[None, Awaitable[None]]]


@dataclass
class EventCallbacks:
    """User callbacks, sync or async, invoked once per classified event."""

    on_new_event: Optional[EventCallback] = None
    on_event_update: Optional[EventCallback] = None
    on_event_delete: Optional[EventCallback] = None

    def for_kind(self, kind: ChangeKind) -> Optional[EventCallback]:
        if kind == ChangeKind.CREATED:
            return self.on_new_event
        if kind == ChangeKind.UPDATED:
            return self.on_event_update
        return self.on_event_delete


class TimestampClassifier:
    """Classifies without any memory of earlier deliveries.

    A cancelled event is a deletion. Otherwise an event whose ``created`` and
    ``updated`` timestamps are equal within the API's granularity is taken as
    new, anything else as an update. This is a heuristic: an event edited
    within the same millisecond it was created reads as new, and events
    missing either timestamp read as updates.
    """

    def __init__(self, granularity: timedelta = TIMESTAMP_GRANULARITY):
        self.granularity = granularity

    def classify(self, event: Event) -> ChangeKind:
        if event.is_cancelled:
            return ChangeKind.DELETED
        if event.created is None or event.updated is None:
            return ChangeKind.UPDATED
        if abs(event.updated - event.created) < self.granularity:
            return ChangeKind.CREATED
        return ChangeKind.UPDATED


class SeenIdClassifier:
    """Classifies by remembering which event IDs were already delivered.

    The cache lives in process memory, so after a restart the first delivery
    of every event reads as new.
    """

    def __init__(self, seen: Optional[Set[str]] = None):
        self.seen: Set[str] = set(seen or ())

    def classify(self, event: Event) -> ChangeKind:
        if event.is_cancelled:
            self.seen.discard(event.id)
            return ChangeKind.DELETED
        if event.id in self.seen:
            return ChangeKind.UPDATED
        self.seen.add(event.id)
        return ChangeKind.CREATED


def _header(headers: Mapping[str, Any], name: str) -> Optional[str]:
    value = headers.get(name.lower())
    return str(value) if value is not None else None


class NotificationDispatcher:
    """Handles Google push notifications for channels tracked by a ChannelManager."""

    def __init__(
        self,
        manager: ChannelManager,
        callbacks: Optional[EventCallbacks] = None,
        classifier: Optional[Union[TimestampClassifier, SeenIdClassifier]] = None,
        service: Optional[GoogleCalendarService] = None,
    ):
        """Initialize notification dispatcher.

        Args:
            manager: Channel manager owning channels and sync state
            callbacks: User callbacks for classified events
            classifier: Created/updated/deleted policy, timestamps by default
            service: Service used for pulls, the manager's by default
        """
        self.manager = manager
        self.callbacks = callbacks or EventCallbacks()
        self.classifier = classifier or TimestampClassifier()
        self.service = service or manager.service
        self.logger = logger.getChild('dispatcher')

    async def on_notification(self, headers: Mapping[str, Any]) -> DispatchResult:
        """Handle one webhook delivery.

        Args:
            headers: Request headers of the delivery

        Returns:
            What was pulled, classified and delivered

        Raises:
            DispatchError: If the notification is not correlated with a tracked
                channel, or the pull ended without a sync token
            TransportError, RemoteRejection, ConversionError: If the pull fails
        """
        normalized = {str(key).lower(): value for key, value in headers.items()}
        try:
            channel = self._correlate(normalized)
            state = self._resource_state(normalized, channel)
        except DispatchError as e:
            self.logger.warning(f"Refused notification ({e.reason.value}): {e}")
            raise

        message_number = self._message_number(normalized)
        if state == ResourceState.SYNC:
            self.logger.info(f"Channel {channel.id} for {channel.collection} confirmed")
            return DispatchResult(
                channel_id=channel.id,
                resource_state=state,
                message_number=message_number,
            )

        async with self.manager.lock_for(channel.id):
            try:
                if self.manager.get_channel(channel.id) is None:
                    raise DispatchError(
                        DispatchErrorReason.UNRECOGNIZED,
                        f"Channel {channel.id} was stopped before its pull started",
                        channel_id=channel.id,
                    )
                return await self._pull(channel, state, message_number)
            except DispatchError as e:
                self.logger.warning(f"Notification for channel {channel.id} failed ({e.reason.value}): {e}")
                raise

    def _correlate(self, headers: Mapping[str, Any]) -> Channel:
        channel_id = _header(headers, HEADER_CHANNEL_ID)
        if not channel_id:
            raise DispatchError(DispatchErrorReason.UNRECOGNIZED, "Notification carries no channel ID")

        channel = self.manager.get_channel(channel_id)
        if channel is None:
            raise DispatchError(
                DispatchErrorReason.UNRECOGNIZED,
                f"Channel {channel_id} is not tracked",
                channel_id=channel_id,
            )

        token = _header(headers, HEADER_CHANNEL_TOKEN) or ''
        if not secrets.compare_digest(token.encode(), channel.token.encode()):
            raise DispatchError(
                DispatchErrorReason.TOKEN_MISMATCH,
                f"Token mismatch for channel {channel_id}",
                channel_id=channel_id,
            )

        resource_id = _header(headers, HEADER_RESOURCE_ID)
        if resource_id and resource_id != channel.resource_id:
            raise DispatchError(
                DispatchErrorReason.UNRECOGNIZED,
                f"Resource {resource_id} does not belong to channel {channel_id}",
                channel_id=channel_id,
            )
        return channel

    def _resource_state(self, headers: Mapping[str, Any], channel: Channel) -> ResourceState:
        raw = _header(headers, HEADER_RESOURCE_STATE) or ''
        try:
            return ResourceState(raw.lower())
        except ValueError:
            raise DispatchError(
                DispatchErrorReason.UNRECOGNIZED,
                f"Unknown resource state '{raw}' for channel {channel.id}",
                channel_id=channel.id,
            )

    @staticmethod
    def _message_number(headers: Mapping[str, Any]) -> Optional[int]:
        raw = _header(headers, HEADER_MESSAGE_NUMBER)
        try:
            return int(raw) if raw is not None else None
        except ValueError:
            return None

    async def _drain(self, channel: Channel, cursor: Cursor) -> Tuple[List[Event], Optional[str]]:
        stream = self.service.events(channel.collection, cursor)
        events = [event async for event in stream]
        return events, stream.next_sync_token

    async def _pull(
        self,
        channel: Channel,
        state: ResourceState,
        message_number: Optional[int],
    ) -> DispatchResult:
        sync_token = self.manager.get_sync_token(channel.id)
        cursor = SyncToken(sync_token) if sync_token else None
        full_resync = False

        try:
            events, next_sync_token = await self._drain(channel, cursor)
        except SyncTokenInvalidError:
            if cursor is None:
                raise
            self.logger.warning(
                f"Sync token for channel {channel.id} rejected by Google; performing full pull"
            )
            full_resync = True
            events, next_sync_token = await self._drain(channel, None)

        if not next_sync_token:
            raise DispatchError(
                DispatchErrorReason.MISSING_SYNC_TOKEN,
                f"Pull of {channel.collection} ended without a sync token",
                channel_id=channel.id,
            )

        classified = [ClassifiedEvent(event=event, kind=self.classifier.classify(event)) for event in events]
        self.manager.record_sync_token(channel.id, next_sync_token)
        self.logger.info(
            f"Channel {channel.id}: pulled {len(classified)} changes from {channel.collection}"
            f"{' (full resync)' if full_resync else ''}"
        )

        failures = await self._deliver(classified)
        return DispatchResult(
            channel_id=channel.id,
            resource_state=state,
            message_number=message_number,
            pulled=True,
            full_resync=full_resync,
            sync_token=next_sync_token,
            events=classified,
            callback_failures=failures,
        )

    async def _deliver(self, classified: List[ClassifiedEvent]) -> List[CallbackFailure]:
        failures: List[CallbackFailure] = []
        for item in classified:
            callback = self.callbacks.for_kind(item.kind)
            if callback is None:
                continue
            try:
                outcome = callback(item.event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                self.logger.exception(f"Callback for {item.kind.value} event {item.event.id} failed")
                failures.append(CallbackFailure(
                    event_id=item.event.id,
                    kind=item.kind,
                    error=str(e),
                    error_type=type(e).__name__,
                ))
        return failures
