"""Wires settings, storage, API access, channel manager and dispatcher together."""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

import pytz
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .channels import ChannelManager
from .config import Settings
from .database import DatabaseManager
from .dispatcher import EventCallbacks, NotificationDispatcher, SeenIdClassifier, TimestampClassifier
from .exceptions import StopError, SubscriptionError
from .models import Channel, Event
from .services import BaseRequestIssuer, GoogleCalendarService, GoogleRequestIssuer

logger = logging.getLogger(__name__)


def logging_callbacks() -> EventCallbacks:
    """Callbacks that only log; used when the host application supplies none."""
    event_logger = logger.getChild('events')

    def on_new_event(event: Event) -> None:
        event_logger.info(f"Created: {event.id} {event.summary!r}")

    def on_event_update(event: Event) -> None:
        event_logger.info(f"Updated: {event.id} {event.summary!r}")

    def on_event_delete(event: Event) -> None:
        event_logger.info(f"Deleted: {event.id}")

    return EventCallbacks(
        on_new_event=on_new_event,
        on_event_update=on_event_update,
        on_event_delete=on_event_delete,
    )


class ChannelRuntime:
    """Everything needed to watch calendars and handle notifications."""

    def __init__(
        self,
        settings: Settings,
        issuer: Optional[BaseRequestIssuer] = None,
        callbacks: Optional[EventCallbacks] = None,
    ):
        """Initialize runtime.

        Args:
            settings: Application settings
            issuer: Request issuer, an authorized Google issuer by default
            callbacks: Event callbacks, logging-only by default
        """
        self.settings = settings
        self.db_manager = DatabaseManager(settings)
        self.issuer = issuer or GoogleRequestIssuer(settings)
        self.service = GoogleCalendarService(self.issuer, page_size=settings.page_size)
        self.manager = ChannelManager(self.service, self.db_manager)
        classifier = SeenIdClassifier() if settings.classify_with_seen_ids else TimestampClassifier()
        self.dispatcher = NotificationDispatcher(
            self.manager,
            callbacks or logging_callbacks(),
            classifier=classifier,
        )
        self.logger = logger.getChild('runtime')

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.cleanup()

    async def initialize(self) -> None:
        """Create tables and load stored channels."""
        self.db_manager.init_db()
        self.manager.load()
        self.logger.info("Channel runtime initialized")

    async def cleanup(self) -> None:
        """Release transport resources."""
        await self.issuer.close()
        self.logger.info("Channel runtime cleaned up")

    def requested_expiration(self) -> Optional[datetime]:
        """Expiration to ask for on new channels, from ``channel_ttl_seconds``."""
        ttl = self.settings.channel_ttl_seconds
        if not ttl:
            return None
        return datetime.now(pytz.UTC) + timedelta(seconds=ttl)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        retry=retry_if_exception_type((SubscriptionError, StopError)),
        reraise=True,
    )
    async def _renew_with_retry(self, channel: Channel) -> Channel:
        if self.manager.get_channel(channel.id) is None:
            # stopped by an earlier attempt, only the watch is left to redo
            return await self.manager.subscribe(
                channel.collection, channel.callback_address, self.requested_expiration()
            )
        return await self.manager.renew(channel, self.requested_expiration())

    async def renew_due_channels(
        self,
        renew_before: Optional[timedelta] = None,
        force: bool = False,
    ) -> List[Channel]:
        """Renew channels expiring within the renewal window.

        Args:
            renew_before: Window, ``channel_renew_before_mins`` by default
            force: Renew every tracked channel regardless of expiration

        Returns:
            Replacement channels; channels that failed to renew are logged and skipped
        """
        # channels watched, renewed or stopped by another process since the last round
        self.manager.load()

        if force:
            due = self.manager.channels
        else:
            if renew_before is None:
                renew_before = timedelta(minutes=self.settings.channel_renew_before_mins)
            window = renew_before
            due = self.manager.channels_due_for_renewal(window)

        renewed = []
        for channel in due:
            try:
                replacement = await self._renew_with_retry(channel)
            except (SubscriptionError, StopError) as e:
                self.logger.error(f"Failed to renew channel {channel.id} for {channel.collection}: {e}")
                continue
            renewed.append(replacement)
        return renewed
