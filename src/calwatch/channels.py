"""Push-notification channel lifecycle: subscribe, track, renew, stop."""

import asyncio
import logging
import secrets
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union
from uuid import uuid4

import pytz

from .database import DatabaseManager
from .exceptions import (
    ChannelExpiredError, RemoteRejection, StopError, SubscriptionError, TransportError
)
from .models import Channel, SyncState
from .services.google import GoogleCalendarService

logger = logging.getLogger(__name__)

CHANNEL_TYPE = 'web_hook'


def parse_expiration(value) -> Optional[datetime]:
    """Parse Google's channel expiration (epoch milliseconds, usually a string)."""
    if value is None or value == '':
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=pytz.UTC)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


class ChannelManager:
    """Sole owner of the channel table and the sync state table.

    One channel is tracked per ``subscribe`` call; the correlation token is a
    per-channel secret. Renewal is stop followed by a fresh subscribe, since
    Google cannot extend a channel in place. Notifications for a channel are
    serialized through :meth:`lock_for`.
    """

    def __init__(
        self,
        service: GoogleCalendarService,
        db_manager: Optional[DatabaseManager] = None,
    ):
        """Initialize channel manager.

        Args:
            service: Calendar service issuing watch and stop requests
            db_manager: Optional database for write-through persistence
        """
        self.service = service
        self.db_manager = db_manager
        self.logger = logger.getChild('manager')
        self._channels: Dict[str, Channel] = {}
        self._sync_states: Dict[str, SyncState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def load(self) -> int:
        """Load stored channels and sync states from the database.

        Returns:
            Number of channels loaded
        """
        if self.db_manager is None:
            return 0
        with self.db_manager.get_session() as session:
            channels = [row.to_model() for row in self.db_manager.get_channels(session)]
            states = [row.to_model() for row in self.db_manager.get_sync_states(session)]
        self._channels = {channel.id: channel for channel in channels}
        self._sync_states = {
            state.channel_id: state for state in states if state.channel_id in self._channels
        }
        self.logger.info(f"Loaded {len(channels)} stored channels")
        return len(channels)

    @property
    def channels(self) -> List[Channel]:
        return list(self._channels.values())

    def get_channel(self, channel_id: str) -> Optional[Channel]:
        """Tracked channel by ID.

        Channels missing from memory are looked up in the database, so channels
        registered by another process (the CLI next to a running server) are
        picked up without a restart.
        """
        channel = self._channels.get(channel_id)
        if channel is None and self.db_manager is not None:
            channel = self._load_channel(channel_id)
        return channel

    def channels_for(self, collection: str) -> List[Channel]:
        return [channel for channel in self._channels.values() if channel.collection == collection]

    def get_sync_state(self, channel_id: str) -> Optional[SyncState]:
        return self._sync_states.get(channel_id)

    def get_sync_token(self, channel_id: str) -> Optional[str]:
        state = self._sync_states.get(channel_id)
        return state.sync_token if state else None

    def lock_for(self, channel_id: str) -> asyncio.Lock:
        """Mutual exclusion for incremental pulls of one channel."""
        lock = self._locks.get(channel_id)
        if lock is None:
            lock = self._locks[channel_id] = asyncio.Lock()
        return lock

    async def subscribe(
        self,
        collection: str,
        callback_address: str,
        requested_expiration: Optional[datetime] = None,
    ) -> Channel:
        """Register a push channel on a calendar's events.

        Args:
            collection: Calendar ID to watch
            callback_address: HTTPS address receiving notifications
            requested_expiration: Desired expiration; Google may shorten it

        Returns:
            The tracked channel

        Raises:
            SubscriptionError: If the registration fails
        """
        channel_id = str(uuid4())
        token = secrets.token_urlsafe(32)
        body = {
            'id': channel_id,
            'token': token,
            'type': CHANNEL_TYPE,
            'address': callback_address,
        }
        if requested_expiration is not None:
            ttl = int((requested_expiration - datetime.now(pytz.UTC)).total_seconds())
            if ttl <= 0:
                raise SubscriptionError(f"Requested expiration {requested_expiration} is in the past")
            body['params'] = {'ttl': str(ttl)}

        try:
            result = await self.service.watch_events(collection, body)
        except (RemoteRejection, TransportError) as e:
            raise SubscriptionError(f"Failed to watch calendar {collection}: {e}") from e

        resource_id = result.get('resourceId')
        if not resource_id:
            raise SubscriptionError(f"Watch response for {collection} carries no resourceId")
        if result.get('id') not in (None, channel_id):
            self.logger.warning(f"Watch response echoed channel {result.get('id')}, expected {channel_id}")

        expiration = parse_expiration(result.get('expiration'))
        if expiration is None:
            expiration = requested_expiration

        channel = Channel(
            id=channel_id,
            resource_id=resource_id,
            token=token,
            callback_address=callback_address,
            collection=collection,
            expiration=expiration,
            resource_uri=result.get('resourceUri'),
        )
        self._channels[channel.id] = channel
        self._persist_channel(channel)
        self.logger.info(
            f"Watching {collection} with channel {channel.id} "
            f"(expires {expiration.isoformat() if expiration else 'never'})"
        )
        return channel

    def renewal_due_at(self, channel: Channel) -> Optional[datetime]:
        """Deadline by which the channel must be renewed, if one is known."""
        return channel.expiration

    def channels_due_for_renewal(
        self,
        within: timedelta,
        now: Optional[datetime] = None,
    ) -> List[Channel]:
        """Channels with no known expiration or expiring inside ``within``."""
        threshold = (now or datetime.now(pytz.UTC)) + within
        due = []
        for channel in self._channels.values():
            deadline = self.renewal_due_at(channel)
            if deadline is None or deadline <= threshold:
                due.append(channel)
        return due

    async def stop(self, channel: Union[Channel, str]) -> bool:
        """Stop a channel and forget it together with its sync state.

        Stopping a channel that is not tracked is a no-op.

        Args:
            channel: Channel or channel ID

        Returns:
            True if a tracked channel was stopped, False if it was already gone

        Raises:
            ChannelExpiredError: If Google no longer knows the channel; it is
                forgotten locally before raising
            StopError: If the stop request fails otherwise
        """
        channel_id = channel if isinstance(channel, str) else channel.id
        tracked = self.get_channel(channel_id)
        if tracked is None:
            self.logger.debug(f"Channel {channel_id} already stopped")
            return False

        body = {'id': tracked.id, 'resourceId': tracked.resource_id, 'token': tracked.token}
        try:
            await self.service.stop_channel(body)
        except RemoteRejection as e:
            if e.status_code == 404:
                self._forget(channel_id)
                raise ChannelExpiredError(
                    f"Channel {channel_id} for {tracked.collection} is unknown to Google: {e.message}"
                ) from e
            raise StopError(f"Failed to stop channel {channel_id}: {e}") from e
        except TransportError as e:
            raise StopError(f"Failed to stop channel {channel_id}: {e}") from e

        self._forget(channel_id)
        self.logger.info(f"Stopped channel {channel_id} for {tracked.collection}")
        return True

    async def renew(
        self,
        channel: Channel,
        requested_expiration: Optional[datetime] = None,
    ) -> Channel:
        """Replace a channel with a fresh one on the same calendar and address.

        The sync state moves to the replacement. A channel Google already
        expired is logged and replaced all the same.

        Raises:
            SubscriptionError: If the channel is not tracked or the new watch fails
            StopError: If the old channel cannot be stopped
        """
        current = self.get_channel(channel.id)
        if current is None:
            raise SubscriptionError(f"Channel {channel.id} is not tracked")

        # a pull in flight finishes first, so its token is the one carried over
        async with self.lock_for(current.id):
            sync_token = self.get_sync_token(current.id)
            try:
                await self.stop(current)
            except ChannelExpiredError as e:
                self.logger.warning(f"Renewing expired channel: {e}")

        replacement = await self.subscribe(
            current.collection,
            current.callback_address,
            requested_expiration,
        )
        if sync_token:
            self.record_sync_token(replacement.id, sync_token)
        return replacement

    def record_sync_token(self, channel_id: str, token: str) -> None:
        """Store the sync token of a completed incremental pull (last write wins).

        Tokens for channels that were stopped meanwhile are dropped.
        """
        if channel_id not in self._channels:
            self.logger.warning(f"Dropping sync token for untracked channel {channel_id}")
            return
        state = SyncState(channel_id=channel_id, sync_token=token)
        self._sync_states[channel_id] = state
        if self.db_manager is not None:
            with self.db_manager.get_session() as session:
                self.db_manager.save_sync_state(session, state)

    def _forget(self, channel_id: str) -> None:
        self._channels.pop(channel_id, None)
        self._sync_states.pop(channel_id, None)
        self._locks.pop(channel_id, None)
        if self.db_manager is not None:
            with self.db_manager.get_session() as session:
                self.db_manager.delete_channel(session, channel_id)

    def _persist_channel(self, channel: Channel) -> None:
        if self.db_manager is not None:
            with self.db_manager.get_session() as session:
                self.db_manager.save_channel(session, channel)

    def _load_channel(self, channel_id: str) -> Optional[Channel]:
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_channel(session, channel_id)
            if row is None:
                return None
            channel = row.to_model()
            state = row.sync_state.to_model() if row.sync_state is not None else None
        self._channels[channel.id] = channel
        if state is not None:
            self._sync_states[channel.id] = state
        self.logger.info(f"Picked up channel {channel.id} for {channel.collection} from storage")
        return channel
