"""Tests for the channel manager."""

import asyncio

import pytest
from datetime import datetime, timedelta

import pytz

from calwatch.channels import ChannelManager, parse_expiration
from calwatch.database import DatabaseManager
from calwatch.dispatcher import NotificationDispatcher
from calwatch.exceptions import ChannelExpiredError, StopError, SubscriptionError, TransportError
from calwatch.services import GoogleCalendarService

from conftest import ok, error

WATCH = 'calendars/primary/events/watch'
STOP = 'channels/stop'
EVENTS = 'calendars/primary/events'
ADDRESS = 'https://hooks.example.com/webhooks/google'


def watch_handler(resource_id='res-1', expiration_ms=None):
    def handler(params, body):
        payload = {
            'kind': 'api#channel',
            'id': body['id'],
            'resourceId': resource_id,
            'resourceUri': 'https://www.googleapis.com/calendar/v3/calendars/primary/events',
        }
        if expiration_ms is not None:
            payload['expiration'] = str(expiration_ms)
        return ok(payload)
    return handler


def epoch_ms(dt):
    return int(dt.timestamp() * 1000)


@pytest.fixture
def manager(issuer):
    return ChannelManager(GoogleCalendarService(issuer))


@pytest.fixture
def db_manager(settings):
    db = DatabaseManager(settings)
    db.init_db()
    return db


def test_parse_expiration():
    assert parse_expiration('1712345678000') == datetime(2024, 4, 5, 19, 34, 38, tzinfo=pytz.UTC)
    assert parse_expiration(None) is None
    assert parse_expiration('') is None
    assert parse_expiration('soon') is None


@pytest.mark.asyncio
async def test_subscribe_tracks_channel_with_response_expiration(issuer, manager):
    expires = datetime(2030, 1, 1, tzinfo=pytz.UTC)
    issuer.route('POST', WATCH, watch_handler(expiration_ms=epoch_ms(expires)))

    channel = await manager.subscribe('primary', ADDRESS)

    body = issuer.calls[0].json
    assert body['id'] == channel.id
    assert body['token'] == channel.token
    assert body['type'] == 'web_hook'
    assert body['address'] == ADDRESS
    assert 'params' not in body
    assert channel.resource_id == 'res-1'
    assert channel.collection == 'primary'
    assert manager.get_channel(channel.id) == channel
    assert manager.renewal_due_at(channel) == expires
    assert manager.get_sync_token(channel.id) is None


@pytest.mark.asyncio
async def test_subscribe_generates_distinct_ids_and_tokens(issuer, manager):
    issuer.route('POST', WATCH, watch_handler())

    first = await manager.subscribe('primary', ADDRESS)
    second = await manager.subscribe('primary', ADDRESS)

    assert first.id != second.id
    assert first.token != second.token
    assert len(first.token) >= 32
    assert {c.id for c in manager.channels_for('primary')} == {first.id, second.id}


@pytest.mark.asyncio
async def test_subscribe_without_any_expiration(issuer, manager):
    issuer.route('POST', WATCH, watch_handler())

    channel = await manager.subscribe('primary', ADDRESS)

    assert manager.renewal_due_at(channel) is None


@pytest.mark.asyncio
async def test_subscribe_requested_expiration_sent_as_ttl(issuer, manager):
    issuer.route('POST', WATCH, watch_handler())
    requested = datetime.now(pytz.UTC) + timedelta(hours=2)

    channel = await manager.subscribe('primary', ADDRESS, requested)

    ttl = int(issuer.calls[0].json['params']['ttl'])
    assert 7190 <= ttl <= 7200
    # Google echoed no expiration; the requested one stands
    assert manager.renewal_due_at(channel) == requested


@pytest.mark.asyncio
async def test_subscribe_expiration_in_past_rejected(issuer, manager):
    with pytest.raises(SubscriptionError):
        await manager.subscribe('primary', ADDRESS, datetime.now(pytz.UTC) - timedelta(minutes=1))
    assert issuer.calls == []


@pytest.mark.asyncio
async def test_subscribe_rejected_by_google(issuer, manager):
    issuer.queue('POST', WATCH, error(400, "WebHook callback must be HTTPS", reason='push.webhookUrlNotHttps'))

    with pytest.raises(SubscriptionError) as excinfo:
        await manager.subscribe('primary', 'http://insecure.example.com')
    assert excinfo.value.__cause__.status_code == 400
    assert manager.channels == []


@pytest.mark.asyncio
async def test_subscribe_transport_failure(issuer, manager):
    issuer.queue('POST', WATCH, TransportError("timed out"))

    with pytest.raises(SubscriptionError):
        await manager.subscribe('primary', ADDRESS)
    assert manager.channels == []


@pytest.mark.asyncio
async def test_subscribe_response_without_resource_id(issuer, manager):
    issuer.queue('POST', WATCH, ok({'kind': 'api#channel'}))

    with pytest.raises(SubscriptionError):
        await manager.subscribe('primary', ADDRESS)
    assert manager.channels == []


@pytest.mark.asyncio
async def test_stop_forgets_channel_and_sync_state(issuer, manager):
    issuer.route('POST', WATCH, watch_handler())
    issuer.queue('POST', STOP, ok())
    channel = await manager.subscribe('primary', ADDRESS)
    manager.record_sync_token(channel.id, 'S1')

    assert await manager.stop(channel) is True

    assert issuer.calls_to('POST', STOP)[0].json == {
        'id': channel.id, 'resourceId': 'res-1', 'token': channel.token,
    }
    assert manager.get_channel(channel.id) is None
    assert manager.get_sync_state(channel.id) is None


@pytest.mark.asyncio
async def test_stop_twice_is_noop(issuer, manager):
    issuer.route('POST', WATCH, watch_handler())
    issuer.queue('POST', STOP, ok())
    channel = await manager.subscribe('primary', ADDRESS)

    assert await manager.stop(channel.id) is True
    assert await manager.stop(channel.id) is False
    assert len(issuer.calls_to('POST', STOP)) == 1


@pytest.mark.asyncio
async def test_stop_unknown_to_google(issuer, manager):
    issuer.route('POST', WATCH, watch_handler())
    issuer.queue('POST', STOP, error(404, "Channel 'x' not found for project"))
    channel = await manager.subscribe('primary', ADDRESS)

    with pytest.raises(ChannelExpiredError):
        await manager.stop(channel)
    assert manager.get_channel(channel.id) is None


@pytest.mark.asyncio
async def test_stop_failure_keeps_channel(issuer, manager):
    issuer.route('POST', WATCH, watch_handler())
    issuer.queue('POST', STOP, error(500, "Backend Error"))
    channel = await manager.subscribe('primary', ADDRESS)

    with pytest.raises(StopError) as excinfo:
        await manager.stop(channel)
    assert not isinstance(excinfo.value, ChannelExpiredError)
    assert manager.get_channel(channel.id) == channel


@pytest.mark.asyncio
async def test_renew_replaces_channel_and_carries_sync_token(issuer, manager):
    issuer.route('POST', WATCH, watch_handler())
    issuer.queue('POST', STOP, ok())
    old = await manager.subscribe('primary', ADDRESS)
    manager.record_sync_token(old.id, 'S7')

    new = await manager.renew(old)

    assert new.id != old.id
    assert new.collection == old.collection
    assert new.callback_address == old.callback_address
    assert manager.get_channel(old.id) is None
    assert manager.get_sync_token(new.id) == 'S7'
    assert [call.path for call in issuer.calls] == [WATCH, STOP, WATCH]


@pytest.mark.asyncio
async def test_renew_expired_channel(issuer, manager):
    issuer.route('POST', WATCH, watch_handler())
    issuer.queue('POST', STOP, error(404, "not found"))
    old = await manager.subscribe('primary', ADDRESS)

    new = await manager.renew(old)

    assert manager.get_channel(new.id) == new
    assert len(manager.channels) == 1


@pytest.mark.asyncio
async def test_renew_untracked_channel(issuer, manager):
    issuer.route('POST', WATCH, watch_handler())
    issuer.queue('POST', STOP, ok())
    channel = await manager.subscribe('primary', ADDRESS)
    await manager.stop(channel)

    with pytest.raises(SubscriptionError):
        await manager.renew(channel)


@pytest.mark.asyncio
async def test_channels_due_for_renewal(issuer, manager):
    now = datetime(2030, 1, 1, tzinfo=pytz.UTC)
    soon, later = now + timedelta(hours=1), now + timedelta(days=5)
    issuer.queue(
        'POST', WATCH,
        ok({'resourceId': 'r1', 'expiration': str(epoch_ms(soon))}),
        ok({'resourceId': 'r2', 'expiration': str(epoch_ms(later))}),
        ok({'resourceId': 'r3'}),
    )
    expiring = await manager.subscribe('primary', ADDRESS)
    await manager.subscribe('primary', ADDRESS)
    unknown = await manager.subscribe('primary', ADDRESS)

    due = manager.channels_due_for_renewal(timedelta(days=1), now=now)

    assert {c.id for c in due} == {expiring.id, unknown.id}


@pytest.mark.asyncio
async def test_record_sync_token_for_stopped_channel_dropped(issuer, manager):
    issuer.route('POST', WATCH, watch_handler())
    issuer.queue('POST', STOP, ok())
    channel = await manager.subscribe('primary', ADDRESS)
    await manager.stop(channel)

    manager.record_sync_token(channel.id, 'S1')

    assert manager.get_sync_state(channel.id) is None


@pytest.mark.asyncio
async def test_channels_and_sync_state_persist(issuer, db_manager):
    issuer.route('POST', WATCH, watch_handler(expiration_ms=epoch_ms(datetime(2030, 1, 1, tzinfo=pytz.UTC))))
    first = ChannelManager(GoogleCalendarService(issuer), db_manager)
    channel = await first.subscribe('primary', ADDRESS)
    first.record_sync_token(channel.id, 'S1')
    first.record_sync_token(channel.id, 'S2')

    second = ChannelManager(GoogleCalendarService(issuer), db_manager)
    assert second.load() == 1

    restored = second.get_channel(channel.id)
    assert restored.token == channel.token
    assert restored.resource_id == channel.resource_id
    assert restored.expiration == datetime(2030, 1, 1, tzinfo=pytz.UTC)
    assert second.get_sync_token(channel.id) == 'S2'


@pytest.mark.asyncio
async def test_stop_removes_persisted_rows(issuer, db_manager):
    issuer.route('POST', WATCH, watch_handler())
    issuer.queue('POST', STOP, ok())
    first = ChannelManager(GoogleCalendarService(issuer), db_manager)
    channel = await first.subscribe('primary', ADDRESS)
    first.record_sync_token(channel.id, 'S1')
    await first.stop(channel)

    second = ChannelManager(GoogleCalendarService(issuer), db_manager)
    assert second.load() == 0
    with db_manager.get_session() as session:
        assert db_manager.get_sync_states(session) == []


def notification_headers(channel):
    return {
        'X-Goog-Channel-ID': channel.id,
        'X-Goog-Channel-Token': channel.token,
        'X-Goog-Resource-ID': channel.resource_id,
        'X-Goog-Resource-State': 'exists',
    }


@pytest.mark.asyncio
async def test_renew_carries_token_of_pull_in_flight(issuer, manager):
    issuer.route('POST', WATCH, watch_handler())
    old = await manager.subscribe('primary', ADDRESS)
    manager.record_sync_token(old.id, 'S1')

    async def slow_pull(params, body):
        await asyncio.sleep(0.01)
        return ok({'items': [], 'nextSyncToken': 'S2'})

    async def slow_stop(params, body):
        await asyncio.sleep(0.02)
        return ok()

    issuer.route('GET', EVENTS, slow_pull)
    issuer.route('POST', STOP, slow_stop)

    result, new = await asyncio.gather(
        NotificationDispatcher(manager).on_notification(notification_headers(old)),
        manager.renew(old),
    )

    assert result.sync_token == 'S2'
    assert manager.get_sync_token(new.id) == 'S2'


@pytest.mark.asyncio
async def test_pull_queued_behind_renew_is_refused(issuer, manager):
    issuer.route('POST', WATCH, watch_handler())
    old = await manager.subscribe('primary', ADDRESS)
    manager.record_sync_token(old.id, 'S1')

    async def slow_stop(params, body):
        await asyncio.sleep(0.01)
        return ok()

    issuer.route('POST', STOP, slow_stop)

    new, refused = await asyncio.gather(
        manager.renew(old),
        NotificationDispatcher(manager).on_notification(notification_headers(old)),
        return_exceptions=True,
    )

    assert refused.reason.value == 'unrecognized'
    assert issuer.calls_to('GET', EVENTS) == []
    assert manager.get_sync_token(new.id) == 'S1'


@pytest.mark.asyncio
async def test_channel_registered_by_another_process_is_picked_up(issuer, db_manager):
    issuer.route('POST', WATCH, watch_handler())
    issuer.queue('GET', EVENTS, ok({'items': [], 'nextSyncToken': 'S2'}))
    server_side = ChannelManager(GoogleCalendarService(issuer), db_manager)
    assert server_side.load() == 0

    cli_side = ChannelManager(GoogleCalendarService(issuer), db_manager)
    channel = await cli_side.subscribe('primary', ADDRESS)
    cli_side.record_sync_token(channel.id, 'S1')

    result = await NotificationDispatcher(server_side).on_notification(notification_headers(channel))

    assert result.sync_token == 'S2'
    assert issuer.calls_to('GET', EVENTS)[0].params['syncToken'] == 'S1'
    assert server_side.get_channel(channel.id).token == channel.token


@pytest.mark.asyncio
async def test_unknown_channel_not_in_storage_either(issuer, db_manager):
    manager = ChannelManager(GoogleCalendarService(issuer), db_manager)

    assert manager.get_channel('never-registered') is None
    assert await manager.stop('never-registered') is False
    assert issuer.calls == []
