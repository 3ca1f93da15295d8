import asyncio
from typing import Optional

from fastapi import FastAPI, Request, Response, HTTPException
import structlog

from .config import Settings, load_settings
from .exceptions import CalendarServiceError, DispatchError, DispatchErrorReason
from .runtime import ChannelRuntime

logger = structlog.get_logger(__name__)

app = FastAPI(title="calwatch", version="1.0")

DISPATCH_STATUS = {
    DispatchErrorReason.UNRECOGNIZED: 404,
    DispatchErrorReason.TOKEN_MISMATCH: 401,
    DispatchErrorReason.MISSING_SYNC_TOKEN: 503,
}


class ServerState:
    def __init__(self, runtime: ChannelRuntime):
        self.runtime = runtime
        self.running = True
        self.renew_task: Optional[asyncio.Task] = None
        self.settings: Settings = runtime.settings


@app.on_event("startup")
async def on_startup():
    settings = load_settings()
    runtime = ChannelRuntime(settings)
    await runtime.initialize()
    app.state.server = ServerState(runtime)
    logger.info("server started", app=settings.app_name, channels=len(runtime.manager.channels))
    app.state.server.renew_task = asyncio.create_task(_renew_loop(app.state.server))


@app.on_event("shutdown")
async def on_shutdown():
    state: ServerState = app.state.server
    state.running = False
    if state.renew_task:
        state.renew_task.cancel()
        try:
            await state.renew_task
        except asyncio.CancelledError:
            pass
    await state.runtime.cleanup()


@app.get("/health")
async def health():
    state: ServerState = app.state.server
    return {
        "ok": True,
        "app": state.settings.app_name,
        "channels": len(state.runtime.manager.channels),
        "renewal_enabled": state.settings.enable_channel_renewal,
    }


@app.get("/channels")
async def channels():
    manager = app.state.server.runtime.manager
    return [
        {
            "id": channel.id,
            "calendarId": channel.collection,
            "resourceId": channel.resource_id,
            "expiration": channel.expiration.isoformat() if channel.expiration else None,
            "hasSyncToken": manager.get_sync_token(channel.id) is not None,
        }
        for channel in manager.channels
    ]


@app.post("/webhooks/google")
async def google_webhook(request: Request):
    dispatcher = app.state.server.runtime.dispatcher
    try:
        result = await dispatcher.on_notification(request.headers)
    except DispatchError as e:
        logger.warning("notification refused", reason=e.reason.value, channel_id=e.channel_id, error=str(e))
        raise HTTPException(status_code=DISPATCH_STATUS[e.reason], detail=e.reason.value)
    except CalendarServiceError as e:
        # Google retries 5xx deliveries with backoff
        logger.error("notification pull failed", error=str(e), error_type=type(e).__name__)
        raise HTTPException(status_code=502, detail="incremental pull failed")

    if result.callback_failures:
        logger.error(
            "event callbacks failed",
            channel_id=result.channel_id,
            failures=[failure.event_id for failure in result.callback_failures],
        )
    return Response(status_code=204)


async def _renew_loop(state: ServerState):
    """Periodically renew channels that expire soon (if enabled)."""
    interval = state.settings.channel_renew_interval_mins * 60
    while state.running:
        if state.settings.enable_channel_renewal:
            try:
                renewed = await state.runtime.renew_due_channels()
                for channel in renewed:
                    logger.info(
                        "channel renewed",
                        channel_id=channel.id,
                        calendar_id=channel.collection,
                        expiration=channel.expiration.isoformat() if channel.expiration else None,
                    )
            except Exception:
                logger.exception("channel renewal round failed")
        await asyncio.sleep(interval)


