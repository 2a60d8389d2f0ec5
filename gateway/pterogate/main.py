"""pterogate - multi-panel game server control gateway."""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .config import resolve_config_path, settings
from .errors import PanelError
from .http_utils import panel_error_response
from .panel_store import PanelStore
from .session import PanelSession
from .session_feed import SessionFeed, as_sse, parse_event_filter, parse_last_event_id

logger = logging.getLogger(__name__)

# Shared state populated at startup
_session: PanelSession | None = None
_feed: SessionFeed | None = None


def get_session() -> PanelSession:
    if _session is None:
        raise RuntimeError("Panel session is not initialized")
    return _session


def get_feed() -> SessionFeed:
    if _feed is None:
        raise RuntimeError("Session feed is not initialized")
    return _feed


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: load panels, start the event feed, connect the active panel."""
    global _session, _feed

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store = PanelStore(resolve_config_path())
    store.load()
    logger.info("Loaded %d panels from %s", len(store.panels()), store.path)

    _feed = SessionFeed(
        buffer_size=settings.feed_buffer_size,
        subscriber_queue_size=settings.feed_subscriber_queue_size,
    )
    _feed.start(asyncio.get_running_loop())
    _session = PanelSession(store, _feed)

    if store.is_configured():
        try:
            await _session.connect()
        except PanelError as e:
            logger.warning("Initial connection to panel '%s' failed: %s", store.active_panel_name(), e)
    logger.info("pterogate started")

    yield

    await _session.aclose()
    _session = None
    _feed.stop()
    _feed = None
    logger.info("pterogate stopped")


app = FastAPI(title="pterogate", version="1.0.0", lifespan=lifespan)


# --- Error handling ---


@app.exception_handler(PanelError)
async def panel_exception_handler(request: Request, exc: PanelError):
    return panel_error_response(exc)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error: %s", exc)
    return JSONResponse(status_code=500, content={"error": "internal_error", "detail": "Internal server error"})


# --- Health endpoint ---


@app.get("/health")
async def health():
    session = get_session()
    status = session.status()
    return {
        "status": "connected" if status.connected else ("disconnected" if status.configured else "unconfigured"),
        "session": status.model_dump(mode="json"),
        "feed": get_feed().stats(),
    }


# --- Event stream ---


@app.get("/events", include_in_schema=False)
async def session_events(request: Request):
    """Stream session events as SSE, replaying recent history first."""
    feed = get_feed()
    event_filter = parse_event_filter(request.query_params.get("events"))
    after_id = parse_last_event_id(request.headers.get("last-event-id"))
    try:
        backlog = int(request.query_params.get("backlog", str(settings.feed_backlog_lines)))
    except ValueError:
        backlog = settings.feed_backlog_lines
    backlog = max(1, min(backlog, settings.feed_buffer_size))
    keepalive_seconds = max(5.0, float(settings.feed_keepalive_seconds))

    subscriber = feed.subscribe()

    async def event_stream():
        try:
            for record in feed.backlog(limit=backlog, events=event_filter, after_id=after_id):
                yield as_sse(record)
            while True:
                if await request.is_disconnected():
                    break
                try:
                    record = await asyncio.wait_for(subscriber.get(), timeout=keepalive_seconds)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                if event_filter and record["event"] not in event_filter:
                    continue
                yield as_sse(record)
        finally:
            feed.unsubscribe(subscriber)

    headers = {
        "Cache-Control": "no-cache, no-transform",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=headers)


# --- Mount routers ---

from .router_panels import router as panels_router  # noqa: E402
from .router_servers import router as servers_router  # noqa: E402
from .router_files import router as files_router  # noqa: E402
from .router_console import router as console_router  # noqa: E402

app.include_router(panels_router)
app.include_router(servers_router)
app.include_router(files_router)
app.include_router(console_router)


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
