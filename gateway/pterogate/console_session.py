"""Console websocket session for a single server.

States: disconnected -> connecting -> connected -> disconnected.
There is no automatic reconnect; the owner opens a fresh session instead.

Handshake:
    1. the one-time token is appended to the socket URL as ``?token=``
    2. ``Origin`` is set to the panel base URL and a browser user agent is sent
    3. once open, one read task starts and an explicit ``auth`` event carrying
       the same token is sent
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Protocol
from urllib.parse import urlencode, urlsplit

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from .config import settings
from .console_events import (
    AUTH,
    SEND_COMMAND,
    SEND_LOGS,
    SET_STATE,
    AuthSuccess,
    ConsoleEvent,
    ConsoleOutput,
    LogBacklog,
    StatusChanged,
    TokenExpired,
    TokenExpiring,
    encode_event,
    parse_frame,
)
from .errors import (
    NotConnectedError,
    PanelError,
    ProtocolError,
    TokenExpiredError,
    TokenExpiringError,
    TransportError,
)
from .models import PowerSignal

logger = logging.getLogger(__name__)

Connector = Callable[..., Awaitable[Any]]


class ConsoleState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ConsoleObserver(Protocol):
    """Receives console output and errors on the session's read task."""

    def on_output(self, line: str) -> None: ...

    def on_error(self, error: PanelError) -> None: ...


def with_token(socket_url: str, token: str) -> str:
    separator = "&" if "?" in socket_url else "?"
    return f"{socket_url}{separator}{urlencode({'token': token})}"


def derive_origin(socket_url: str) -> str:
    """Best-effort panel origin from a ``ws(s)://`` socket URL."""
    parts = urlsplit(socket_url)
    scheme = {"wss": "https", "ws": "http"}.get(parts.scheme, parts.scheme)
    return f"{scheme}://{parts.netloc}"


class ConsoleSession:
    """Owns one console websocket and dispatches its events to an observer."""

    def __init__(
        self,
        socket_url: str,
        token: str,
        server_id: str,
        observer: ConsoleObserver,
        *,
        origin: str | None = None,
        connector: Connector | None = None,
        user_agent: str | None = None,
        handshake_timeout: float | None = None,
        close_timeout: float | None = None,
    ):
        self._socket_url = socket_url
        self._token = token
        self._server_id = server_id
        self._observer = observer
        self._origin = (origin or derive_origin(socket_url)).rstrip("/")
        self._connector = connector or ws_connect
        self._user_agent = user_agent or settings.ws_user_agent
        self._handshake_timeout = handshake_timeout or settings.ws_handshake_timeout_seconds
        self._close_timeout = close_timeout or settings.ws_close_timeout_seconds
        self._state = ConsoleState.DISCONNECTED
        self._ws: Any = None
        self._reader: asyncio.Task | None = None
        self._terminated = False

    @property
    def state(self) -> ConsoleState:
        return self._state

    @property
    def server_id(self) -> str:
        return self._server_id

    @property
    def is_connected(self) -> bool:
        return self._state is ConsoleState.CONNECTED and self._ws is not None

    async def connect(self) -> None:
        if self._state is not ConsoleState.DISCONNECTED:
            raise ProtocolError(f"Console session for {self._server_id} is already {self._state.value}")
        self._state = ConsoleState.CONNECTING
        self._terminated = False
        try:
            ws = await self._connector(
                with_token(self._socket_url, self._token),
                origin=self._origin,
                user_agent_header=self._user_agent,
                open_timeout=self._handshake_timeout,
                close_timeout=self._close_timeout,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            self._state = ConsoleState.DISCONNECTED
            raise TransportError(f"Failed to connect to console websocket: {e}") from e

        self._ws = ws
        self._state = ConsoleState.CONNECTED
        self._reader = asyncio.create_task(self._read_loop(ws), name=f"console-{self._server_id}")
        try:
            await ws.send(encode_event(AUTH, self._token))
        except (OSError, WebSocketException) as e:
            await self.close()
            raise TransportError(f"Failed to send console auth event: {e}") from e
        logger.info("Console connected for server %s", self._server_id)

    async def request_logs(self) -> None:
        """Ask for the console backlog; failures are reported, not raised."""
        ws = self._ws
        if ws is None or not self.is_connected:
            self._emit_error(NotConnectedError("Console closed before logs were requested"))
            return
        try:
            await ws.send(encode_event(SEND_LOGS, None))
        except (OSError, WebSocketException) as e:
            self._emit_error(TransportError(f"Failed to request console logs: {e}"))

    async def send_command(self, command: str) -> None:
        await self._send(encode_event(SEND_COMMAND, command), "send command")

    async def set_power_state(self, signal: str | PowerSignal) -> None:
        await self._send(encode_event(SET_STATE, PowerSignal(signal).value), "set power state")

    async def close(self) -> None:
        """Send a normal closure and release the socket. Safe to call repeatedly."""
        ws = self._ws
        if ws is None:
            return
        self._terminated = True
        self._ws = None
        self._state = ConsoleState.DISCONNECTED
        try:
            await ws.close(code=1000)
        except (OSError, WebSocketException) as e:
            logger.debug("Console close for %s raised: %s", self._server_id, e)
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            if not reader.done():
                reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        logger.info("Console closed for server %s", self._server_id)

    def _require_socket(self) -> Any:
        if not self.is_connected:
            raise NotConnectedError("Console not connected")
        return self._ws

    async def _send(self, payload: str, action: str) -> None:
        ws = self._require_socket()
        try:
            await ws.send(payload)
        except (OSError, WebSocketException) as e:
            raise TransportError(f"Failed to {action}: {e}") from e

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                if self._terminated:
                    break
                try:
                    event = parse_frame(raw)
                except ProtocolError as e:
                    self._emit_error(e)
                    continue
                if event is not None and self._dispatch(event):
                    break
        except ConnectionClosed as e:
            if not self._terminated:
                logger.warning("Console connection for %s closed unexpectedly: %s", self._server_id, e)
                self._emit_error(ProtocolError(f"Console connection closed unexpectedly: {e}"))
        except (OSError, WebSocketException) as e:
            if not self._terminated:
                logger.warning("Console read for %s failed: %s", self._server_id, e)
                self._emit_error(TransportError(f"Console read failed: {e}"))
        finally:
            await self._release(ws)

    def _dispatch(self, event: ConsoleEvent) -> bool:
        """Deliver one event. Returns True when the session must end."""
        if isinstance(event, ConsoleOutput):
            self._emit_output(event.line)
        elif isinstance(event, LogBacklog):
            for line in event.lines:
                self._emit_output(line)
        elif isinstance(event, StatusChanged):
            self._emit_output(event.annotation)
        elif isinstance(event, TokenExpiring):
            self._emit_error(TokenExpiringError("Console token expiring, please reconnect"))
        elif isinstance(event, TokenExpired):
            self._terminated = True
            self._state = ConsoleState.DISCONNECTED
            self._emit_error(TokenExpiredError("Console token expired"))
            return True
        elif isinstance(event, AuthSuccess):
            logger.debug("Console auth accepted for %s", self._server_id)
        return False

    async def _release(self, ws: Any) -> None:
        if self._ws is not ws:
            return
        self._terminated = True
        self._ws = None
        self._state = ConsoleState.DISCONNECTED
        try:
            await ws.close(code=1000)
        except (OSError, WebSocketException) as e:
            logger.debug("Console release for %s raised: %s", self._server_id, e)

    def _emit_output(self, line: str) -> None:
        try:
            self._observer.on_output(line)
        except Exception:
            logger.exception("Console output observer failed")

    def _emit_error(self, error: PanelError) -> None:
        try:
            self._observer.on_error(error)
        except Exception:
            logger.exception("Console error observer failed")
