"""Top-level operator session: active panel client, routing and console."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .backend_client import BackendClient
from .connection_router import ClientFactory, ConnectionRouter, default_client_factory
from .console_session import ConsoleSession, ConsoleState, Connector
from .errors import ConfigurationError, NotConnectedError, PanelError
from .models import FileInfo, PanelConfig, PanelServerInfo, PowerSignal, ServerInfo, SessionStatus
from .panel_store import PanelStore
from .session_feed import SessionFeed

logger = logging.getLogger(__name__)

T = TypeVar("T")


def split_path(path: str) -> tuple[str, str]:
    """Split ``/a/b/c`` into (``/a/b``, ``c``); top-level names live in ``/``."""
    idx = path.rfind("/")
    if idx <= 0:
        return "/", path.lstrip("/")
    return path[:idx], path[idx + 1:]


class _FeedObserver:
    def __init__(self, feed: SessionFeed):
        self._feed = feed

    def on_output(self, line: str) -> None:
        self._feed.publish("console-output", line)

    def on_error(self, error: PanelError) -> None:
        self._feed.publish("console-error", {"kind": error.kind, "message": str(error)})


class PanelSession:
    """Owns the long-lived client for the active panel and the console session.

    Switching panel or server always tears the console down first.
    """

    def __init__(
        self,
        store: PanelStore,
        feed: SessionFeed,
        *,
        client_factory: ClientFactory = default_client_factory,
        console_connector: Connector | None = None,
    ):
        self._store = store
        self._feed = feed
        self._client_factory = client_factory
        self._console_connector = console_connector
        self._client: BackendClient | None = None
        self._console: ConsoleSession | None = None
        self.router = ConnectionRouter(store, lambda: self._client, client_factory)

    @property
    def store(self) -> PanelStore:
        return self._store

    @property
    def client(self) -> BackendClient | None:
        return self._client

    @property
    def console(self) -> ConsoleSession | None:
        return self._console

    def status(self) -> SessionStatus:
        client = self._client
        return SessionStatus(
            configured=self._store.is_configured(),
            connected=client is not None,
            active_panel=self._store.active_panel_name(),
            server_id=client.server_id if client else None,
            tier=client.tier if client else None,
            console=self._console.state.value if self._console else ConsoleState.DISCONNECTED.value,
        )

    def _require_client(self) -> BackendClient:
        if self._client is None:
            raise NotConnectedError("Not connected")
        return self._client

    # --- Connection lifecycle ---

    async def connect(self) -> None:
        """(Re)build the active client from the active panel and verify it."""
        if not self._store.is_configured():
            raise ConfigurationError("No panel configured")
        panel = self._store.active_panel()
        await self._close_console()
        await self._drop_client()

        try:
            client = self._client_factory(panel, panel.server_id)
        except PanelError:
            self._feed.publish("connected", False)
            raise
        try:
            servers = await client.list_servers()
        except PanelError:
            await client.aclose()
            self._feed.publish("connected", False)
            raise
        if client.server_id and client.server_id not in {s.id for s in servers}:
            logger.warning(
                "Last-used server %s is not listed on panel '%s'; leaving it unbound",
                client.server_id, panel.name,
            )
            client.set_server_id(None)
        self._client = client
        logger.info("Connected to panel '%s'", panel.name)
        self._feed.publish("connected", True)

    async def _drop_client(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def aclose(self) -> None:
        await self._close_console()
        await self._drop_client()

    async def switch_panel(self, name: str) -> None:
        await self._close_console()
        self._store.set_active(name)
        await self.connect()
        self._feed.publish("panel-changed", name)

    async def switch_server(self, server_id: str) -> None:
        client = self._require_client()
        await self._close_console()
        client.set_server_id(server_id)
        self._store.update_active_server(server_id)
        await client.test_connection()
        self._feed.publish("server-changed", server_id)

    # --- Panel management ---

    async def save_panel(self, panel: PanelConfig) -> None:
        self._store.add_or_update(panel)
        self.router.invalidate()
        if panel.name == self._store.active_panel_name():
            await self.connect()

    async def remove_panel(self, name: str) -> None:
        was_active = name == self._store.active_panel_name()
        self._store.remove(name)
        self.router.invalidate()
        if not was_active:
            return
        await self._close_console()
        await self._drop_client()
        try:
            await self.connect()
        except PanelError as e:
            logger.warning("Removed active panel '%s'; fallback panel did not connect: %s", name, e)

    # --- Servers ---

    async def list_servers(self) -> list[ServerInfo]:
        return await self._require_client().list_servers()

    async def list_all_servers(self) -> list[PanelServerInfo]:
        return await self.router.list_all_servers()

    async def fleet_servers(self) -> list[ServerInfo]:
        """Servers visible to the active panel's elevated key."""
        panel = self._store.active_panel()
        if panel is None or not panel.admin_key:
            raise ConfigurationError("Active panel has no elevated (application) key")
        elevated = panel.model_copy(update={"api_key": panel.admin_key})
        async with self._client_factory(elevated, None) as client:
            return await client.list_servers()

    async def _dispatch(self, server_id: str | None, operation: Callable[[BackendClient], Awaitable[T]]) -> T:
        client = self._require_client()
        if server_id is None or server_id == client.server_id:
            return await operation(client)
        return await self.router.act_on_server(server_id, operation)

    async def get_server_state(self, server_id: str | None = None) -> str:
        if self._client is None:
            return "disconnected"
        return await self._dispatch(server_id, lambda c: c.get_server_state())

    async def set_power_state(self, signal: str | PowerSignal, server_id: str | None = None) -> None:
        await self._dispatch(server_id, lambda c: c.set_power_state(signal))

    async def send_command(self, command: str, server_id: str | None = None) -> None:
        await self._dispatch(server_id, lambda c: c.send_command(command))

    # --- Files ---

    async def list_files(self, path: str, server_id: str | None = None) -> list[FileInfo]:
        return await self._dispatch(server_id, lambda c: c.list_files(path))

    async def get_file_content(self, path: str, server_id: str | None = None) -> str:
        return await self._dispatch(server_id, lambda c: c.get_file_content(path))

    async def save_file_content(self, path: str, content: str, server_id: str | None = None) -> None:
        await self._dispatch(server_id, lambda c: c.save_file_content(path, content))

    async def create_folder(self, path: str, server_id: str | None = None) -> None:
        parent, name = split_path(path)
        await self._dispatch(server_id, lambda c: c.create_directory(parent, name))

    async def rename_path(self, old_path: str, new_path: str, server_id: str | None = None) -> None:
        parent, old_name = split_path(old_path)
        _, new_name = split_path(new_path)
        await self._dispatch(server_id, lambda c: c.rename_file(parent, old_name, new_name))

    async def delete_paths(self, paths: list[str], server_id: str | None = None) -> None:
        by_parent: dict[str, list[str]] = defaultdict(list)
        for path in paths:
            parent, name = split_path(path)
            by_parent[parent].append(name)

        async def delete_all(client: BackendClient) -> None:
            for parent, names in by_parent.items():
                await client.delete_files(parent, names)

        await self._dispatch(server_id, delete_all)

    async def get_download_url(self, path: str, server_id: str | None = None) -> str:
        return await self._dispatch(server_id, lambda c: c.get_download_url(path))

    async def upload(self, path: str, data: bytes, server_id: str | None = None) -> None:
        parent, filename = split_path(path)
        await self._dispatch(server_id, lambda c: c.upload_file(parent, filename, data))

    # --- Console ---

    async def connect_console(self) -> None:
        client = self._require_client()
        if not client.server_id:
            raise NotConnectedError("No server selected")
        await self._close_console()
        credentials = await client.get_websocket_credentials()
        console = ConsoleSession(
            credentials.socket,
            credentials.token,
            client.server_id,
            _FeedObserver(self._feed),
            origin=client.base_url,
            connector=self._console_connector,
        )
        await console.connect()
        self._console = console
        await console.request_logs()
        self._feed.publish("console-connected", console.is_connected)

    async def disconnect_console(self) -> None:
        await self._close_console()

    async def _close_console(self) -> None:
        console, self._console = self._console, None
        if console is None:
            return
        await console.close()
        self._feed.publish("console-connected", False)

    def _require_console(self) -> ConsoleSession:
        if self._console is None or not self._console.is_connected:
            raise NotConnectedError("Console not connected")
        return self._console

    async def send_console_command(self, command: str) -> None:
        await self._require_console().send_command(command)

    async def send_console_power(self, signal: str | PowerSignal) -> None:
        await self._require_console().set_power_state(signal)
