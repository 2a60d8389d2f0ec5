"""Server -> panel routing across every stored panel."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from types import MappingProxyType
from typing import NamedTuple, TypeVar

from .backend_client import BackendClient
from .errors import NotConnectedError, PanelError, ServerNotFoundError
from .models import PanelConfig, PanelServerInfo
from .panel_store import PanelStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

ClientFactory = Callable[[PanelConfig, str | None], BackendClient]
Operation = Callable[[BackendClient], Awaitable[T]]


def default_client_factory(panel: PanelConfig, server_id: str | None = None) -> BackendClient:
    return BackendClient(panel.panel_url, panel.api_key, server_id)


class _Snapshot(NamedTuple):
    index: Mapping[str, str]
    servers: tuple[PanelServerInfo, ...]


_EMPTY = _Snapshot(MappingProxyType({}), ())


class ConnectionRouter:
    """Maps server ids to their owning panel and dispatches operations to it.

    The index is rebuilt wholesale and published as one immutable snapshot,
    so readers never see a half-built map. Rebuilds are serialized. When two
    panels expose the same server id, the later panel in store order wins.
    """

    def __init__(
        self,
        store: PanelStore,
        active_client: Callable[[], BackendClient | None],
        client_factory: ClientFactory = default_client_factory,
    ):
        self._store = store
        self._active_client = active_client
        self._client_factory = client_factory
        self._snapshot = _EMPTY
        self._rebuild_lock = asyncio.Lock()

    def server_index(self) -> Mapping[str, str]:
        return self._snapshot.index

    def invalidate(self) -> None:
        self._snapshot = _EMPTY

    async def _enumerate_panel(self, panel: PanelConfig) -> list[PanelServerInfo]:
        try:
            async with self._client_factory(panel, None) as client:
                servers = await client.list_servers()
        except PanelError as e:
            logger.warning("Skipping panel '%s' while indexing servers: %s", panel.name, e)
            return []
        return [PanelServerInfo(panel=panel.name, **server.model_dump()) for server in servers]

    async def _rebuild(self) -> _Snapshot:
        async with self._rebuild_lock:
            panels = self._store.panels()
            results = await asyncio.gather(*(self._enumerate_panel(panel) for panel in panels))
            index: dict[str, str] = {}
            servers: list[PanelServerInfo] = []
            for panel_servers in results:
                for server in panel_servers:
                    owner = index.get(server.id)
                    if owner is not None and owner != server.panel:
                        logger.warning(
                            "Server id %s exists on panels '%s' and '%s'; routing to '%s'",
                            server.id, owner, server.panel, server.panel,
                        )
                    index[server.id] = server.panel
                    servers.append(server)
            self._snapshot = _Snapshot(MappingProxyType(index), tuple(servers))
            logger.info("Indexed %d servers across %d panels", len(index), len(panels))
            return self._snapshot

    async def rebuild_map(self) -> Mapping[str, str]:
        return (await self._rebuild()).index

    async def list_all_servers(self) -> list[PanelServerInfo]:
        return list((await self._rebuild()).servers)

    async def resolve(self, server_id: str) -> str:
        """Name of the panel owning ``server_id``; one rebuild is attempted on a miss."""
        panel_name = self._snapshot.index.get(server_id)
        if panel_name is None:
            await self.rebuild_map()
            panel_name = self._snapshot.index.get(server_id)
        if panel_name is None:
            raise ServerNotFoundError(server_id)
        return panel_name

    async def act_on_server(self, server_id: str, operation: Operation[T]) -> T:
        """Run ``operation`` against the client that can reach ``server_id``.

        Same panel as the active one: the active client is rebound for the
        duration of the call. Other panel: a transient client is built from
        that panel's primary key and discarded afterwards.
        """
        panel_name = await self.resolve(server_id)
        if panel_name == self._store.active_panel_name():
            client = self._active_client()
            if client is None:
                raise NotConnectedError("Not connected to the active panel")
            with client.bound_to(server_id):
                return await operation(client)

        panel = self._store.get(panel_name)
        async with self._client_factory(panel, server_id) as client:
            return await operation(client)
