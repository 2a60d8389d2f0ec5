import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import httpx

from .config import settings
from .errors import APIError, CapabilityError, ConfigurationError, NotConnectedError, TransportError, raise_for_response
from .models import CredentialTier, FileInfo, PowerSignal, ServerInfo, WebSocketCredentials

logger = logging.getLogger(__name__)

# Timeout presets per call type (seconds)
TIMEOUTS = {
    "probe": settings.probe_timeout_seconds,
    "upload": settings.upload_timeout_seconds,
    "default": settings.request_timeout_seconds,
}

# Status codes treated as success for mutating calls
ACCEPTED = (200, 202, 204)

# Per-task server overrides installed by BackendClient.bound_to(), keyed by client id
_bound_servers: ContextVar[dict[int, str]] = ContextVar("bound_servers", default={})


class BackendClient:
    """Async REST client bound to one panel credential and, optionally, one server.

    The credential tier is negotiated once, lazily, the first time an operation
    depends on it (or up front via ``tier=`` when the caller already knows it).
    Scoped keys see the account's own servers and their files; elevated keys
    list the whole fleet but have no file access.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        server_id: str | None = None,
        *,
        tier: CredentialTier | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._server_id = server_id or None
        self._tier = tier
        self._tier_lock = asyncio.Lock()
        self._transport = transport
        try:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers={
                    "Authorization": f"Bearer {api_key}",
                    "Accept": "application/json",
                    "Content-Type": "application/json",
                },
                timeout=TIMEOUTS["default"],
                follow_redirects=True,
                transport=transport,
            )
        except httpx.InvalidURL as e:
            raise ConfigurationError(f"Invalid panel URL '{base_url}': {e}") from e

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def server_id(self) -> str | None:
        return _bound_servers.get().get(id(self), self._server_id)

    @property
    def tier(self) -> CredentialTier | None:
        """Negotiated tier, or None while detection has not run yet."""
        return self._tier

    def set_server_id(self, server_id: str | None) -> None:
        self._server_id = server_id or None

    @contextmanager
    def bound_to(self, server_id: str) -> Iterator["BackendClient"]:
        """Temporarily bind another server; the previous binding is always restored.

        The override is visible only to the current task, so concurrent
        callers sharing this client keep seeing their own binding.
        """
        token = _bound_servers.set({**_bound_servers.get(), id(self): server_id})
        try:
            yield self
        finally:
            _bound_servers.reset(token)

    # --- Tier negotiation ---

    async def detect_tier(self) -> CredentialTier:
        if self._tier is not None:
            return self._tier
        async with self._tier_lock:
            if self._tier is None:
                self._tier = await self._probe_tier()
                logger.info("Credential tier for %s: %s", self._base_url, self._tier.value)
        return self._tier

    async def _probe_tier(self) -> CredentialTier:
        for path, tier in (("/api/client", CredentialTier.SCOPED), ("/api/application/users", CredentialTier.ELEVATED)):
            try:
                resp = await self._client.get(path, timeout=TIMEOUTS["probe"])
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                logger.debug("Tier probe %s%s failed: %s", self._base_url, path, e)
                continue
            if resp.status_code == 200:
                return tier
            logger.debug("Tier probe %s%s returned %d", self._base_url, path, resp.status_code)
        return CredentialTier.UNKNOWN

    async def is_elevated(self) -> bool:
        return await self.detect_tier() is CredentialTier.ELEVATED

    async def _require_file_access(self, action: str) -> None:
        if await self.is_elevated():
            raise CapabilityError(
                f"{action}: file operations require a client (scoped) API key, not an application key"
            )

    # --- Transport helpers ---

    def _server_path(self, suffix: str = "") -> str:
        server_id = self.server_id
        if not server_id:
            raise NotConnectedError("No server selected")
        return f"/api/client/servers/{server_id}{suffix}"

    async def _request(
        self,
        method: str,
        path: str,
        action: str,
        *,
        ok: tuple[int, ...] = (200,),
        timeout_type: str = "default",
        **kwargs,
    ) -> httpx.Response:
        timeout = TIMEOUTS.get(timeout_type, TIMEOUTS["default"])
        try:
            resp = await self._client.request(method, path, timeout=timeout, **kwargs)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise TransportError(f"{action}: could not reach {self._base_url}: {e}") from e
        raise_for_response(resp, action, ok)
        return resp

    @staticmethod
    def _json(resp: httpx.Response, action: str) -> dict[str, Any]:
        try:
            payload = resp.json()
        except ValueError as e:
            raise APIError(f"{action}: panel returned invalid JSON", resp.status_code) from e
        if not isinstance(payload, dict):
            raise APIError(f"{action}: panel returned non-object JSON", resp.status_code)
        return payload

    @staticmethod
    def _attributes(payload: dict[str, Any]) -> dict[str, Any]:
        attributes = payload.get("attributes")
        return attributes if isinstance(attributes, dict) else {}

    def _data_attributes(self, payload: dict[str, Any]) -> list[dict[str, Any]]:
        data = payload.get("data")
        if not isinstance(data, list):
            return []
        return [self._attributes(item) for item in data if isinstance(item, dict)]

    # --- Servers ---

    async def list_servers(self) -> list[ServerInfo]:
        if await self.is_elevated():
            return await self._list_servers_elevated()
        return await self._list_servers_scoped()

    async def _list_servers_scoped(self) -> list[ServerInfo]:
        action = "List servers"
        payload = self._json(await self._request("GET", "/api/client", action), action)
        return [
            ServerInfo(
                id=str(attrs.get("uuid") or attrs.get("identifier") or ""),
                name=attrs.get("name") or "",
                description=attrs.get("description") or "",
                is_owner=bool(attrs.get("server_owner", attrs.get("is_owner", False))),
                status=attrs.get("status"),
            )
            for attrs in self._data_attributes(payload)
        ]

    async def _list_servers_elevated(self) -> list[ServerInfo]:
        # Single large page only; fleets beyond admin_page_size are truncated.
        action = "List fleet servers"
        resp = await self._request(
            "GET",
            "/api/application/servers",
            action,
            params={"per_page": str(settings.admin_page_size)},
        )
        return [
            ServerInfo(
                id=str(attrs.get("identifier") or attrs.get("uuid") or ""),
                name=attrs.get("name") or "",
                description=attrs.get("description") or "",
                is_owner=True,
            )
            for attrs in self._data_attributes(self._json(resp, action))
        ]

    async def test_connection(self) -> None:
        if not self.server_id:
            raise NotConnectedError("No server selected")
        if await self.is_elevated():
            path = f"/api/application/servers/{self.server_id}"
        else:
            path = self._server_path()
        await self._request("GET", path, "Test connection")

    async def get_server_state(self) -> str:
        action = "Get server state"
        resp = await self._request("GET", self._server_path("/resources"), action)
        return str(self._attributes(self._json(resp, action)).get("current_state") or "")

    async def set_power_state(self, signal: str | PowerSignal) -> None:
        signal = PowerSignal(signal)
        await self._request(
            "POST",
            self._server_path("/power"),
            f"Send power signal '{signal.value}'",
            ok=ACCEPTED,
            json={"signal": signal.value},
        )

    async def send_command(self, command: str) -> None:
        await self._request(
            "POST",
            self._server_path("/command"),
            "Send console command",
            ok=ACCEPTED,
            json={"command": command},
        )

    async def get_websocket_credentials(self) -> WebSocketCredentials:
        action = "Get console credentials"
        payload = self._json(await self._request("GET", self._server_path("/websocket"), action), action)
        data = payload.get("data")
        if not isinstance(data, dict) or not data.get("token") or not data.get("socket"):
            raise APIError(f"{action}: response is missing token or socket", 200)
        return WebSocketCredentials(token=str(data["token"]), socket=str(data["socket"]))

    # --- Files (scoped tier only) ---

    async def list_files(self, path: str) -> list[FileInfo]:
        action = f"List files in '{path}'"
        await self._require_file_access(action)
        resp = await self._request(
            "GET", self._server_path("/files/list"), action, params={"directory": path}
        )
        return [FileInfo.model_validate(attrs) for attrs in self._data_attributes(self._json(resp, action))]

    async def get_file_content(self, path: str) -> str:
        action = f"Read '{path}'"
        await self._require_file_access(action)
        resp = await self._request("GET", self._server_path("/files/contents"), action, params={"file": path})
        return resp.text

    async def save_file_content(self, path: str, content: str) -> None:
        action = f"Write '{path}'"
        await self._require_file_access(action)
        await self._request(
            "POST",
            self._server_path("/files/write"),
            action,
            ok=ACCEPTED,
            params={"file": path},
            content=content.encode("utf-8"),
            headers={"Content-Type": "text/plain"},
        )

    async def create_directory(self, parent: str, name: str) -> None:
        action = f"Create folder '{name}' in '{parent}'"
        await self._require_file_access(action)
        await self._request(
            "POST",
            self._server_path("/files/create-folder"),
            action,
            ok=ACCEPTED,
            json={"root": parent, "name": name},
        )

    async def rename_file(self, parent: str, old_name: str, new_name: str) -> None:
        action = f"Rename '{old_name}' to '{new_name}' in '{parent}'"
        await self._require_file_access(action)
        await self._request(
            "PUT",
            self._server_path("/files/rename"),
            action,
            ok=ACCEPTED,
            json={"root": parent, "files": [{"from": old_name, "to": new_name}]},
        )

    async def delete_files(self, parent: str, names: list[str]) -> None:
        action = f"Delete {len(names)} item(s) in '{parent}'"
        await self._require_file_access(action)
        await self._request(
            "POST",
            self._server_path("/files/delete"),
            action,
            ok=ACCEPTED,
            json={"root": parent, "files": list(names)},
        )

    async def get_download_url(self, path: str) -> str:
        action = f"Get download URL for '{path}'"
        await self._require_file_access(action)
        resp = await self._request("GET", self._server_path("/files/download"), action, params={"file": path})
        url = self._attributes(self._json(resp, action)).get("url")
        if not url:
            raise APIError(f"{action}: response is missing a URL", resp.status_code)
        return str(url)

    async def upload_file(self, parent: str, filename: str, data: bytes) -> None:
        """Two-step upload: fetch a signed URL, then multipart-POST to the daemon."""
        action = f"Upload '{filename}' to '{parent}'"
        await self._require_file_access(action)
        resp = await self._request("GET", self._server_path("/files/upload"), action)
        upload_url = self._attributes(self._json(resp, action)).get("url")
        if not upload_url:
            raise APIError(f"{action}: response is missing an upload URL", resp.status_code)

        # The signed URL carries its own token; the panel key is not forwarded.
        async with httpx.AsyncClient(timeout=TIMEOUTS["upload"], transport=self._transport) as session:
            try:
                upload_resp = await session.post(
                    str(upload_url),
                    params={"directory": parent},
                    files={"files": (filename, data, "application/octet-stream")},
                )
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                raise TransportError(f"{action}: upload request failed: {e}") from e
        raise_for_response(upload_resp, action, ACCEPTED)
