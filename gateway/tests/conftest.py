"""Shared fakes: an in-memory panel API behind httpx.MockTransport and a fake console socket."""

import asyncio
import json
from dataclasses import dataclass, field

import httpx
import pytest

from pterogate.backend_client import BackendClient
from pterogate.models import PanelConfig


@pytest.fixture
def anyio_backend():
    return "asyncio"


@dataclass
class FakePanel:
    host: str
    api_key: str
    admin_key: str = ""
    servers: dict[str, str] = field(default_factory=dict)
    files: dict[str, dict[str, str]] = field(default_factory=dict)
    state: str = "running"
    down: bool = False

    @property
    def url(self) -> str:
        return f"https://{self.host}"

    def config(self, name: str, server_id: str | None = None) -> PanelConfig:
        return PanelConfig(
            name=name,
            panel_url=self.url,
            api_key=self.api_key,
            admin_key=self.admin_key or None,
            server_id=server_id,
        )


class FakePanelAPI:
    """Routes requests by host to FakePanel instances and records every call."""

    UPLOAD_HOST = "node.example"

    def __init__(self, *panels: FakePanel):
        self.panels = {panel.host: panel for panel in panels}
        self.requests: list[httpx.Request] = []
        self.uploads: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self.handle)

    def client(self, base_url: str, api_key: str, server_id: str | None = None, **kwargs) -> BackendClient:
        return BackendClient(base_url, api_key, server_id, transport=self.transport, **kwargs)

    def factory(self, panel: PanelConfig, server_id: str | None = None) -> BackendClient:
        return self.client(panel.panel_url, panel.api_key, server_id)

    def requests_to(self, host: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host == host]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == self.UPLOAD_HOST:
            self.uploads.append(request)
            return httpx.Response(200)
        panel = self.panels.get(request.url.host)
        if panel is None or panel.down:
            raise httpx.ConnectError("connection refused", request=request)

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        path = request.url.path
        if token == panel.admin_key and panel.admin_key:
            return self._application(panel, request, path)
        if token != panel.api_key:
            return httpx.Response(401, json={"errors": [{"code": "AuthenticationException", "detail": "Unauthenticated."}]})
        return self._client_api(panel, request, path)

    def _application(self, panel: FakePanel, request: httpx.Request, path: str) -> httpx.Response:
        if path == "/api/application/users":
            return httpx.Response(200, json={"object": "list", "data": []})
        if path == "/api/application/servers":
            return httpx.Response(200, json={
                "object": "list",
                "data": [
                    {"object": "server", "attributes": {"identifier": sid, "uuid": f"{sid}-uuid", "name": name, "description": ""}}
                    for sid, name in panel.servers.items()
                ],
            })
        return httpx.Response(403, json={"errors": [{"code": "InvalidCredentialsException", "detail": "Forbidden"}]})

    def _client_api(self, panel: FakePanel, request: httpx.Request, path: str) -> httpx.Response:
        if path == "/api/client":
            return httpx.Response(200, json={
                "object": "list",
                "data": [
                    {"object": "server", "attributes": {
                        "uuid": sid, "identifier": sid[:8], "name": name,
                        "description": f"{name} server", "server_owner": True, "status": None,
                    }}
                    for sid, name in panel.servers.items()
                ],
            })
        if path.startswith("/api/application/"):
            return httpx.Response(403, json={"errors": [{"detail": "This action is unauthorized."}]})

        prefix = "/api/client/servers/"
        if not path.startswith(prefix):
            return httpx.Response(404)
        server_id, _, rest = path[len(prefix):].partition("/")
        if server_id not in panel.servers:
            return httpx.Response(404, json={"errors": [{"code": "NotFoundHttpException", "detail": "Not found"}]})
        if server_id == "broken":
            return httpx.Response(502, text="Bad Gateway")
        files = panel.files.setdefault(server_id, {})

        if rest == "":
            return httpx.Response(200, json={"object": "server", "attributes": {"uuid": server_id}})
        if rest == "resources":
            return httpx.Response(200, json={"object": "stats", "attributes": {"current_state": panel.state}})
        if rest in ("power", "command"):
            return httpx.Response(204)
        if rest == "websocket":
            return httpx.Response(200, json={"data": {
                "token": f"tok-{server_id}",
                "socket": f"wss://{self.UPLOAD_HOST}:8080/api/servers/{server_id}/ws",
            }})
        if rest == "files/list":
            directory = request.url.params.get("directory", "/")
            return httpx.Response(200, json={"object": "list", "data": [
                {"object": "file_object", "attributes": {
                    "name": name.rsplit("/", 1)[-1], "mode": "-rw-r--r--", "mode_bits": "644",
                    "size": len(content), "is_file": True, "is_symlink": False, "mimetype": "text/plain",
                    "created_at": "2024-01-01T00:00:00+00:00", "modified_at": "2024-01-02T00:00:00+00:00",
                }}
                for name, content in sorted(files.items())
                if name.rsplit("/", 1)[0] + "/" == directory.rstrip("/") + "/"
            ]})
        if rest == "files/contents":
            name = request.url.params["file"]
            if name not in files:
                return httpx.Response(404)
            return httpx.Response(200, text=files[name])
        if rest == "files/write":
            files[request.url.params["file"]] = request.content.decode()
            return httpx.Response(204)
        if rest in ("files/create-folder", "files/rename", "files/delete"):
            return httpx.Response(204)
        if rest == "files/download":
            return httpx.Response(200, json={"object": "signed_url", "attributes": {
                "url": f"https://{self.UPLOAD_HOST}/download/file?token=dl",
            }})
        if rest == "files/upload":
            return httpx.Response(200, json={"object": "signed_url", "attributes": {
                "url": f"https://{self.UPLOAD_HOST}/upload/file?token=up",
            }})
        return httpx.Response(404)


@pytest.fixture
def panel_a() -> FakePanel:
    return FakePanel(host="a.example", api_key="key-a", admin_key="admin-a", servers={"s1": "Survival"},
                     files={"s1": {"/server.properties": "motd=A\n"}})


@pytest.fixture
def panel_b() -> FakePanel:
    return FakePanel(host="b.example", api_key="key-b", servers={"s2": "Creative"},
                     files={"s2": {"/server.properties": "motd=B\n", "/plugins/x.yml": "x: 1\n"}})


@pytest.fixture
def api(panel_a, panel_b) -> FakePanelAPI:
    return FakePanelAPI(panel_a, panel_b)


_CLOSED = object()


class FakeSocket:
    """Minimal stand-in for a websockets client connection."""

    def __init__(self):
        self.sent: list[dict] = []
        self.close_codes: list[int] = []
        self._inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def push(self, frame) -> None:
        self._inbox.put_nowait(frame if isinstance(frame, (str, bytes, BaseException)) else json.dumps(frame))

    async def send(self, message: str) -> None:
        if self.closed:
            raise OSError("socket closed")
        self.sent.append(json.loads(message))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_codes.append(code)
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeConnector:
    def __init__(self, error: BaseException | None = None):
        self.sockets: list[FakeSocket] = []
        self.calls: list[tuple[str, dict]] = []
        self.error = error

    @property
    def socket(self) -> FakeSocket:
        return self.sockets[-1]

    async def __call__(self, uri: str, **kwargs) -> FakeSocket:
        self.calls.append((uri, kwargs))
        if self.error is not None:
            raise self.error
        socket = FakeSocket()
        self.sockets.append(socket)
        return socket


class RecordingObserver:
    def __init__(self):
        self.outputs: list[str] = []
        self.errors: list = []

    def on_output(self, line: str) -> None:
        self.outputs.append(line)

    def on_error(self, error) -> None:
        self.errors.append(error)


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()
