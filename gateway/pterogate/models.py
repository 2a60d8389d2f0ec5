from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


# --- Panel store ---


class PanelConfig(BaseModel):
    name: str = Field(..., min_length=1)
    panel_url: str = ""
    api_key: str = ""
    admin_key: str | None = None
    server_id: str | None = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Panel name must not be blank")
        return value

    @property
    def base_url(self) -> str:
        return self.panel_url.rstrip("/")


class PanelDocument(BaseModel):
    panels: list[PanelConfig] = Field(default_factory=list)
    active_panel: str = ""


class LegacyPanelDocument(BaseModel):
    panel_url: str = ""
    api_key: str = ""
    server_id: str = ""


# --- Backend client ---


class CredentialTier(str, Enum):
    SCOPED = "scoped"
    ELEVATED = "elevated"
    UNKNOWN = "unknown"


class ServerInfo(BaseModel):
    id: str
    name: str = ""
    description: str = ""
    is_owner: bool = False
    status: str | None = None


class PanelServerInfo(ServerInfo):
    panel: str


class FileInfo(BaseModel):
    name: str
    mode: str = ""
    mode_bits: str = ""
    size: int = 0
    is_file: bool = False
    is_symlink: bool = False
    mimetype: str = ""
    created_at: datetime | None = None
    modified_at: datetime | None = None

    @property
    def is_directory(self) -> bool:
        return not self.is_file and not self.is_symlink


class WebSocketCredentials(BaseModel):
    token: str
    socket: str


# --- Gateway request bodies ---


class PowerSignal(str, Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    KILL = "kill"


class PowerRequest(BaseModel):
    signal: PowerSignal


class CommandRequest(BaseModel):
    command: str = Field(..., min_length=1)


class FileWriteRequest(BaseModel):
    path: str = Field(..., min_length=1)
    content: str


class CreateFolderRequest(BaseModel):
    path: str = Field(..., min_length=1)


class RenamePathRequest(BaseModel):
    old_path: str = Field(..., min_length=1)
    new_path: str = Field(..., min_length=1)


class DeletePathsRequest(BaseModel):
    paths: list[str] = Field(..., min_length=1)


class PanelUpsertRequest(BaseModel):
    panel_url: str = Field(..., min_length=1)
    api_key: str = Field(..., min_length=1)
    admin_key: str | None = None
    server_id: str | None = None


class PanelSummary(BaseModel):
    name: str
    panel_url: str
    server_id: str | None = None
    has_admin_key: bool = False
    active: bool = False


class SessionStatus(BaseModel):
    configured: bool
    connected: bool
    active_panel: str | None = None
    server_id: str | None = None
    tier: CredentialTier | None = None
    console: str
