from pathlib import Path

from pydantic_settings import BaseSettings

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


class Settings(BaseSettings):
    config_path: str = "~/.pteroclient/config.json"
    log_level: str = "INFO"
    request_timeout_seconds: float = 30.0
    probe_timeout_seconds: float = 10.0
    upload_timeout_seconds: float = 300.0
    admin_page_size: int = 100
    ws_handshake_timeout_seconds: float = 10.0
    ws_close_timeout_seconds: float = 0.1
    ws_user_agent: str = BROWSER_USER_AGENT
    feed_buffer_size: int = 500
    feed_subscriber_queue_size: int = 200
    feed_backlog_lines: int = 80
    feed_keepalive_seconds: float = 15.0
    host: str = "127.0.0.1"
    port: int = 8470

    model_config = {"env_prefix": "PTEROGATE_"}


settings = Settings()


def resolve_config_path(raw: str | None = None) -> Path:
    """Expand the panel document path (``~`` is allowed)."""
    return Path(raw or settings.config_path).expanduser()
