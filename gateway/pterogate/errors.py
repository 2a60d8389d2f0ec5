"""Error taxonomy shared by the store, REST client, router and console session.

Callers branch on the exception class, never on a raw status code. Every
REST failure is mapped into exactly one class by :func:`raise_for_response`.
"""

from __future__ import annotations

import httpx


class PanelError(Exception):
    """Root of every error raised by pterogate."""

    kind = "panel_error"


class NotConnectedError(PanelError):
    """An operation needed a client, bound server or open console and had none."""

    kind = "not_connected"


class ConfigurationError(PanelError):
    kind = "configuration_error"


class PanelNotFoundError(ConfigurationError):
    kind = "panel_not_found"

    def __init__(self, name: str):
        super().__init__(f"Panel not found: {name}")
        self.name = name


class ServerNotFoundError(ConfigurationError):
    kind = "server_not_found"

    def __init__(self, server_id: str):
        super().__init__(f"Server not found on any configured panel: {server_id}")
        self.server_id = server_id


class LastPanelError(ConfigurationError):
    kind = "last_panel"


class PersistenceError(PanelError):
    """The panel document could not be written."""

    kind = "persistence_error"


class TransportError(PanelError):
    """Network, DNS or TLS failure before any HTTP response arrived."""

    kind = "transport_error"


class APIError(PanelError):
    kind = "api_error"

    def __init__(self, message: str, status_code: int, detail: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class NotFoundError(APIError):
    kind = "not_found"


class ForbiddenError(APIError):
    kind = "forbidden"


class UpstreamUnavailableError(APIError):
    kind = "upstream_unavailable"


class CapabilityError(PanelError):
    """The credential tier does not allow the requested operation."""

    kind = "capability_error"


class ProtocolError(PanelError):
    kind = "protocol_error"


class TokenExpiringError(PanelError):
    """Non-fatal: the console token will expire soon; the session stays open."""

    kind = "token_expiring"


class TokenExpiredError(PanelError):
    kind = "token_expired"


def _detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip()[:500]
    errors = payload.get("errors") if isinstance(payload, dict) else None
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        return str(errors[0].get("detail") or errors[0].get("code") or "")[:500]
    return response.text.strip()[:500]


def raise_for_response(response: httpx.Response, action: str, ok: tuple[int, ...] = (200,)) -> None:
    """Raise the matching :class:`APIError` subclass unless the status is in ``ok``."""
    status = response.status_code
    if status in ok:
        return
    detail = _detail(response)
    suffix = f": {detail}" if detail else ""
    if status == 404:
        raise NotFoundError(f"{action}: resource not found{suffix}", status, detail)
    if status in (401, 403):
        raise ForbiddenError(f"{action}: API key was rejected or lacks permission{suffix}", status, detail)
    if status >= 500:
        raise UpstreamUnavailableError(
            f"{action}: panel returned {status}, the remote daemon may be offline",
            status,
            detail,
        )
    raise APIError(f"{action}: unexpected status {status}{suffix}", status, detail)
