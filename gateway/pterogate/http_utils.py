"""HTTP helpers for gateway route handlers."""

from fastapi.responses import JSONResponse

from .errors import (
    APIError,
    CapabilityError,
    ConfigurationError,
    ForbiddenError,
    NotConnectedError,
    NotFoundError,
    PanelError,
    PanelNotFoundError,
    PersistenceError,
    ServerNotFoundError,
    TransportError,
    UpstreamUnavailableError,
)

# Most specific classes first
_STATUS_BY_ERROR: list[tuple[type[PanelError], int]] = [
    (PanelNotFoundError, 404),
    (ServerNotFoundError, 404),
    (NotFoundError, 404),
    (ForbiddenError, 403),
    (UpstreamUnavailableError, 503),
    (APIError, 502),
    (TransportError, 503),
    (NotConnectedError, 409),
    (CapabilityError, 422),
    (ConfigurationError, 400),
    (PersistenceError, 500),
]


def status_for_error(exc: PanelError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def panel_error_response(exc: PanelError) -> JSONResponse:
    """Return a stable gateway error envelope for a pterogate error."""
    return JSONResponse(
        status_code=status_for_error(exc),
        content={"error": exc.kind, "detail": str(exc)},
    )
