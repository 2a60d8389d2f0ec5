"""Panel routes - /panels/* manage stored panel credentials.

Endpoints:
  GET    /panels                 - List stored panels
  GET    /panels/active          - Session status for the active panel
  PUT    /panels/{name}          - Add or update a panel
  DELETE /panels/{name}          - Remove a panel (never the last one)
  POST   /panels/{name}/activate - Make a panel active and reconnect
"""

import logging

from fastapi import APIRouter, Response

from .models import PanelConfig, PanelSummary, PanelUpsertRequest, SessionStatus

router = APIRouter(prefix="/panels", tags=["panels"])
logger = logging.getLogger(__name__)


def _get_session():
    from .main import get_session
    return get_session()


def _summary(panel: PanelConfig, active_name: str | None) -> PanelSummary:
    return PanelSummary(
        name=panel.name,
        panel_url=panel.panel_url,
        server_id=panel.server_id,
        has_admin_key=bool(panel.admin_key),
        active=panel.name == active_name,
    )


@router.get("", response_model=list[PanelSummary])
async def list_panels():
    store = _get_session().store
    active_name = store.active_panel_name()
    return [_summary(panel, active_name) for panel in store.panels()]


@router.get("/active", response_model=SessionStatus)
async def active_panel():
    return _get_session().status()


@router.put("/{name}", response_model=PanelSummary)
async def upsert_panel(name: str, body: PanelUpsertRequest):
    """Store credentials for a panel. The first panel stored becomes active."""
    session = _get_session()
    panel = PanelConfig(name=name, **body.model_dump())
    await session.save_panel(panel)
    logger.info("Saved panel '%s'", name)
    return _summary(session.store.get(name), session.store.active_panel_name())


@router.delete("/{name}", status_code=204)
async def delete_panel(name: str):
    await _get_session().remove_panel(name)
    logger.info("Removed panel '%s'", name)
    return Response(status_code=204)


@router.post("/{name}/activate", response_model=SessionStatus)
async def activate_panel(name: str):
    session = _get_session()
    await session.switch_panel(name)
    return session.status()
