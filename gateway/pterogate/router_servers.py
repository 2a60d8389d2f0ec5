"""Server routes - /servers/* listing, selection and power control.

A server on a panel other than the active one is reached through the
connection router with that panel's own credentials.

Endpoints:
  GET  /servers                    - Servers of the active panel
  GET  /servers/all                - Servers of every stored panel
  GET  /servers/fleet              - Fleet listing with the elevated key
  POST /servers/{server_id}/activate - Bind the active client to a server
  GET  /servers/{server_id}/state    - Current power state
  POST /servers/{server_id}/power    - Send a power signal
  POST /servers/{server_id}/command  - Send a console command over REST
"""

from fastapi import APIRouter, Response

from .models import CommandRequest, PanelServerInfo, PowerRequest, ServerInfo, SessionStatus

router = APIRouter(prefix="/servers", tags=["servers"])


def _get_session():
    from .main import get_session
    return get_session()


@router.get("", response_model=list[ServerInfo])
async def list_servers():
    return await _get_session().list_servers()


@router.get("/all", response_model=list[PanelServerInfo])
async def list_all_servers():
    return await _get_session().list_all_servers()


@router.get("/fleet", response_model=list[ServerInfo])
async def fleet_servers():
    return await _get_session().fleet_servers()


@router.post("/{server_id}/activate", response_model=SessionStatus)
async def activate_server(server_id: str):
    session = _get_session()
    await session.switch_server(server_id)
    return session.status()


@router.get("/{server_id}/state")
async def server_state(server_id: str):
    return {"server_id": server_id, "state": await _get_session().get_server_state(server_id)}


@router.post("/{server_id}/power", status_code=204)
async def power(server_id: str, body: PowerRequest):
    await _get_session().set_power_state(body.signal, server_id)
    return Response(status_code=204)


@router.post("/{server_id}/command", status_code=204)
async def command(server_id: str, body: CommandRequest):
    await _get_session().send_command(body.command, server_id)
    return Response(status_code=204)
