"""Console routes - /console/* drive the live console websocket.

Output and errors are delivered on the /events stream as
``console-output`` and ``console-error`` events.

Endpoints:
  POST /console/connect     - Open the console for the active server
  POST /console/disconnect  - Close the console
  POST /console/command     - Send a command through the console
  POST /console/power       - Send a power signal through the console
"""

from fastapi import APIRouter, Response

from .models import CommandRequest, PowerRequest, SessionStatus

router = APIRouter(prefix="/console", tags=["console"])


def _get_session():
    from .main import get_session
    return get_session()


@router.post("/connect", response_model=SessionStatus)
async def connect_console():
    session = _get_session()
    await session.connect_console()
    return session.status()


@router.post("/disconnect", response_model=SessionStatus)
async def disconnect_console():
    session = _get_session()
    await session.disconnect_console()
    return session.status()


@router.post("/command", status_code=204)
async def console_command(body: CommandRequest):
    await _get_session().send_console_command(body.command)
    return Response(status_code=204)


@router.post("/power", status_code=204)
async def console_power(body: PowerRequest):
    await _get_session().send_console_power(body.signal)
    return Response(status_code=204)
