"""API route handlers for the local control surface."""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from update_agent.api.models import (
    AgentStatus,
    ErrorResponse,
    InfoResponse,
    LogEntry,
    MessageResponse,
    ProbeResult,
)
from update_agent.errors import BusyError
from update_agent.services.state_machine import StateMachine
from update_agent.utils.logging import get_memory_handler

router = APIRouter()


def get_state_machine(request: Request) -> StateMachine:
    """Return the state machine created at startup."""
    return request.app.state.machine


async def _text_body(request: Request) -> str:
    return (await request.body()).decode("utf-8", errors="replace").strip()


@router.get("/info", response_model=InfoResponse)
async def get_info(machine: StateMachine = Depends(get_state_machine)):
    """GET /info - Agent version, effective settings and firmware metadata."""
    return await machine.info()


@router.post("/probe", response_model=ProbeResult, response_model_exclude_none=True)
async def post_probe(request: Request, machine: StateMachine = Depends(get_state_machine)):
    """POST /probe - Probe the update server now.

    The optional plain-text body overrides the server address for this probe
    and any update it starts.

    Response format (200):
        {"update-available": true}
        {"update-available": false, "try-again-in": 300}

    Response format (202, busy):
        {"busy": true, "current-state": "download"}
    """
    server_address = await _text_body(request) or None
    try:
        return await machine.probe(server_address)
    except BusyError:
        return JSONResponse(
            status_code=202,
            content=machine.status().model_dump(mode="json", by_alias=True),
        )


@router.post("/local_install", response_model=AgentStatus)
async def post_local_install(
    request: Request, machine: StateMachine = Depends(get_state_machine)
):
    """POST /local_install - Install a package from a local path.

    The plain-text body is the package path. Responds 200 with the agent
    status when accepted, 422 with the current status when rejected.
    """
    package_path = await _text_body(request)
    if not package_path:
        accepted, status = False, machine.status()
    else:
        accepted, status = await machine.local_install(package_path)

    if not accepted:
        return JSONResponse(
            status_code=422, content=status.model_dump(mode="json", by_alias=True)
        )
    return status


@router.post("/remote_install", response_model=AgentStatus)
async def post_remote_install(
    request: Request, machine: StateMachine = Depends(get_state_machine)
):
    """POST /remote_install - Fetch a package from a URL and install it.

    The plain-text body is the package URL. Responses match /local_install.
    """
    url = await _text_body(request)
    if not url:
        accepted, status = False, machine.status()
    else:
        accepted, status = await machine.remote_install(url)

    if not accepted:
        return JSONResponse(
            status_code=422, content=status.model_dump(mode="json", by_alias=True)
        )
    return status


@router.post("/update/download/abort", response_model=MessageResponse)
async def post_download_abort(machine: StateMachine = Depends(get_state_machine)):
    """POST /update/download/abort - Cancel the running download."""
    if not machine.abort_download():
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(error="there is no download to be aborted").model_dump(),
        )
    return MessageResponse(message="request accepted, download aborted")


@router.get("/log", response_model=list[LogEntry])
@router.post("/log", response_model=list[LogEntry])
async def get_log():
    """/log - Buffered log entries, oldest first."""
    return get_memory_handler().entries()
