from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import FileResponse
from typing import Optional

from ..auth import check_token, get_secret
from ..context import WindowContext
from ..errors import (
    ConfigurationError,
    DispatchOnStoppedSessionError,
    ExtensionMismatchError,
    PreconditionError,
    ProcessSpawnError,
    StepFailedError,
)

router = APIRouter()


def get_window(request: Request) -> WindowContext:
    window = getattr(request.app.state, "window", None)
    if window is None:
        raise HTTPException(503, "No window context configured")
    return window


async def require_auth(
    authorization: str = Header(None),
    x_toolchain_key: str = Header(None, alias="X-Toolchain-Key"),
) -> None:
    """Require X-Toolchain-Key or a Bearer token for mutating endpoints."""
    secret = get_secret()

    # No secret configured: local/dev mode
    if not secret:
        return

    token = None
    if x_toolchain_key:
        token = x_toolchain_key
    elif authorization and authorization.startswith("Bearer "):
        token = authorization[7:]

    if not token:
        raise HTTPException(403, "Missing auth token (X-Toolchain-Key or Authorization header)")
    if not check_token(secret, token):
        raise HTTPException(403, "Invalid auth token")


@router.get("/api/session")
async def get_session(window: WindowContext = Depends(get_window)):
    return {"ok": True, "data": await window.describe()}


@router.post("/api/session/start")
async def start_session(
    window: WindowContext = Depends(get_window),
    _: None = Depends(require_auth),
):
    try:
        record = await window.start_session()
    except ProcessSpawnError as exc:
        raise HTTPException(500, str(exc))
    return {"ok": True, "data": record.to_payload()}


@router.post("/api/session/stop")
async def stop_session(
    window: WindowContext = Depends(get_window),
    _: None = Depends(require_auth),
):
    await window.stop_session()
    return {"ok": True, "data": window.session.record.to_payload()}


@router.post("/api/session/interrupt")
async def interrupt_session(
    window: WindowContext = Depends(get_window),
    _: None = Depends(require_auth),
):
    interrupted = await window.session.interrupt()
    return {"ok": True, "interrupted": interrupted}


@router.post("/api/session/dispatch")
async def dispatch_command(
    payload: dict = Body(...),
    window: WindowContext = Depends(get_window),
    _: None = Depends(require_auth),
):
    command = payload.get("command")
    if not isinstance(command, str):
        raise HTTPException(400, "Command required")
    try:
        dispatch = await window.dispatch(command)
    except DispatchOnStoppedSessionError as exc:
        raise HTTPException(409, str(exc))
    if command.strip():
        window.history.push(command.strip())
    return {"ok": True, "data": {"seq": dispatch.seq, "command": dispatch.command, "status": dispatch.status.value}}


@router.get("/api/session/buffer")
async def get_buffer(window: WindowContext = Depends(get_window)):
    buf = window.buffer
    return {"ok": True, "data": {"text": buf.text, "caret": buf.caret, "input": buf.current_input}}


@router.get("/api/session/transcript")
async def get_transcript(
    source: str = Query("stdout", pattern="^(stdout|stderr)$"),
    window: WindowContext = Depends(get_window),
):
    if window.store is None:
        raise HTTPException(404, "Transcripts are not recorded")
    path = window.store.transcript_path(window.session.record.id, source)
    if not path.exists():
        return {"ok": True, "content": ""}
    return FileResponse(path, media_type="text/plain")


@router.post("/api/build")
async def run_build(
    payload: dict = Body(...),
    window: WindowContext = Depends(get_window),
    _: None = Depends(require_auth),
):
    action = payload.get("action")
    if not action:
        raise HTTPException(400, "Action required")
    try:
        run = await window.run_action(
            action,
            source=payload.get("source"),
            workspace=payload.get("workspace"),
        )
    except (PreconditionError, ExtensionMismatchError, ConfigurationError, ValueError) as exc:
        raise HTTPException(400, str(exc))
    except StepFailedError as exc:
        raise HTTPException(422, str(exc))
    except ProcessSpawnError as exc:
        raise HTTPException(500, str(exc))
    return {"ok": True, "data": run.to_payload()}


def create_app(window: WindowContext, *, include_websockets: bool = True) -> FastAPI:
    """Build a FastAPI app serving one window context."""
    from .websocket import router as ws_router

    app = FastAPI(title="toolchain-shell")
    app.state.window = window
    app.include_router(router)
    if include_websockets:
        app.include_router(ws_router)
    return app
