from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from loguru import logger

from ..context import WindowContext

router = APIRouter()


def _window(websocket: WebSocket) -> WindowContext:
    return websocket.app.state.window


@router.websocket("/ws/output")
async def session_output_ws(websocket: WebSocket):
    """Stream visible shell output as {"text", "source"} messages."""
    await websocket.accept()
    window = _window(websocket)
    q = window.subscribe_output()

    try:
        while True:
            text, source = await q.get()
            await websocket.send_json({"text": text, "source": source})
    except WebSocketDisconnect:
        pass
    finally:
        window.unsubscribe_output(q)


@router.websocket("/ws/events")
async def session_events_ws(websocket: WebSocket):
    """Stream session, toolchain and pipeline events."""
    await websocket.accept()
    bus = _window(websocket).bus
    q = bus.subscribe()

    try:
        while True:
            event = await q.get()
            await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        pass
    except RuntimeError as exc:
        # send after the client went away
        logger.debug("ws.events.closed error={}", exc)
    finally:
        bus.unsubscribe(q)
