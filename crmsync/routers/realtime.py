from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from crmsync.logging_config import get_logger
from crmsync.schemas.realtime import RealtimeCommand, RealtimeFrame
from crmsync.services.realtime_service import UnknownScopeError

logger = get_logger("realtime_router")

router = APIRouter()


async def _reply(websocket: WebSocket, event: str, **data) -> None:
    await websocket.send_json(RealtimeFrame(event=event, data=data).to_wire())


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket):
    """
    Operator realtime channel.

    Client frames: {"event": "join_order", "id": 7}, {"event": "leave_lead", "id": 1768...}.
    Server frames: {"event": "new_order_message", "data": {...}}, {"event": "joined", "data": {"room": ...}}.
    """
    broadcaster = websocket.app.state.broadcaster
    await broadcaster.connect(websocket)
    try:
        while True:
            frame = await websocket.receive_json()
            try:
                command = RealtimeCommand.model_validate(frame)
            except ValidationError:
                await _reply(websocket, "error", detail="Invalid frame")
                continue

            try:
                if command.action == "join":
                    room = await broadcaster.join(websocket, command.scope, command.id)
                    await _reply(websocket, "joined", room=room)
                elif command.action == "leave":
                    room = await broadcaster.leave(websocket, command.scope, command.id)
                    await _reply(websocket, "left", room=room)
                else:
                    await _reply(websocket, "error", detail=f"Unknown event {command.event}")
            except UnknownScopeError as e:
                await _reply(websocket, "error", detail=str(e))
    except WebSocketDisconnect:
        pass
    except ValueError as e:
        # receive_json on a non-JSON text frame
        logger.warning("Realtime socket closed on bad payload", extra={"context": {"error": str(e)}})
    finally:
        await broadcaster.disconnect(websocket)
