"""WebSocket handler for real-time orchestration events.

A client connects to ``/ws`` and must first send
``{"type": "hello", "payload": {"userId": "..."}}``. Until then it receives
nothing. After the hello the connection is registered with the EventHub and
events for that user are pushed to it; the handler itself only reads
client messages (hello, ping).
"""

from typing import TYPE_CHECKING, Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

if TYPE_CHECKING:
    from events import EventHub

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

_event_hub: "EventHub | None" = None


def set_event_hub(hub: "EventHub | None") -> None:
    """Set the event hub used to register WebSocket connections."""
    global _event_hub
    _event_hub = hub
    logger.info("websocket_event_hub_configured", configured=hub is not None)


def get_event_hub() -> "EventHub":
    """Return the configured event hub."""
    if _event_hub is None:
        raise RuntimeError(
            "EventHub not configured for WebSocket handlers. "
            "Call set_event_hub() during startup."
        )
    return _event_hub


def _hello_user_id(data: dict[str, Any]) -> str | None:
    payload = data.get("payload")
    if not isinstance(payload, dict):
        return None
    user_id = payload.get("userId")
    if isinstance(user_id, str) and user_id.strip():
        return user_id.strip()
    return None


@websocket_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for real-time event streaming.

    This endpoint handles:
    - Client -> Server: hello (registration), ping
    - Server -> Client: hello.ack, pong, and every hub event for the user
    """
    await websocket.accept()
    hub = get_event_hub()
    user_id: str | None = None

    logger.info("websocket_connected")

    try:
        while True:
            data = await websocket.receive_json()
            if not isinstance(data, dict):
                logger.warning("invalid_ws_message", user_id=user_id)
                continue
            message_type = data.get("type")

            if message_type == "hello":
                hello_user = _hello_user_id(data)
                if hello_user is None:
                    logger.warning("websocket_hello_missing_user")
                    await websocket.send_json(
                        {"type": "error", "payload": {"message": "hello requires payload.userId"}}
                    )
                    continue
                user_id = hello_user
                hub.register(websocket, user_id)
                await websocket.send_json({"type": "hello.ack", "payload": {"userId": user_id}})
            elif message_type == "ping":
                await websocket.send_json({"type": "pong", "timestamp": data.get("timestamp")})
            else:
                logger.warning(
                    "unknown_ws_message",
                    user_id=user_id,
                    message_type=message_type,
                )
    except WebSocketDisconnect:
        logger.info("websocket_disconnected", user_id=user_id)
    except Exception as e:
        logger.error("websocket_error", user_id=user_id, error=str(e))
    finally:
        hub.unregister(websocket)
        logger.info("websocket_cleanup_complete", user_id=user_id)
