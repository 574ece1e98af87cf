from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..auth import authenticate_token
from ..broadcaster import CLOSE_UNAUTHORIZED, ClientConnection, InboxEvent
from ..errors import AuthenticationError, InboxError, NotFoundError, ValidationError
from ..permissions import require_view
from ..runtime import InboxRuntime

log = logging.getLogger(__name__)


def _error(code: str, message: str) -> dict:
    return {"type": "error", "code": code, "error": message}


async def _authenticate(rt: InboxRuntime, websocket: WebSocket):
    """Read the first frame, which must be ``{"type": "auth", "token": ...}``."""
    try:
        raw = await asyncio.wait_for(websocket.receive_text(), timeout=rt.settings.ws_auth_timeout)
    except asyncio.TimeoutError:
        raise AuthenticationError("Authentication timed out") from None
    try:
        frame = json.loads(raw)
    except ValueError:
        raise AuthenticationError("First frame must be an auth message") from None
    if not isinstance(frame, dict) or frame.get("type") != "auth":
        raise AuthenticationError("First frame must be an auth message")
    return await authenticate_token(rt.db, frame.get("token"))


async def _handle_frame(rt: InboxRuntime, client: ClientConnection, frame: dict) -> None:
    kind = frame.get("type")
    if kind == "ping":
        client.offer({"type": "pong", "data": {"ts": frame.get("ts")}})
        return
    if kind not in ("typing", "read"):
        raise ValidationError(f"Unsupported message type: {kind!r}")
    conversation_id = frame.get("conversation_id")
    if not isinstance(conversation_id, str) or not conversation_id:
        raise ValidationError("conversation_id is required")
    if kind == "read":
        await rt.registry.mark_read(conversation_id, client.agent)
        return
    conversation = await rt.db.get_conversation(conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")
    require_view(client.agent, conversation)
    await rt.broadcaster.publish(
        InboxEvent(
            "typing",
            {
                "conversation_id": conversation.id,
                "agent_id": client.agent.id,
                "agent_name": client.agent.name,
                "is_typing": bool(frame.get("is_typing", True)),
            },
            conversation=conversation,
            exclude_client=client.id,
        )
    )


def create_realtime_router() -> APIRouter:
    router = APIRouter()

    @router.websocket("/ws")
    async def inbox_socket(websocket: WebSocket):
        rt: InboxRuntime = websocket.app.state.runtime
        await websocket.accept()
        try:
            agent = await _authenticate(rt, websocket)
        except WebSocketDisconnect:
            return
        except AuthenticationError as exc:
            log.info("WS handshake rejected: %s", exc.message)
            await websocket.send_json(_error(exc.code, exc.message))
            await websocket.close(code=CLOSE_UNAUTHORIZED)
            return

        client = rt.broadcaster.register(websocket, agent)
        client.offer(
            {
                "type": "connected",
                "data": {
                    "client_id": client.id,
                    "agent": agent.to_dict(),
                    "reconnect": rt.settings.reconnect_policy.to_client(),
                },
            }
        )
        await rt.presence.connected(agent.id)
        try:
            while True:
                raw = await websocket.receive_text()
                if client.closed:
                    break
                try:
                    frame = json.loads(raw)
                    if not isinstance(frame, dict):
                        raise ValueError("frame must be an object")
                    await _handle_frame(rt, client, frame)
                except ValueError:
                    client.offer(_error(ValidationError.code, "Malformed message"))
                except InboxError as exc:
                    client.offer(_error(exc.code, exc.message))
        except WebSocketDisconnect:
            pass
        finally:
            await rt.broadcaster.unregister(client)
            await rt.presence.disconnected(agent.id)

    return router
