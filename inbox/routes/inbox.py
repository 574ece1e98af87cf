from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends

from ..errors import ValidationError, envelope
from ..models import Agent, MessageInput, parse_conversation_status
from ..runtime import InboxRuntime
from .deps import current_agent, get_runtime


def create_inbox_router() -> APIRouter:
    router = APIRouter(prefix="/inbox", tags=["inbox"])

    @router.get("/conversations")
    async def list_conversations(
        status: Optional[str] = None,
        platform: Optional[str] = None,
        channel_id: Optional[str] = None,
        unread: bool = False,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
        rt: InboxRuntime = Depends(get_runtime),
        agent: Agent = Depends(current_agent),
    ):
        if status:
            parse_conversation_status(status)
        data = await rt.registry.list_conversations(
            agent,
            status=status,
            platform=platform,
            channel_id=channel_id,
            unread_only=unread,
            search=search,
            page=page,
            limit=limit,
        )
        return envelope(data)

    @router.get("/conversations/{conversation_id}")
    async def get_conversation(
        conversation_id: str,
        page: int = 1,
        limit: int = 50,
        mark_read: bool = True,
        rt: InboxRuntime = Depends(get_runtime),
        agent: Agent = Depends(current_agent),
    ):
        data = await rt.registry.get_conversation(
            conversation_id, agent, mark_read=mark_read, page=page, limit=limit
        )
        return envelope(data)

    @router.post("/conversations/{conversation_id}/messages")
    async def send_message(
        conversation_id: str,
        payload: dict = Body(...),
        rt: InboxRuntime = Depends(get_runtime),
        agent: Agent = Depends(current_agent),
    ):
        message = MessageInput.parse(payload)
        stored = await rt.registry.dispatch_outbound(conversation_id, agent.id, message)
        return envelope(stored.to_dict())

    @router.post("/conversations/{conversation_id}/assign")
    async def assign_conversation(
        conversation_id: str,
        payload: dict = Body(...),
        rt: InboxRuntime = Depends(get_runtime),
        agent: Agent = Depends(current_agent),
    ):
        if "agent_id" not in payload:
            raise ValidationError("agent_id is required (null to unassign)")
        target = payload.get("agent_id")
        if target is not None and not isinstance(target, str):
            raise ValidationError("agent_id must be a string or null")
        conversation = await rt.registry.assign(conversation_id, agent.id, target or None)
        return envelope(conversation.to_dict())

    @router.post("/conversations/{conversation_id}/read")
    async def mark_read(
        conversation_id: str,
        rt: InboxRuntime = Depends(get_runtime),
        agent: Agent = Depends(current_agent),
    ):
        conversation = await rt.registry.mark_read(conversation_id, agent)
        return envelope(conversation.to_dict())

    @router.put("/conversations/{conversation_id}/status")
    async def set_status(
        conversation_id: str,
        payload: dict = Body(...),
        rt: InboxRuntime = Depends(get_runtime),
        agent: Agent = Depends(current_agent),
    ):
        status = parse_conversation_status(payload.get("status"))
        conversation = await rt.registry.set_status(conversation_id, agent, status)
        return envelope(conversation.to_dict())

    @router.get("/stats")
    async def stats(rt: InboxRuntime = Depends(get_runtime), agent: Agent = Depends(current_agent)):
        return envelope(await rt.registry.stats(agent))

    return router
