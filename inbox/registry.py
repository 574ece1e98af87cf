"""Conversation registry.

Resolves (channel, contact) to a conversation, appends messages and keeps the
conversation summary (preview, unread count, timestamp) in step, then hands a
single event per mutation to the broadcaster.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .adapters.base import INBOUND_MESSAGE, MESSAGE_STATUS, AdapterEvent
from .adapters.manager import ChannelManager
from .broadcaster import EventBroadcaster, InboxEvent
from .db import DatabaseManager
from .errors import NotFoundError, SendFailedError, ValidationError
from .models import (
    Agent,
    ContactRef,
    ContentType,
    Conversation,
    ConversationStatus,
    Direction,
    MediaRef,
    Message,
    MessageInput,
    MessageStatus,
    new_id,
    parse_message_status,
    utc_now,
)
from .observability.metrics import MESSAGES
from .permissions import require, require_view, visible_scope

log = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


@dataclass
class IngestResult:
    conversation: Conversation
    message: Message
    created: bool
    duplicate: bool = False


def _message_from_event(raw: Dict[str, Any]) -> MessageInput:
    try:
        content_type = ContentType(raw.get("content_type") or "text")
    except ValueError:
        content_type = ContentType.DOCUMENT
    media_url = raw.get("media_url")
    return MessageInput(
        content=raw.get("content") or "",
        content_type=content_type,
        media=MediaRef(url=media_url, type=content_type) if media_url else None,
        external_id=raw.get("external_id"),
    )


class ConversationRegistry:
    def __init__(self, db: DatabaseManager, broadcaster: EventBroadcaster, channels: ChannelManager):
        self.db = db
        self.broadcaster = broadcaster
        self.channels = channels

    # ── writes ──
    async def ingest(self, channel_id: str, contact: ContactRef, message: MessageInput) -> IngestResult:
        if not (contact.id or "").strip():
            raise ValidationError("Contact id is required")
        if not message.content.strip() and message.media is None:
            raise ValidationError("Inbound message has no content")
        channel = await self.db.get_channel(channel_id)
        if channel is None:
            raise NotFoundError("Channel not found")

        conversation, created = await self.db.upsert_conversation(new_id(), channel_id, contact)
        stored, inserted = await self.db.insert_message(
            Message(
                id=new_id(),
                conversation_id=conversation.id,
                direction=Direction.INCOMING,
                content=message.content,
                content_type=message.content_type,
                media=message.media,
                status=MessageStatus.DELIVERED,
                external_id=message.external_id,
                created_at=utc_now(),
            )
        )
        if not inserted:
            log.info("Duplicate inbound %s on conversation %s ignored", message.external_id, conversation.id)
            return IngestResult(conversation, stored, created=False, duplicate=True)

        conversation = await self.db.record_conversation_activity(
            conversation.id, stored.preview, stored.created_at, incoming=True
        ) or conversation
        conversation.platform = channel.platform.value
        conversation.channel_name = channel.name
        MESSAGES.labels(Direction.INCOMING.value, stored.status.value).inc()

        await self.broadcaster.publish(
            InboxEvent(
                "new_conversation" if created else "new_message",
                {"conversation": conversation.to_dict(), "message": stored.to_dict()},
                conversation=conversation,
            )
        )
        return IngestResult(conversation, stored, created)

    async def dispatch_outbound(self, conversation_id: str, agent_id: str, message: MessageInput) -> Message:
        """Send a message as an agent.

        The message is recorded and broadcast whatever the adapter says; a
        delivery failure is then raised as ``SendFailedError``.
        """
        message.validate()
        conversation = await self.db.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        agent = await self.db.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("Agent not found")
        require(agent, "reply", conversation)
        channel = await self.db.get_channel(conversation.channel_id)
        if channel is None:
            raise NotFoundError("Channel not found")

        outcome = await self.channels.send(channel, conversation.contact_id, message)
        stored, _ = await self.db.insert_message(
            Message(
                id=new_id(),
                conversation_id=conversation.id,
                direction=Direction.OUTGOING,
                content=message.content,
                content_type=message.content_type,
                media=message.media,
                status=MessageStatus.SENT if outcome.ok else MessageStatus.FAILED,
                error=None if outcome.ok else (outcome.error or "send failed"),
                agent_id=agent.id,
                external_id=outcome.external_id,
                created_at=utc_now(),
            )
        )
        # Failed sends still move the preview: the agent did write this.
        conversation = await self.db.record_conversation_activity(
            conversation.id, stored.preview, stored.created_at, incoming=False
        ) or conversation
        MESSAGES.labels(Direction.OUTGOING.value, stored.status.value).inc()

        await self.broadcaster.publish(
            InboxEvent(
                "new_message",
                {"conversation": conversation.to_dict(), "message": stored.to_dict()},
                conversation=conversation,
            )
        )
        if not outcome.ok:
            log.warning("Outbound message %s failed: %s", stored.id, stored.error)
            raise SendFailedError(f"Message could not be delivered: {stored.error}", data=stored.to_dict())
        return stored

    async def assign(self, conversation_id: str, actor_id: str, target_agent_id: Optional[str]) -> Conversation:
        actor = await self.db.get_agent(actor_id)
        if actor is None:
            raise NotFoundError("Agent not found")
        require(actor, "assign")
        conversation = await self.db.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        if target_agent_id is not None and await self.db.get_agent(target_agent_id) is None:
            raise NotFoundError("Assignee not found")

        previous = conversation.assigned_agent_id
        updated = await self.db.set_assignment(conversation.id, target_agent_id)
        updated.platform, updated.channel_name = conversation.platform, conversation.channel_name
        log.info("Conversation %s assigned %s -> %s by %s", conversation.id, previous, target_agent_id, actor.id)
        await self.broadcaster.publish(
            InboxEvent(
                "conversation_updated",
                {"conversation": updated.to_dict(), "previous_assignee": previous},
                conversation=updated,
                also_notify=frozenset({previous} if previous else ()),
            )
        )
        return updated

    async def mark_read(self, conversation_id: str, agent: Agent) -> Conversation:
        conversation = await self._visible(conversation_id, agent)
        if conversation.unread_count == 0:
            return conversation
        updated = await self.db.reset_unread(conversation.id)
        updated.platform, updated.channel_name = conversation.platform, conversation.channel_name
        await self.broadcaster.publish(
            InboxEvent("conversation_updated", {"conversation": updated.to_dict()}, conversation=updated)
        )
        return updated

    async def set_status(self, conversation_id: str, agent: Agent, status: ConversationStatus) -> Conversation:
        conversation = await self._visible(conversation_id, agent)
        require(agent, "reply", conversation)
        updated = await self.db.set_conversation_status(conversation.id, status)
        updated.platform, updated.channel_name = conversation.platform, conversation.channel_name
        await self.broadcaster.publish(
            InboxEvent("conversation_updated", {"conversation": updated.to_dict()}, conversation=updated)
        )
        return updated

    async def update_message_status(self, channel_id: str, external_id: str, status: MessageStatus) -> Optional[Message]:
        stored = await self.db.find_message_by_external_id(channel_id, external_id)
        if stored is None:
            return None
        updated = await self.db.upgrade_message_status(stored.id, status)
        if updated is None:
            return None
        conversation = await self.db.get_conversation(updated.conversation_id)
        if conversation is not None:
            await self.broadcaster.publish(
                InboxEvent(
                    "message_status",
                    {"conversation_id": conversation.id, "message_id": updated.id, "status": updated.status.value},
                    conversation=conversation,
                )
            )
        return updated

    async def handle_adapter_event(self, event: AdapterEvent) -> None:
        if event.type == INBOUND_MESSAGE:
            contact = event.data.get("contact") or {}
            await self.ingest(
                event.channel_id,
                ContactRef(id=str(contact.get("id") or ""), name=contact.get("name"), avatar=contact.get("avatar")),
                _message_from_event(event.data.get("message") or {}),
            )
        elif event.type == MESSAGE_STATUS:
            await self.update_message_status(
                event.channel_id, str(event.data.get("external_id") or ""), parse_message_status(event.data.get("status"))
            )

    # ── reads ──
    async def _visible(self, conversation_id: str, agent: Agent) -> Conversation:
        conversation = await self.db.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        require_view(agent, conversation)
        return conversation

    async def list_conversations(
        self,
        agent: Agent,
        *,
        status: Optional[str] = None,
        platform: Optional[str] = None,
        channel_id: Optional[str] = None,
        unread_only: bool = False,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> dict:
        page = max(1, int(page))
        limit = max(1, min(MAX_PAGE_SIZE, int(limit)))
        scope = visible_scope(agent)
        if scope is None:
            return {"items": [], "total": 0, "page": page, "limit": limit}
        items, total = await self.db.list_conversations(
            assigned_to=agent.id if scope == "assigned" else None,
            status=status,
            platform=platform,
            channel_id=channel_id,
            unread_only=unread_only,
            search=(search or "").strip() or None,
            limit=limit,
            offset=(page - 1) * limit,
        )
        return {"items": [c.to_dict() for c in items], "total": total, "page": page, "limit": limit}

    async def get_conversation(
        self, conversation_id: str, agent: Agent, *, mark_read: bool = True, page: int = 1, limit: int = 50
    ) -> dict:
        conversation = await self._visible(conversation_id, agent)
        limit = max(1, min(MAX_PAGE_SIZE, int(limit)))
        messages: List[Message] = await self.db.get_messages(
            conversation.id, limit=limit, offset=(max(1, int(page)) - 1) * limit
        )
        if mark_read and conversation.unread_count:
            conversation = await self.mark_read(conversation.id, agent)
        return {"conversation": conversation.to_dict(), "messages": [m.to_dict() for m in messages]}

    async def stats(self, agent: Agent) -> dict:
        scope = visible_scope(agent)
        if scope is None:
            conversations = {"total": 0, "unread_conversations": 0, "unread_messages": 0}
        else:
            conversations = await self.db.conversation_stats(assigned_to=agent.id if scope == "assigned" else None)
        channels = await self.db.channel_counts()
        agents = await self.db.list_agents()
        return {
            "conversations": conversations,
            "channels": channels,
            "agents": {"total": len(agents), "online": sum(1 for a in agents if a.is_online)},
        }
