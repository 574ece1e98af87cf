"""Fan-out of inbox events to connected agents.

Each client gets a bounded queue drained by its own sender task, so a slow
socket only ever hurts itself: when its queue is full new events for it are
dropped (and counted). Delivery is at-most-once; clients that reconnect
re-fetch state over REST.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional

from fastapi import WebSocket

from . import config
from .models import Agent, Conversation, ConversationStatus
from .observability.metrics import EVENTS_DROPPED, WS_CONNECTIONS
from .permissions import can, can_view

log = logging.getLogger(__name__)

# Who may receive an event
AUDIENCE_CONVERSATION = "conversation"
AUDIENCE_CHANNELS = "channels"
AUDIENCE_EVERYONE = "everyone"

CLOSE_UNAUTHORIZED = 4401


@dataclass
class InboxEvent:
    type: str
    data: Dict[str, Any]
    audience: str = AUDIENCE_CONVERSATION
    conversation: Optional[Conversation] = None
    # Agents notified even if they can no longer view the conversation (previous assignee).
    also_notify: FrozenSet[str] = frozenset()
    exclude_client: Optional[str] = None
    ts: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_wire(self) -> dict:
        return {"type": self.type, "data": self.data, "ts": self.ts}

    def to_relay(self) -> dict:
        conv = self.conversation
        return {
            "type": self.type,
            "data": self.data,
            "audience": self.audience,
            "ts": self.ts,
            "also_notify": sorted(self.also_notify),
            "exclude_client": self.exclude_client,
            "conversation": (
                {
                    "id": conv.id,
                    "channel_id": conv.channel_id,
                    "contact_id": conv.contact_id,
                    "assigned_agent_id": conv.assigned_agent_id,
                    "status": conv.status.value,
                }
                if conv is not None
                else None
            ),
        }

    @classmethod
    def from_relay(cls, raw: Dict[str, Any]) -> "InboxEvent":
        conv_raw = raw.get("conversation")
        conv = None
        if conv_raw:
            conv = Conversation(
                id=conv_raw["id"],
                channel_id=conv_raw["channel_id"],
                contact_id=conv_raw["contact_id"],
                assigned_agent_id=conv_raw.get("assigned_agent_id"),
                status=ConversationStatus(conv_raw.get("status") or "active"),
            )
        return cls(
            type=raw["type"],
            data=raw.get("data") or {},
            audience=raw.get("audience") or AUDIENCE_CONVERSATION,
            conversation=conv,
            also_notify=frozenset(raw.get("also_notify") or ()),
            exclude_client=raw.get("exclude_client"),
            ts=raw.get("ts") or datetime.now(timezone.utc).isoformat(),
        )


def event_visible(agent: Agent, event: InboxEvent) -> bool:
    if event.audience == AUDIENCE_EVERYONE:
        return True
    if event.audience == AUDIENCE_CHANNELS:
        return can(agent, "manage_channels")
    if agent.id in event.also_notify:
        return True
    return event.conversation is not None and can_view(agent, event.conversation)


class ClientConnection:
    def __init__(self, websocket: WebSocket, agent: Agent, maxsize: int):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.agent = agent
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.task: Optional[asyncio.Task] = None
        self.closed = False

    def offer(self, payload: dict) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(payload)
            return True
        except asyncio.QueueFull:
            return False

    async def send_now(self, payload: dict) -> None:
        """Send a direct reply (pong, errors) bypassing the fan-out queue."""
        await self.websocket.send_json(payload)

    async def run(self) -> None:
        while True:
            payload = await self.queue.get()
            try:
                if not self.closed:
                    await self.websocket.send_json(payload)
            except Exception as exc:
                # Socket is gone; the receive loop will unregister us.
                self.closed = True
                log.info("WS send failed for client %s agent=%s: %s", self.id, self.agent.id, exc)
            finally:
                self.queue.task_done()


class EventBroadcaster:
    def __init__(self, *, queue_maxsize: int = config.WS_CLIENT_QUEUE_MAX, relay=None):
        self.queue_maxsize = queue_maxsize
        self.relay = relay
        self.clients: Dict[str, ClientConnection] = {}

    def register(self, websocket: WebSocket, agent: Agent) -> ClientConnection:
        client = ClientConnection(websocket, agent, self.queue_maxsize)
        client.task = asyncio.create_task(client.run())
        self.clients[client.id] = client
        WS_CONNECTIONS.inc()
        log.info("WS registered client=%s agent=%s clients=%s", client.id, agent.id, len(self.clients))
        return client

    async def unregister(self, client: ClientConnection) -> None:
        if self.clients.pop(client.id, None) is None:
            return
        client.closed = True
        WS_CONNECTIONS.dec()
        if client.task is not None:
            client.task.cancel()
            try:
                await client.task
            except asyncio.CancelledError:
                pass
        log.info("WS unregistered client=%s agent=%s", client.id, client.agent.id)

    def clients_for(self, agent_id: str) -> List[ClientConnection]:
        return [c for c in self.clients.values() if c.agent.id == agent_id]

    def refresh_agent(self, agent: Agent) -> None:
        """Apply permission/status changes to the agent's live connections."""
        for client in self.clients_for(agent.id):
            client.agent = agent

    async def disconnect_agent(self, agent_id: str, reason: str = "Agent access revoked") -> int:
        """Close every socket of an agent that may no longer use the inbox."""
        clients = self.clients_for(agent_id)
        for client in clients:
            await self.unregister(client)
            try:
                await client.send_now({"type": "error", "code": "unauthorized", "error": reason})
                await client.websocket.close(code=CLOSE_UNAUTHORIZED)
            except Exception as exc:
                log.info("WS close failed for client %s agent=%s: %s", client.id, agent_id, exc)
        if clients:
            log.info("Disconnected %s socket(s) of agent %s", len(clients), agent_id)
        return len(clients)

    def deliver_local(self, event: InboxEvent) -> int:
        payload = event.to_wire()
        delivered = 0
        for client in list(self.clients.values()):
            if client.id == event.exclude_client or not event_visible(client.agent, event):
                continue
            if client.offer(payload):
                delivered += 1
            else:
                EVENTS_DROPPED.labels(event.type).inc()
                log.warning(
                    "Dropped %s for client=%s agent=%s: outbound queue full (%s)",
                    event.type,
                    client.id,
                    client.agent.id,
                    self.queue_maxsize,
                )
        return delivered

    async def publish(self, event: InboxEvent) -> int:
        delivered = self.deliver_local(event)
        if self.relay is not None:
            await self.relay.publish(event)
        return delivered

    async def flush(self) -> None:
        """Wait until every queued event has been written to its socket."""
        await asyncio.gather(*(c.queue.join() for c in list(self.clients.values())))

    async def close(self) -> None:
        for client in list(self.clients.values()):
            await self.unregister(client)
