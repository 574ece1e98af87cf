from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict

from .broadcaster import AUDIENCE_EVERYONE, EventBroadcaster, InboxEvent
from .db import DatabaseManager

log = logging.getLogger(__name__)


class PresenceTracker:
    """Tracks the advisory online flag from live socket counts.

    An agent is online from its first authenticated socket until its last one
    closes. Presence is informational only and never gates delivery.
    """

    def __init__(self, db: DatabaseManager, broadcaster: EventBroadcaster):
        self.db = db
        self.broadcaster = broadcaster
        self._sockets: Dict[str, int] = defaultdict(int)

    def is_connected(self, agent_id: str) -> bool:
        return self._sockets.get(agent_id, 0) > 0

    async def connected(self, agent_id: str) -> None:
        self._sockets[agent_id] += 1
        if self._sockets[agent_id] == 1:
            await self.set_online(agent_id, True)

    async def disconnected(self, agent_id: str) -> None:
        remaining = self._sockets.get(agent_id, 0) - 1
        if remaining > 0:
            self._sockets[agent_id] = remaining
            return
        self._sockets.pop(agent_id, None)
        await self.set_online(agent_id, False)

    async def set_online(self, agent_id: str, online: bool) -> bool:
        if not await self.db.set_agent_online(agent_id, online):
            return False
        log.info("Agent %s is %s", agent_id, "online" if online else "offline")
        await self.broadcaster.publish(
            InboxEvent("agent_presence", {"agent_id": agent_id, "is_online": online}, audience=AUDIENCE_EVERYONE)
        )
        return True
