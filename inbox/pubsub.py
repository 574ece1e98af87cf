from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Optional

import redis.asyncio as redis

from . import config
from .broadcaster import EventBroadcaster, InboxEvent

log = logging.getLogger(__name__)


class RedisRelay:
    """Relays broadcaster events between instances over Redis pub/sub.

    Each instance delivers to its own sockets directly and skips its own
    messages when they come back from Redis.
    """

    def __init__(self, redis_url: str = config.REDIS_URL, channel: str = config.WS_PUBSUB_CHANNEL, client=None):
        self.redis_url = redis_url
        self.channel = channel
        self.instance_id = uuid.uuid4().hex
        self.redis_client = client
        self._task: Optional[asyncio.Task] = None

    async def connect(self) -> bool:
        if self.redis_client is not None:
            return True
        if not self.redis_url:
            return False
        try:
            self.redis_client = redis.from_url(self.redis_url, decode_responses=True)
            await self.redis_client.ping()
            log.info("Redis relay connected channel=%s", self.channel)
            return True
        except Exception as exc:
            log.warning("Redis relay unavailable, events stay local: %s", exc)
            self.redis_client = None
            return False

    async def publish(self, event: InboxEvent) -> None:
        if not self.redis_client:
            return
        message = json.dumps({"origin": self.instance_id, "event": event.to_relay()}, ensure_ascii=False)
        try:
            await self.redis_client.publish(self.channel, message)
        except Exception as exc:
            log.warning("Redis publish of %s failed: %s", event.type, exc)

    def handle_message(self, raw: str, broadcaster: EventBroadcaster) -> int:
        data = json.loads(raw)
        if data.get("origin") == self.instance_id:
            return 0
        return broadcaster.deliver_local(InboxEvent.from_relay(data["event"]))

    async def listen(self, broadcaster: EventBroadcaster) -> None:
        if not self.redis_client:
            return
        pubsub = self.redis_client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(self.channel)
        try:
            async for msg in pubsub.listen():
                if not msg or msg.get("type") != "message":
                    continue
                try:
                    self.handle_message(msg.get("data"), broadcaster)
                except (ValueError, KeyError) as exc:
                    log.warning("Malformed relay message ignored: %s", exc)
        finally:
            await pubsub.unsubscribe(self.channel)

    def start(self, broadcaster: EventBroadcaster) -> None:
        if self.redis_client and self._task is None:
            self._task = asyncio.create_task(self.listen(broadcaster))

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
