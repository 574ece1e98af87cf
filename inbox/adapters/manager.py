"""Channel session ownership and lifecycle.

``ChannelManager`` is the one place that knows which sessions exist. It is
created once per process by the runtime and injected wherever it is needed.
Adapter events are queued per channel and applied in order by a worker task,
so status transitions and inbound messages of a channel are never reordered.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .. import config
from ..broadcaster import AUDIENCE_CHANNELS, EventBroadcaster, InboxEvent
from ..db import DatabaseManager
from ..errors import ConflictError, NotFoundError, UpstreamError, ValidationError
from ..models import Channel, ChannelStatus, MessageInput, Platform, SessionState, new_id
from ..observability.context import bound
from .base import (
    INBOUND_MESSAGE,
    MESSAGE_STATUS,
    PAIRING_EXPIRED,
    PAIRING_PAYLOAD_UPDATED,
    SESSION_DISCONNECTED,
    SESSION_ERROR,
    SESSION_READY,
    AdapterEvent,
    ChannelAdapter,
    SendOutcome,
)

log = logging.getLogger(__name__)

S = SessionState
ALLOWED_TRANSITIONS = {
    S.PENDING: {S.AWAITING_PAIRING, S.ACTIVE, S.ERROR},
    S.AWAITING_PAIRING: {S.AWAITING_PAIRING, S.ACTIVE, S.PENDING, S.DISCONNECTED, S.ERROR},
    S.ACTIVE: {S.DISCONNECTED, S.ERROR},
    S.DISCONNECTED: {S.AWAITING_PAIRING, S.ACTIVE, S.PENDING},
    S.ERROR: {S.AWAITING_PAIRING, S.ACTIVE, S.PENDING},
    S.REMOVED: set(),
}

# Adapter lifecycle event → (target state, broadcast event type)
_LIFECYCLE = {
    SESSION_READY: (S.ACTIVE, "session_ready"),
    SESSION_DISCONNECTED: (S.DISCONNECTED, "session_disconnected"),
    SESSION_ERROR: (S.ERROR, "session_error"),
    PAIRING_EXPIRED: (S.PENDING, "pairing_expired"),
}

_CONNECT_EVENT = {
    S.AWAITING_PAIRING: "pairing_payload_updated",
    S.ACTIVE: "session_ready",
}

InboundHandler = Callable[[AdapterEvent], Awaitable[None]]


class ChannelManager:
    def __init__(
        self,
        db: DatabaseManager,
        broadcaster: EventBroadcaster,
        adapters: Iterable[ChannelAdapter],
        *,
        send_timeout: float = config.SEND_TIMEOUT_SECONDS,
        queue_maxsize: int = config.CHANNEL_EVENT_QUEUE_MAX,
    ):
        self.db = db
        self.broadcaster = broadcaster
        self.send_timeout = send_timeout
        self.queue_maxsize = queue_maxsize
        self.adapters: Dict[Platform, ChannelAdapter] = {}
        for adapter in adapters:
            adapter.bind(self.dispatch)
            self.adapters[adapter.platform] = adapter
        self.inbound_handler: Optional[InboundHandler] = None
        self._states: Dict[str, SessionState] = {}
        self._pairing: Dict[str, Optional[str]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._pending: Dict[str, int] = {}

    # ── lookups ──
    def adapter_for(self, platform: Platform) -> ChannelAdapter:
        adapter = self.adapters.get(platform)
        if adapter is None:
            raise ValidationError(f"No adapter configured for {platform.value}")
        return adapter

    def state(self, channel: Channel) -> SessionState:
        return self._states.get(channel.id) or SessionState(channel.status.value)

    def _lock(self, channel_id: str) -> asyncio.Lock:
        lock = self._locks.get(channel_id)
        if lock is None:
            lock = self._locks[channel_id] = asyncio.Lock()
        return lock

    async def get_channel(self, channel_id: str) -> Channel:
        channel = await self.db.get_channel(channel_id)
        if channel is None or self._states.get(channel_id) is S.REMOVED:
            raise NotFoundError("Channel not found")
        return channel

    def describe(self, channel: Channel) -> dict:
        state = self.state(channel)
        data = channel.to_dict()
        data["state"] = state.value
        data["pairing_payload"] = self._pairing.get(channel.id) if state is S.AWAITING_PAIRING else None
        return data

    def pairing_status(self, channel: Channel) -> dict:
        state = self.state(channel)
        payload = self._pairing.get(channel.id) if state is S.AWAITING_PAIRING else None
        return {
            "channel_id": channel.id,
            "status": state.value,
            "pairing_payload": payload,
            "available": payload is not None,
        }

    async def list_channels(self, platform: Optional[Platform] = None) -> List[dict]:
        channels = await self.db.list_channels(platform.value if platform else None)
        return [self.describe(c) for c in channels if self._states.get(c.id) is not S.REMOVED]

    # ── operator actions ──
    async def create_channel(
        self,
        platform: Platform,
        name: str,
        *,
        identifier: Optional[str] = None,
        credentials: Optional[Dict[str, Any]] = None,
    ) -> Channel:
        self.adapter_for(platform)
        name = (name or "").strip()
        if not name:
            raise ValidationError("Channel name is required")
        channel = Channel(
            id=new_id(),
            platform=platform,
            name=name,
            identifier=(identifier or "").strip() or Channel.placeholder_identifier(),
            credentials=dict(credentials or {}),
        )
        channel = await self.db.insert_channel(channel)
        self._states[channel.id] = S.PENDING
        log.info("Channel created id=%s platform=%s", channel.id, platform.value)
        return channel

    async def connect(self, channel_id: str) -> dict:
        """Start (or restart) the platform session for a channel."""
        async with self._lock(channel_id):
            channel = await self.get_channel(channel_id)
            current = self.state(channel)
            if current is S.ACTIVE:
                raise ConflictError("Channel is already connected")
            adapter = self.adapter_for(channel.platform)
            try:
                result = await adapter.connect(channel)
            except UpstreamError as exc:
                log.warning("Connect failed for channel %s: %s", channel.id, exc.message)
                if current is S.AWAITING_PAIRING:
                    # The old session was released before the restart failed; its code is dead.
                    await self._transition(channel, S.PENDING, event_type="pairing_expired", reason=exc.message)
                else:
                    await self.db.update_channel_status(channel.id, current.durable_status(), reason=exc.message)
                raise
            updated = await self._transition(
                channel,
                result.state,
                event_type=_CONNECT_EVENT.get(result.state, "channel_status"),
                identifier=result.identifier,
                phone_number=result.phone_number,
                pairing_payload=result.pairing_payload,
            )
            return self.describe(updated or channel)

    async def remove(self, channel_id: str) -> None:
        """Release the session, then delete the channel. Only returns once nothing is held."""
        async with self._lock(channel_id):
            channel = await self.get_channel(channel_id)
            await self.adapter_for(channel.platform).release(channel)
            self._states[channel.id] = S.REMOVED
            self._pairing.pop(channel.id, None)
            await self.db.delete_channel(channel.id)
            await self._stop_worker(channel.id)
            self._states.pop(channel.id, None)
        self._locks.pop(channel_id, None)
        log.info("Channel removed id=%s", channel_id)
        await self.broadcaster.publish(
            InboxEvent("channel_removed", {"channel_id": channel_id}, audience=AUDIENCE_CHANNELS)
        )

    async def send(self, channel: Channel, contact_id: str, message: MessageInput) -> SendOutcome:
        state = self.state(channel)
        if state is not S.ACTIVE:
            return SendOutcome(ok=False, error=f"Channel is {state.value}")
        adapter = self.adapter_for(channel.platform)
        try:
            return await asyncio.wait_for(adapter.send(channel, contact_id, message), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            log.warning("Send timed out on channel %s after %ss", channel.id, self.send_timeout)
            return SendOutcome(ok=False, error="timeout")

    async def restore(self) -> None:
        """Rebuild in-memory session state after a restart.

        Sessions still alive on the platform are re-attached; channels whose
        session is gone become disconnected and wait for an operator.
        """
        for channel in await self.db.list_channels():
            if channel.status is not ChannelStatus.ACTIVE:
                self._states[channel.id] = SessionState(channel.status.value)
                continue
            adapter = self.adapters.get(channel.platform)
            state = await adapter.resume(channel) if adapter else S.DISCONNECTED
            self._states[channel.id] = S.ACTIVE
            if state is not S.ACTIVE:
                await self._transition(
                    channel, state, event_type="session_disconnected", reason="session lost during restart"
                )

    # ── adapter events ──
    async def dispatch(self, event: AdapterEvent) -> None:
        queue = self._queues.get(event.channel_id)
        if queue is None:
            queue = self._queues[event.channel_id] = asyncio.Queue(maxsize=self.queue_maxsize)
            self._workers[event.channel_id] = asyncio.create_task(self._worker(event.channel_id, queue))
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            log.error("Channel %s event queue full; dropped %s", event.channel_id, event.type)
            return
        self._pending[event.channel_id] = self._pending.get(event.channel_id, 0) + 1

    async def _worker(self, channel_id: str, queue: asyncio.Queue) -> None:
        while True:
            event = await queue.get()
            gone = False
            with bound(channel_id=channel_id):
                try:
                    gone = await self._channel_gone(channel_id)
                    if gone:
                        log.info("Ignoring %s for removed channel %s", event.type, channel_id)
                    else:
                        await self._apply(event)
                except Exception:
                    log.exception("Failed to apply %s for channel %s", event.type, channel_id)
                finally:
                    if self._pending.get(channel_id):
                        self._pending[channel_id] -= 1
                    queue.task_done()
            if gone and queue.empty() and self._queues.get(channel_id) is queue:
                # Late events for a deleted channel; nothing more will arrive for it.
                self._queues.pop(channel_id, None)
                self._workers.pop(channel_id, None)
                self._pending.pop(channel_id, None)
                return

    async def _channel_gone(self, channel_id: str) -> bool:
        if self._states.get(channel_id) is S.REMOVED:
            return True
        return await self.db.get_channel(channel_id) is None

    async def _apply(self, event: AdapterEvent) -> None:
        if event.type in (INBOUND_MESSAGE, MESSAGE_STATUS):
            if self.inbound_handler is None:
                log.warning("No inbound handler; dropped %s", event.type)
                return
            await self.inbound_handler(event)
            return

        async with self._lock(event.channel_id):
            channel = await self.db.get_channel(event.channel_id)
            if channel is None:
                return
            if event.type == PAIRING_PAYLOAD_UPDATED:
                if self.state(channel) is not S.AWAITING_PAIRING:
                    log.info("Stale pairing payload for channel %s ignored", channel.id)
                    return
                self._pairing[channel.id] = event.data.get("pairing_payload")
                await self._publish_channel("pairing_payload_updated", channel)
                return
            mapped = _LIFECYCLE.get(event.type)
            if mapped is None:
                log.warning("Unknown adapter event %s", event.type)
                return
            target, event_type = mapped
            phone = event.data.get("phone_number")
            await self._transition(
                channel,
                target,
                event_type=event_type,
                reason=event.data.get("reason"),
                identifier=phone,
                phone_number=phone,
                strict=False,
            )

    async def _transition(
        self,
        channel: Channel,
        target: SessionState,
        *,
        event_type: str,
        reason: Optional[str] = None,
        identifier: Optional[str] = None,
        phone_number: Optional[str] = None,
        pairing_payload: Optional[str] = None,
        strict: bool = True,
    ) -> Optional[Channel]:
        current = self.state(channel)
        if target not in ALLOWED_TRANSITIONS[current]:
            if strict:
                raise ConflictError(f"Channel cannot go from {current.value} to {target.value}")
            log.info("Ignoring stale transition %s -> %s for channel %s", current.value, target.value, channel.id)
            return None
        self._states[channel.id] = target
        self._pairing[channel.id] = pairing_payload if target is S.AWAITING_PAIRING else None
        updated = await self.db.update_channel_status(
            channel.id,
            target.durable_status(),
            reason=reason,
            identifier=identifier,
            phone_number=phone_number,
            touch_active=target is S.ACTIVE,
        )
        log.info("Channel %s %s -> %s%s", channel.id, current.value, target.value, f" ({reason})" if reason else "")
        await self._publish_channel(event_type, updated or channel)
        return updated

    async def _publish_channel(self, event_type: str, channel: Channel) -> None:
        await self.broadcaster.publish(InboxEvent(event_type, self.describe(channel), audience=AUDIENCE_CHANNELS))

    # ── housekeeping ──
    async def drain(self) -> None:
        """Wait until every queued adapter event has been applied."""
        while True:
            busy = [self._queues[c] for c, n in self._pending.items() if n and c in self._queues]
            if not busy:
                return
            await asyncio.gather(*(q.join() for q in busy))

    async def _stop_worker(self, channel_id: str) -> None:
        self._queues.pop(channel_id, None)
        self._pending.pop(channel_id, None)
        task = self._workers.pop(channel_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def close(self) -> None:
        for channel_id in list(self._workers):
            await self._stop_worker(channel_id)
        for adapter in self.adapters.values():
            await adapter.close()
