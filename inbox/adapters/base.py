from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from ..models import Channel, MessageInput, Platform, SessionState

log = logging.getLogger(__name__)

INBOUND_MESSAGE = "inbound_message"
MESSAGE_STATUS = "message_status"
SESSION_READY = "session_ready"
SESSION_DISCONNECTED = "session_disconnected"
SESSION_ERROR = "session_error"
PAIRING_PAYLOAD_UPDATED = "pairing_payload_updated"
PAIRING_EXPIRED = "pairing_expired"


@dataclass
class AdapterEvent:
    type: str
    channel_id: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConnectResult:
    state: SessionState
    pairing_payload: Optional[str] = None
    # Set when the platform reports who we are connected as (phone, page id).
    identifier: Optional[str] = None
    phone_number: Optional[str] = None


@dataclass
class SendOutcome:
    ok: bool
    external_id: Optional[str] = None
    error: Optional[str] = None


EventSink = Callable[[AdapterEvent], Awaitable[None]]


class ChannelAdapter(ABC):
    """Uniform contract over one messaging platform.

    An adapter owns the platform sessions it opens and reports everything that
    happens on them through ``emit``. State bookkeeping and persistence belong
    to the ``ChannelManager`` that binds the sink.
    """

    platform: Platform

    def __init__(self) -> None:
        self._sink: Optional[EventSink] = None

    def bind(self, sink: EventSink) -> None:
        self._sink = sink

    async def emit(self, event: AdapterEvent) -> None:
        if self._sink is None:
            log.warning("%s adapter dropped %s for %s: no sink bound", self.platform.value, event.type, event.channel_id)
            return
        await self._sink(event)

    @abstractmethod
    async def connect(self, channel: Channel) -> ConnectResult:
        """Open (or resume) the platform session for ``channel``.

        Raises ``UpstreamError`` when the platform refuses; nothing is held
        afterwards in that case.
        """

    @abstractmethod
    async def send(self, channel: Channel, contact_id: str, message: MessageInput) -> SendOutcome:
        """Deliver one message. Never retries; failures are returned, not raised."""

    async def release(self, channel: Channel) -> None:
        """Free whatever session resource is held for ``channel``."""

    async def resume(self, channel: Channel) -> SessionState:
        """Re-attach after a process restart without operator interaction."""
        return SessionState(channel.status.value)

    async def close(self) -> None:
        """Release process-wide resources (HTTP clients, background tasks)."""
