"""WhatsApp Web sessions paired by QR code.

The browser-driven client itself runs in a session gateway sidecar (a
WAHA-compatible HTTP API); this module drives it through ``SessionDriver`` and
turns its callbacks into adapter events. Pairing is bounded: if nobody scans
the code in time the session is released and the channel goes back to pending.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

import httpx

from .. import config
from ..errors import UpstreamError
from ..models import Channel, ContentType, MessageInput, Platform, SessionState
from ..polling import SYSTEM_CLOCK, BackoffPolicy, Clock, PollTimeout, poll_until
from .base import (
    INBOUND_MESSAGE,
    MESSAGE_STATUS,
    PAIRING_EXPIRED,
    PAIRING_PAYLOAD_UPDATED,
    SESSION_DISCONNECTED,
    SESSION_READY,
    AdapterEvent,
    ChannelAdapter,
    ConnectResult,
    SendOutcome,
)

log = logging.getLogger(__name__)

# Gateway session states
STARTING = "STARTING"
SCAN_QR_CODE = "SCAN_QR_CODE"
WORKING = "WORKING"
FAILED = "FAILED"
STOPPED = "STOPPED"

# Gateway ack codes → message status
_ACK_STATUS = {-1: "failed", 0: "pending", 1: "sent", 2: "delivered", 3: "read", 4: "read"}


@dataclass
class DriverStatus:
    state: str
    phone: Optional[str] = None


def contact_from_jid(jid: str) -> str:
    jid = (jid or "").strip()
    if jid.endswith("@c.us") or jid.endswith("@s.whatsapp.net"):
        return "+" + jid.split("@", 1)[0]
    return jid


def jid_from_contact(contact_id: str) -> str:
    contact_id = (contact_id or "").strip()
    if "@" in contact_id:
        return contact_id
    return "".join(ch for ch in contact_id if ch.isdigit()) + "@c.us"


def _content_type_for(payload: dict) -> ContentType:
    if payload.get("location"):
        return ContentType.LOCATION
    if payload.get("vCards"):
        return ContentType.CONTACT
    if not payload.get("hasMedia"):
        return ContentType.TEXT
    mime = str((payload.get("media") or {}).get("mimetype") or "")
    for prefix, kind in (("image/", ContentType.IMAGE), ("video/", ContentType.VIDEO), ("audio/", ContentType.AUDIO)):
        if mime.startswith(prefix):
            return kind
    return ContentType.DOCUMENT


class SessionDriver(ABC):
    @abstractmethod
    async def start(self, session: str) -> None: ...

    @abstractmethod
    async def status(self, session: str) -> DriverStatus: ...

    @abstractmethod
    async def qr(self, session: str) -> Optional[str]: ...

    @abstractmethod
    async def send(self, session: str, chat_id: str, message: MessageInput) -> Optional[str]: ...

    @abstractmethod
    async def stop(self, session: str) -> None: ...

    async def close(self) -> None:
        return None


class GatewaySessionDriver(SessionDriver):
    """httpx client for a WAHA-compatible gateway."""

    def __init__(
        self,
        base_url: str = config.WA_GATEWAY_URL,
        *,
        api_key: str = config.WA_GATEWAY_API_KEY,
        callback_url: str = config.WA_GATEWAY_CALLBACK_URL,
        callback_secret: str = config.WA_GATEWAY_WEBHOOK_SECRET,
        timeout: float = config.WA_HTTP_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"X-Api-Key": api_key} if api_key else {}
        self.callback_url = callback_url
        self.callback_secret = callback_secret
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=min(5.0, timeout)),
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"WhatsApp gateway unreachable: {exc.__class__.__name__}") from exc
        if resp.status_code >= 400 and resp.status_code != 404:
            raise UpstreamError(f"WhatsApp gateway error {resp.status_code} on {path}")
        return resp

    async def start(self, session: str) -> None:
        body: Dict[str, Any] = {"name": session}
        if self.callback_url:
            hook: Dict[str, Any] = {
                "url": self.callback_url,
                "events": ["message", "message.ack", "session.status"],
            }
            if self.callback_secret:
                hook["hmac"] = {"key": self.callback_secret}
            body["config"] = {"webhooks": [hook]}
        resp = await self._request("POST", "/api/sessions/start", json=body)
        if resp.status_code == 404:
            raise UpstreamError("WhatsApp gateway does not support session start")

    async def status(self, session: str) -> DriverStatus:
        resp = await self._request("GET", f"/api/sessions/{session}")
        if resp.status_code == 404:
            return DriverStatus(state=STOPPED)
        data = resp.json() or {}
        me = data.get("me") or {}
        phone = contact_from_jid(me["id"]) if me.get("id") else None
        return DriverStatus(state=str(data.get("status") or STARTING).upper(), phone=phone)

    async def qr(self, session: str) -> Optional[str]:
        resp = await self._request("GET", f"/api/{session}/auth/qr", params={"format": "raw"})
        if resp.status_code == 404:
            return None
        data = resp.json() or {}
        return data.get("value") or data.get("data") or None

    async def send(self, session: str, chat_id: str, message: MessageInput) -> Optional[str]:
        if message.media is None:
            path, body = "/api/sendText", {"session": session, "chatId": chat_id, "text": message.content}
        else:
            path = "/api/sendImage" if message.content_type is ContentType.IMAGE else "/api/sendFile"
            body = {
                "session": session,
                "chatId": chat_id,
                "file": {"url": message.media.url},
                "caption": message.content or None,
            }
        resp = await self._request("POST", path, json=body)
        if resp.status_code == 404:
            raise UpstreamError("WhatsApp session not found")
        data = resp.json() or {}
        ext = data.get("id")
        if isinstance(ext, dict):
            ext = ext.get("_serialized") or ext.get("id")
        return str(ext) if ext else None

    async def stop(self, session: str) -> None:
        await self._request("POST", "/api/sessions/stop", json={"name": session, "logout": True})

    async def close(self) -> None:
        await self._client.aclose()


class WhatsAppWebAdapter(ChannelAdapter):
    platform = Platform.WHATSAPP

    def __init__(
        self,
        driver: SessionDriver,
        *,
        pairing_policy: Optional[BackoffPolicy] = None,
        pairing_timeout: float = config.PAIRING_TIMEOUT_SECONDS,
        clock: Clock = SYSTEM_CLOCK,
    ):
        super().__init__()
        self.driver = driver
        self.pairing_policy = pairing_policy or BackoffPolicy(
            base_delay=config.PAIRING_POLL_BASE_SECONDS,
            factor=1.5,
            max_delay=config.PAIRING_POLL_MAX_SECONDS,
            max_attempts=config.PAIRING_POLL_MAX_ATTEMPTS,
        )
        self.pairing_timeout = pairing_timeout
        self.clock = clock
        self._sessions: Dict[str, str] = {}
        self._ready: Set[str] = set()
        self._watchers: Dict[str, asyncio.Task] = {}

    @staticmethod
    def session_name(channel_id: str) -> str:
        return f"channel-{channel_id}"

    def holds(self, channel_id: str) -> bool:
        return channel_id in self._sessions

    def channel_for_session(self, session: str) -> Optional[str]:
        for channel_id, name in self._sessions.items():
            if name == session:
                return channel_id
        return None

    async def connect(self, channel: Channel) -> ConnectResult:
        # Never hold two sessions for one channel.
        await self.release(channel)
        name = self.session_name(channel.id)
        await self.driver.start(name)
        self._sessions[channel.id] = name
        try:
            st = await self.driver.status(name)
            if st.state == WORKING:
                self._ready.add(channel.id)
                return ConnectResult(SessionState.ACTIVE, identifier=st.phone, phone_number=st.phone)
            if st.state in (FAILED, STOPPED):
                raise UpstreamError(f"WhatsApp session {st.state.lower()} while starting")
            qr = await self.driver.qr(name)
        except UpstreamError:
            await self._abandon(channel.id)
            raise
        self._watchers[channel.id] = asyncio.create_task(self._watch_pairing(channel.id, name, qr))
        return ConnectResult(SessionState.AWAITING_PAIRING, pairing_payload=qr)

    async def _abandon(self, channel_id: str) -> None:
        name = self._sessions.pop(channel_id, None)
        self._ready.discard(channel_id)
        if name is None:
            return
        try:
            await self.driver.stop(name)
        except UpstreamError as exc:
            log.warning("Could not stop half-open WhatsApp session %s: %s", name, exc.message)

    async def _watch_pairing(self, channel_id: str, name: str, last_qr: Optional[str]) -> None:
        seen = {"qr": last_qr}

        async def check() -> Optional[DriverStatus]:
            if channel_id in self._ready:
                return DriverStatus(state=WORKING)
            st = await self.driver.status(name)
            if st.state in (WORKING, FAILED, STOPPED):
                return st
            qr = await self.driver.qr(name)
            if qr and qr != seen["qr"]:
                seen["qr"] = qr
                await self.emit(AdapterEvent(PAIRING_PAYLOAD_UPDATED, channel_id, {"pairing_payload": qr}))
            return None

        try:
            st = await poll_until(check, policy=self.pairing_policy, clock=self.clock, timeout=self.pairing_timeout)
        except PollTimeout as exc:
            log.info("WhatsApp pairing for %s expired after %s attempts", channel_id, exc.attempts)
            self._watchers.pop(channel_id, None)
            await self._abandon(channel_id)
            await self.emit(AdapterEvent(PAIRING_EXPIRED, channel_id, {"reason": "pairing timed out"}))
            return
        except UpstreamError as exc:
            self._watchers.pop(channel_id, None)
            await self._abandon(channel_id)
            await self.emit(AdapterEvent(PAIRING_EXPIRED, channel_id, {"reason": exc.message}))
            return
        self._watchers.pop(channel_id, None)
        if st.state != WORKING:
            await self._abandon(channel_id)
            await self.emit(AdapterEvent(PAIRING_EXPIRED, channel_id, {"reason": f"session {st.state.lower()}"}))
            return
        if channel_id in self._ready:
            # The gateway callback already reported the session ready.
            return
        self._ready.add(channel_id)
        await self.emit(AdapterEvent(SESSION_READY, channel_id, {"phone_number": st.phone}))

    async def wait_for_pairing(self, channel_id: str) -> None:
        task = self._watchers.get(channel_id)
        if task is not None:
            with suppress(asyncio.CancelledError):
                await task

    async def release(self, channel: Channel) -> None:
        task = self._watchers.pop(channel.id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        name = self._sessions.get(channel.id)
        if name is None:
            return
        # Propagates UpstreamError; the handle stays so the release can be retried.
        await self.driver.stop(name)
        self._sessions.pop(channel.id, None)
        self._ready.discard(channel.id)

    async def resume(self, channel: Channel) -> SessionState:
        name = self.session_name(channel.id)
        try:
            st = await self.driver.status(name)
        except UpstreamError as exc:
            log.warning("WhatsApp gateway unavailable while resuming %s: %s", channel.id, exc.message)
            return SessionState.DISCONNECTED
        if st.state != WORKING:
            return SessionState.DISCONNECTED
        self._sessions[channel.id] = name
        self._ready.add(channel.id)
        return SessionState.ACTIVE

    async def send(self, channel: Channel, contact_id: str, message: MessageInput) -> SendOutcome:
        name = self._sessions.get(channel.id)
        if name is None or channel.id not in self._ready:
            return SendOutcome(ok=False, error="WhatsApp session not ready")
        try:
            external_id = await self.driver.send(name, jid_from_contact(contact_id), message)
        except UpstreamError as exc:
            return SendOutcome(ok=False, error=exc.message)
        return SendOutcome(ok=True, external_id=external_id)

    async def handle_gateway_event(self, body: Dict[str, Any]) -> bool:
        """Translate one gateway callback into adapter events.

        Returns False when the callback names a session this process does not hold.
        """
        event = str(body.get("event") or "")
        channel_id = self.channel_for_session(str(body.get("session") or ""))
        if channel_id is None:
            log.info("Ignoring gateway %s for unknown session %s", event, body.get("session"))
            return False
        payload = body.get("payload") or {}

        if event == "message":
            sender = str(payload.get("from") or "")
            if payload.get("fromMe") or not sender or sender.endswith("@broadcast") or sender.endswith("@g.us"):
                return True
            content_type = _content_type_for(payload)
            media = payload.get("media") or {}
            notify_name = (payload.get("_data") or {}).get("notifyName") or payload.get("notifyName")
            await self.emit(
                AdapterEvent(
                    INBOUND_MESSAGE,
                    channel_id,
                    {
                        "contact": {"id": contact_from_jid(sender), "name": notify_name},
                        "message": {
                            "content": payload.get("body") or "",
                            "content_type": content_type.value,
                            "media_url": media.get("url"),
                            "external_id": payload.get("id"),
                        },
                    },
                )
            )
        elif event == "message.ack":
            status = _ACK_STATUS.get(int(payload.get("ack", 0) or 0))
            if status and payload.get("id"):
                await self.emit(
                    AdapterEvent(MESSAGE_STATUS, channel_id, {"external_id": payload["id"], "status": status})
                )
        elif event == "session.status":
            state = str(payload.get("status") or "").upper()
            if state == WORKING and channel_id not in self._ready:
                self._ready.add(channel_id)
                task = self._watchers.pop(channel_id, None)
                if task is not None:
                    task.cancel()
                me = payload.get("me") or {}
                phone = contact_from_jid(me["id"]) if me.get("id") else None
                await self.emit(AdapterEvent(SESSION_READY, channel_id, {"phone_number": phone}))
            elif state in (STOPPED, FAILED):
                # The gateway session is gone; there is nothing left to release.
                task = self._watchers.pop(channel_id, None)
                if task is not None:
                    task.cancel()
                self._sessions.pop(channel_id, None)
                self._ready.discard(channel_id)
                await self.emit(
                    AdapterEvent(SESSION_DISCONNECTED, channel_id, {"reason": f"session {state.lower()}"})
                )
        return True

    async def close(self) -> None:
        for task in list(self._watchers.values()):
            task.cancel()
        self._watchers.clear()
        await self.driver.close()
