"""Facebook Page and Instagram messaging over the Graph API.

These channels have no pairing step: a page access token obtained through the
OAuth flow is validated on connect and the channel goes straight to active.
Token expiry or revocation reported by a send moves it to error.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from .. import config
from ..errors import UpstreamError, ValidationError
from ..models import Channel, ContentType, MessageInput, Platform, SessionState
from .base import (
    INBOUND_MESSAGE,
    MESSAGE_STATUS,
    SESSION_ERROR,
    AdapterEvent,
    ChannelAdapter,
    ConnectResult,
    SendOutcome,
)

log = logging.getLogger(__name__)

# Graph error codes meaning the token is no longer usable
_AUTH_ERROR_CODES = {102, 190}

_WEBHOOK_OBJECT = {Platform.FACEBOOK: "page", Platform.INSTAGRAM: "instagram"}

_ATTACHMENT_TYPES = {
    "image": ContentType.IMAGE,
    "video": ContentType.VIDEO,
    "audio": ContentType.AUDIO,
    "file": ContentType.DOCUMENT,
    "location": ContentType.LOCATION,
}

ChannelResolver = Callable[[Platform, str], Awaitable[Optional[Channel]]]


def _graph_error(resp: httpx.Response) -> Tuple[Optional[int], str]:
    try:
        err = (resp.json() or {}).get("error") or {}
    except ValueError:
        err = {}
    code = err.get("code")
    return (int(code) if isinstance(code, int) else None), str(err.get("message") or f"HTTP {resp.status_code}")


class MetaAdapter(ChannelAdapter):
    def __init__(
        self,
        platform: Platform,
        *,
        graph_url: str = config.META_GRAPH_URL,
        graph_version: str = config.META_GRAPH_VERSION,
        timeout: float = config.META_HTTP_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__()
        if platform not in _WEBHOOK_OBJECT:
            raise ValueError(f"MetaAdapter does not handle {platform.value}")
        self.platform = platform
        self._client = httpx.AsyncClient(
            base_url=f"{graph_url}/{graph_version}",
            timeout=httpx.Timeout(timeout, connect=min(5.0, timeout)),
            transport=transport,
        )
        # (channel_id, sender_id) -> {"name", "avatar"}
        self._profiles: Dict[Tuple[str, str], Dict[str, Optional[str]]] = {}

    @property
    def webhook_object(self) -> str:
        return _WEBHOOK_OBJECT[self.platform]

    @staticmethod
    def _token(channel: Channel) -> str:
        token = str((channel.credentials or {}).get("access_token") or "")
        if not token:
            raise ValidationError("Channel has no access token")
        return token

    async def _call(self, method: str, path: str, token: str, **kwargs) -> httpx.Response:
        params = dict(kwargs.pop("params", None) or {})
        params["access_token"] = token
        try:
            return await self._client.request(method, path, params=params, **kwargs)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Graph API unreachable: {exc.__class__.__name__}") from exc

    async def connect(self, channel: Channel) -> ConnectResult:
        token = self._token(channel)
        resp = await self._call("GET", f"/{channel.identifier}", token, params={"fields": "id,name"})
        if resp.status_code >= 400:
            _, message = _graph_error(resp)
            raise UpstreamError(f"{self.platform.value} token rejected: {message}")
        if self.platform is Platform.FACEBOOK:
            sub = await self._call(
                "POST",
                f"/{channel.identifier}/subscribed_apps",
                token,
                params={"subscribed_fields": "messages,message_deliveries,message_reads"},
            )
            if sub.status_code >= 400:
                _, message = _graph_error(sub)
                raise UpstreamError(f"Could not subscribe page to webhooks: {message}")
        return ConnectResult(SessionState.ACTIVE, identifier=channel.identifier)

    async def resume(self, channel: Channel) -> SessionState:
        # Tokens survive restarts; the stored status stands until a send says otherwise.
        return SessionState(channel.status.value)

    async def send(self, channel: Channel, contact_id: str, message: MessageInput) -> SendOutcome:
        if message.media is not None:
            kind = "file" if message.content_type is ContentType.DOCUMENT else message.content_type.value
            body: Dict[str, Any] = {
                "attachment": {"type": kind, "payload": {"url": message.media.url, "is_reusable": True}}
            }
        else:
            body = {"text": message.content}
        try:
            resp = await self._call(
                "POST",
                "/me/messages",
                self._token(channel),
                json={"recipient": {"id": contact_id}, "message": body, "messaging_type": "RESPONSE"},
            )
        except UpstreamError as exc:
            return SendOutcome(ok=False, error=exc.message)
        if resp.status_code >= 400:
            code, reason = _graph_error(resp)
            if code in _AUTH_ERROR_CODES:
                await self.emit(AdapterEvent(SESSION_ERROR, channel.id, {"reason": f"access token invalid: {reason}"}))
            return SendOutcome(ok=False, error=reason)
        return SendOutcome(ok=True, external_id=(resp.json() or {}).get("message_id"))

    async def _profile(self, channel: Channel, sender_id: str) -> Dict[str, Optional[str]]:
        key = (channel.id, sender_id)
        if key in self._profiles:
            return self._profiles[key]
        fields = "name,profile_pic"
        profile: Dict[str, Optional[str]] = {"name": None, "avatar": None}
        try:
            resp = await self._call("GET", f"/{sender_id}", self._token(channel), params={"fields": fields})
            if resp.status_code < 400:
                data = resp.json() or {}
                profile = {"name": data.get("name") or data.get("username"), "avatar": data.get("profile_pic")}
                self._profiles[key] = profile
        except (UpstreamError, ValidationError) as exc:
            log.info("Sender profile lookup failed for %s: %s", sender_id, getattr(exc, "message", exc))
        return profile

    async def handle_webhook(self, payload: Dict[str, Any], resolve: ChannelResolver) -> int:
        """Emit events for one webhook delivery; returns how many were emitted."""
        if payload.get("object") != self.webhook_object:
            return 0
        emitted = 0
        for entry in payload.get("entry") or []:
            for item in entry.get("messaging") or []:
                recipient = str((item.get("recipient") or {}).get("id") or entry.get("id") or "")
                channel = await resolve(self.platform, recipient)
                if channel is None:
                    log.info("%s webhook for unknown account %s", self.platform.value, recipient)
                    continue
                for event in await self._events_for(channel, item):
                    await self.emit(event)
                    emitted += 1
        return emitted

    async def _events_for(self, channel: Channel, item: Dict[str, Any]) -> List[AdapterEvent]:
        msg = item.get("message")
        if msg and not msg.get("is_echo"):
            sender_id = str((item.get("sender") or {}).get("id") or "")
            if not sender_id:
                return []
            content_type, media_url = ContentType.TEXT, None
            attachments = msg.get("attachments") or []
            if attachments:
                first = attachments[0]
                content_type = _ATTACHMENT_TYPES.get(first.get("type"), ContentType.DOCUMENT)
                media_url = (first.get("payload") or {}).get("url")
            profile = await self._profile(channel, sender_id)
            return [
                AdapterEvent(
                    INBOUND_MESSAGE,
                    channel.id,
                    {
                        "contact": {"id": sender_id, "name": profile["name"], "avatar": profile["avatar"]},
                        "message": {
                            "content": msg.get("text") or "",
                            "content_type": content_type.value,
                            "media_url": media_url,
                            "external_id": msg.get("mid"),
                        },
                    },
                )
            ]
        delivery = item.get("delivery")
        if delivery:
            return [
                AdapterEvent(MESSAGE_STATUS, channel.id, {"external_id": mid, "status": "delivered"})
                for mid in delivery.get("mids") or []
            ]
        return []

    async def close(self) -> None:
        await self._client.aclose()
