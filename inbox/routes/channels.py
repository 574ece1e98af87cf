from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends

from ..errors import NotFoundError, UpstreamError, envelope
from ..models import Agent, Platform
from ..runtime import InboxRuntime
from .deps import body_str, current_agent, get_runtime, require_permission


def create_channels_router() -> APIRouter:
    router = APIRouter(prefix="/channels", tags=["channels"])

    @router.get("")
    async def list_channels(
        platform: Optional[str] = None,
        rt: InboxRuntime = Depends(get_runtime),
        agent: Agent = Depends(current_agent),
    ):
        items = await rt.channels.list_channels(Platform.parse(platform) if platform else None)
        grouped = {p.value: [c for c in items if c["platform"] == p.value] for p in Platform}
        return envelope({"items": items, "by_platform": grouped})

    @router.get("/{channel_id}")
    async def get_channel(
        channel_id: str,
        rt: InboxRuntime = Depends(get_runtime),
        agent: Agent = Depends(current_agent),
    ):
        channel = await rt.channels.get_channel(channel_id)
        return envelope(rt.channels.describe(channel))

    @router.post("/{platform}/init")
    async def init_channel(
        platform: str,
        payload: dict = Body(default={}),
        rt: InboxRuntime = Depends(get_runtime),
        agent: Agent = Depends(require_permission("manage_channels")),
    ):
        """Create a channel and start its session.

        WhatsApp returns ``awaiting_pairing`` with a QR payload to scan;
        Facebook/Instagram need ``identifier`` (page / account id) and an
        ``access_token`` and become active immediately.
        """
        plat = Platform.parse(platform)
        credentials = None
        identifier = None
        if plat is Platform.WHATSAPP:
            name = body_str(payload, "name") or "WhatsApp"
        else:
            name = body_str(payload, "name", required=True)
            identifier = body_str(payload, "identifier", required=True)
            credentials = {"access_token": body_str(payload, "access_token", required=True)}
        channel = await rt.channels.create_channel(plat, name, identifier=identifier, credentials=credentials)
        try:
            data = await rt.channels.connect(channel.id)
        except UpstreamError as exc:
            exc.data = rt.channels.describe(await rt.channels.get_channel(channel.id))
            raise
        return envelope(data)

    @router.post("/{channel_id}/reconnect")
    async def reconnect_channel(
        channel_id: str,
        rt: InboxRuntime = Depends(get_runtime),
        agent: Agent = Depends(require_permission("manage_channels")),
    ):
        return envelope(await rt.channels.connect(channel_id))

    @router.get("/{platform}/{channel_id}/qr")
    async def pairing_payload(
        platform: str,
        channel_id: str,
        rt: InboxRuntime = Depends(get_runtime),
        agent: Agent = Depends(require_permission("manage_channels")),
    ):
        channel = await rt.channels.get_channel(channel_id)
        if channel.platform is not Platform.parse(platform):
            raise NotFoundError("Channel not found")
        return envelope(rt.channels.pairing_status(channel))

    @router.delete("/{channel_id}")
    async def remove_channel(
        channel_id: str,
        rt: InboxRuntime = Depends(get_runtime),
        agent: Agent = Depends(require_permission("manage_channels")),
    ):
        await rt.channels.remove(channel_id)
        return envelope({"channel_id": channel_id, "removed": True})

    return router
