from __future__ import annotations

import hashlib
import hmac
import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse

from ..adapters.meta import MetaAdapter
from ..adapters.whatsapp_web import WhatsAppWebAdapter
from ..models import Channel, Platform
from ..runtime import InboxRuntime
from .deps import get_runtime

log = logging.getLogger(__name__)


def verify_signature(secret: str, body: bytes, header: str, digest=hashlib.sha256) -> bool:
    """Check an ``X-Hub-Signature-256``-style header (optionally ``algo=`` prefixed)."""
    expected = hmac.new(secret.encode("utf-8"), body, digest).hexdigest()
    presented = header.split("=", 1)[1] if "=" in header else header
    return bool(presented) and hmac.compare_digest(presented.strip(), expected)


async def _read_json(request: Request, secret: str, header_name: str, digest) -> dict:
    body = await request.body()
    if secret and not verify_signature(secret, body, request.headers.get(header_name, ""), digest):
        raise PermissionError("Invalid signature")
    data = json.loads(body.decode("utf-8") or "{}")
    if not isinstance(data, dict):
        raise ValueError("payload must be an object")
    return data


def create_webhooks_router() -> APIRouter:
    router = APIRouter(prefix="/webhooks", tags=["webhooks"])

    @router.post("/whatsapp-web")
    async def gateway_webhook(request: Request, rt: InboxRuntime = Depends(get_runtime)):
        """Callbacks from the WhatsApp Web session gateway."""
        adapter = rt.channels.adapters.get(Platform.WHATSAPP)
        if not isinstance(adapter, WhatsAppWebAdapter):
            return PlainTextResponse("Not found", status_code=404)
        try:
            data = await _read_json(request, rt.settings.gateway_webhook_secret, "X-Webhook-Hmac", hashlib.sha512)
        except PermissionError:
            log.warning("Invalid gateway webhook signature")
            return PlainTextResponse("Invalid signature", status_code=401)
        except ValueError:
            return PlainTextResponse("Bad Request", status_code=400)
        known = await adapter.handle_gateway_event(data)
        return {"ok": True, "data": {"accepted": known}}

    @router.api_route("/{platform}", methods=["GET", "POST"])
    async def meta_webhook(platform: str, request: Request, rt: InboxRuntime = Depends(get_runtime)):
        """Facebook Page / Instagram webhook (hub verification + events)."""
        try:
            plat = Platform(platform)
        except ValueError:
            return PlainTextResponse("Not found", status_code=404)
        adapter = rt.channels.adapters.get(plat)
        if not isinstance(adapter, MetaAdapter):
            return PlainTextResponse("Not found", status_code=404)

        if request.method == "GET":
            params = request.query_params
            token = params.get("hub.verify_token")
            challenge = params.get("hub.challenge")
            verify_token = rt.settings.meta_verify_token
            if params.get("hub.mode") == "subscribe" and verify_token and token == verify_token and challenge:
                return PlainTextResponse(challenge)
            log.info("%s webhook verification failed", platform)
            return PlainTextResponse("Verification failed", status_code=403)

        try:
            data = await _read_json(request, rt.settings.meta_app_secret, "X-Hub-Signature-256", hashlib.sha256)
        except PermissionError:
            log.warning("Invalid %s webhook signature", platform)
            return PlainTextResponse("Invalid signature", status_code=401)
        except ValueError:
            return PlainTextResponse("Bad Request", status_code=400)

        async def resolve(p: Platform, identifier: str) -> Channel | None:
            return await rt.db.find_channel(p.value, identifier)

        emitted = await adapter.handle_webhook(data, resolve)
        return {"ok": True, "data": {"events": emitted}}

    return router
