import hashlib
import hmac
import json

from inbox.models import AgentRole, PermissionSet
from inbox.routes.webhooks import verify_signature


def _signed(secret, payload, digest=hashlib.sha256, prefix="sha256="):
    body = json.dumps(payload).encode("utf-8")
    return body, prefix + hmac.new(secret.encode("utf-8"), body, digest).hexdigest()


def _page_message(mid="m.in.1", text="Hello shop"):
    return {
        "object": "page",
        "entry": [
            {
                "id": "page-1",
                "messaging": [
                    {"sender": {"id": "psid-1"}, "recipient": {"id": "page-1"}, "message": {"mid": mid, "text": text}}
                ],
            }
        ],
    }


def _facebook_channel(client, headers):
    r = client.post(
        "/channels/facebook/init",
        json={"name": "Shop page", "identifier": "page-1", "access_token": "good-token"},
        headers=headers,
    )
    assert r.status_code == 200
    return r.json()["data"]["id"]


def test_verify_signature_accepts_prefixed_and_bare_digests():
    body = b'{"a":1}'
    digest = hmac.new(b"s", body, hashlib.sha256).hexdigest()
    assert verify_signature("s", body, f"sha256={digest}")
    assert verify_signature("s", body, digest)
    assert not verify_signature("s", body, "sha256=deadbeef")
    assert not verify_signature("s", body, "")


def test_hub_verification(client, settings):
    params = {"hub.mode": "subscribe", "hub.verify_token": settings.meta_verify_token, "hub.challenge": "1158201444"}
    r = client.get("/webhooks/facebook", params=params)
    assert r.status_code == 200
    assert r.text == "1158201444"

    r = client.get("/webhooks/instagram", params={**params, "hub.verify_token": "wrong"})
    assert r.status_code == 403
    assert client.get("/webhooks/telegram", params=params).status_code == 404


def test_unsigned_meta_delivery_is_rejected(client):
    body = json.dumps(_page_message()).encode("utf-8")
    r = client.post("/webhooks/facebook", content=body, headers={"Content-Type": "application/json"})
    assert r.status_code == 401


def test_meta_message_reaches_the_inbox_once(client, call, make_agent, auth, runtime, settings):
    admin = call(make_agent, "admin@example.com", role=AgentRole.ADMIN)
    headers = auth(admin)
    _facebook_channel(client, headers)

    body, signature = _signed(settings.meta_app_secret, _page_message())
    for _ in range(2):
        r = client.post(
            "/webhooks/facebook",
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": signature},
        )
        assert r.status_code == 200
        assert r.json() == {"ok": True, "data": {"events": 1}}
    call(runtime.channels.drain)

    listing = client.get("/inbox/conversations", headers=headers).json()["data"]
    assert listing["total"] == 1
    conv = listing["items"][0]
    assert conv["contact_id"] == "psid-1"
    assert conv["contact_name"] == "Lina"
    assert conv["contact_avatar"] == "https://cdn.test/lina.jpg"
    assert conv["platform"] == "facebook"
    assert call(runtime.db.count_messages, conv["id"]) == 1


def test_meta_delivery_receipt_upgrades_outbound_status(client, call, make_agent, auth, runtime, graph, settings):
    admin = call(make_agent, "admin@example.com", permissions=PermissionSet.full())
    headers = auth(admin)
    _facebook_channel(client, headers)
    body, signature = _signed(settings.meta_app_secret, _page_message())
    client.post("/webhooks/facebook", content=body, headers={"X-Hub-Signature-256": signature})
    call(runtime.channels.drain)
    conv_id = client.get("/inbox/conversations", headers=headers).json()["data"]["items"][0]["id"]

    sent = client.post(f"/inbox/conversations/{conv_id}/messages", json={"content": "On its way"}, headers=headers)
    assert sent.json()["data"]["external_id"] == "m_1"
    sent_body = json.loads(graph.sent_bodies()[0].content)
    assert sent_body["recipient"] == {"id": "psid-1"}
    assert sent_body["message"] == {"text": "On its way"}

    receipt = {
        "object": "page",
        "entry": [
            {
                "id": "page-1",
                "messaging": [
                    {"sender": {"id": "psid-1"}, "recipient": {"id": "page-1"}, "delivery": {"mids": ["m_1"], "watermark": 1}}
                ],
            }
        ],
    }
    body, signature = _signed(settings.meta_app_secret, receipt)
    client.post("/webhooks/facebook", content=body, headers={"X-Hub-Signature-256": signature})
    call(runtime.channels.drain)

    messages = call(runtime.db.get_messages, conv_id)
    assert messages[-1].status.value == "delivered"


def test_meta_events_for_unknown_pages_are_ignored(client, settings):
    payload = _page_message()
    payload["entry"][0]["messaging"][0]["recipient"]["id"] = "page-unknown"
    payload["entry"][0]["id"] = "page-unknown"
    body, signature = _signed(settings.meta_app_secret, payload)
    r = client.post("/webhooks/facebook", content=body, headers={"X-Hub-Signature-256": signature})
    assert r.json()["data"]["events"] == 0


def test_gateway_callbacks_are_signed_and_routed(client, call, make_agent, auth, runtime, settings):
    admin = call(make_agent, "admin@example.com", role=AgentRole.ADMIN)
    headers = auth(admin)
    channel_id = client.post("/channels/whatsapp/init", json={}, headers=headers).json()["data"]["id"]

    event = {
        "event": "message",
        "session": f"channel-{channel_id}",
        "payload": {"id": "wamid.Z", "from": "971509999999@c.us", "body": "Salam", "fromMe": False},
    }
    body, signature = _signed(settings.gateway_webhook_secret, event, digest=hashlib.sha512, prefix="")
    r = client.post("/webhooks/whatsapp-web", content=body, headers={"X-Webhook-Hmac": signature})
    assert r.status_code == 200
    assert r.json()["data"]["accepted"] is True
    call(runtime.channels.drain)

    items = client.get("/inbox/conversations", headers=headers).json()["data"]["items"]
    assert [(c["contact_id"], c["last_message"]) for c in items] == [("+971509999999", "Salam")]

    r = client.post("/webhooks/whatsapp-web", content=body, headers={"X-Webhook-Hmac": "0" * 128})
    assert r.status_code == 401

    stray = dict(event, session="channel-unknown")
    body, signature = _signed(settings.gateway_webhook_secret, stray, digest=hashlib.sha512, prefix="")
    r = client.post("/webhooks/whatsapp-web", content=body, headers={"X-Webhook-Hmac": signature})
    assert r.json()["data"]["accepted"] is False


def test_own_and_group_messages_from_gateway_are_skipped(client, call, make_agent, auth, runtime, settings):
    admin = call(make_agent, "admin@example.com", role=AgentRole.ADMIN)
    headers = auth(admin)
    channel_id = client.post("/channels/whatsapp/init", json={}, headers=headers).json()["data"]["id"]
    for payload in (
        {"id": "a", "from": "971500000000@c.us", "body": "echo", "fromMe": True},
        {"id": "b", "from": "12036302@g.us", "body": "group chatter"},
        {"id": "c", "from": "status@broadcast", "body": "story"},
    ):
        body, signature = _signed(
            settings.gateway_webhook_secret, {"event": "message", "session": f"channel-{channel_id}", "payload": payload},
            digest=hashlib.sha512, prefix="",
        )
        client.post("/webhooks/whatsapp-web", content=body, headers={"X-Webhook-Hmac": signature})
    call(runtime.channels.drain)
    assert client.get("/inbox/conversations", headers=headers).json()["data"]["total"] == 0
