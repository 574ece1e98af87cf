from inbox.models import AgentRole, ContactRef, MessageInput, PermissionSet, Platform


def _manager(call, make_agent):
    return call(make_agent, "ops@example.com", permissions=PermissionSet(manage_channels=True))


def test_whatsapp_channel_init_returns_pairing_payload(client, call, make_agent, auth, driver, clock):
    driver.pair_after = None
    clock.frozen = True
    headers = auth(_manager(call, make_agent))

    r = client.post("/channels/whatsapp/init", json={"name": "Sales line"}, headers=headers)
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["state"] == "awaiting_pairing"
    assert data["name"] == "Sales line"
    assert data["identifier"].startswith("pending-")
    channel_id = data["id"]

    qr = client.get(f"/channels/whatsapp/{channel_id}/qr", headers=headers).json()["data"]
    assert qr == {
        "channel_id": channel_id,
        "status": "awaiting_pairing",
        "pairing_payload": f"qr:channel-{channel_id}",
        "available": True,
    }
    assert client.get(f"/channels/facebook/{channel_id}/qr", headers=headers).status_code == 404

    listed = client.get("/channels", headers=headers).json()["data"]
    assert [c["id"] for c in listed["by_platform"]["whatsapp"]] == [channel_id]
    assert listed["by_platform"]["facebook"] == []


def test_removing_a_channel_releases_its_session(client, call, make_agent, auth, driver, clock):
    driver.pair_after = None
    clock.frozen = True
    headers = auth(_manager(call, make_agent))
    channel_id = client.post("/channels/whatsapp/init", json={}, headers=headers).json()["data"]["id"]
    assert len(driver.live) == 1

    r = client.delete(f"/channels/{channel_id}", headers=headers)
    assert r.status_code == 200
    assert r.json()["data"] == {"channel_id": channel_id, "removed": True}
    assert driver.live == set()
    assert client.get(f"/channels/{channel_id}", headers=headers).status_code == 404
    assert client.delete(f"/channels/{channel_id}", headers=headers).status_code == 404


def test_channel_actions_need_manage_channels(client, call, make_agent, auth):
    agent = call(make_agent, "agent@example.com")
    r = client.post("/channels/whatsapp/init", json={}, headers=auth(agent))
    assert r.status_code == 403
    assert client.get("/channels", headers=auth(agent)).status_code == 200


def test_meta_channel_init(client, call, make_agent, auth):
    headers = auth(_manager(call, make_agent))
    r = client.post(
        "/channels/facebook/init",
        json={"name": "Shop page", "identifier": "page-1", "access_token": "good-token"},
        headers=headers,
    )
    assert r.status_code == 200
    assert r.json()["data"]["state"] == "active"

    missing = client.post("/channels/instagram/init", json={"name": "IG"}, headers=headers)
    assert missing.status_code == 400

    bad = client.post(
        "/channels/instagram/init",
        json={"name": "IG", "identifier": "ig-1", "access_token": "bad-token"},
        headers=headers,
    )
    assert bad.status_code == 502
    body = bad.json()
    assert body["ok"] is False
    assert body["data"]["status"] == "pending"
    assert "token rejected" in body["data"]["status_reason"]

    assert client.post("/channels/telegram/init", json={}, headers=headers).status_code == 400


def test_reconnecting_an_active_channel_conflicts(client, call, make_agent, auth):
    headers = auth(_manager(call, make_agent))
    channel_id = client.post("/channels/whatsapp/init", json={}, headers=headers).json()["data"]["id"]
    r = client.post(f"/channels/{channel_id}/reconnect", headers=headers)
    assert r.status_code == 409


def _seed_conversation(call, runtime, contact="+971500000001", text="Hi there"):
    ch = call(runtime.channels.create_channel, Platform.WHATSAPP, "wa-1")
    call(runtime.channels.connect, ch.id)
    return call(runtime.registry.ingest, ch.id, ContactRef(contact, name="Omar"), MessageInput(content=text))


def test_conversation_list_is_scoped_by_permissions(client, call, make_agent, auth, runtime):
    admin = call(make_agent, "admin@example.com", role=AgentRole.ADMIN)
    agent = call(make_agent, "agent@example.com")
    seeded = _seed_conversation(call, runtime)
    conv_id = seeded.conversation.id

    assert client.get("/inbox/conversations", headers=auth(agent)).json()["data"]["total"] == 0
    assert client.get(f"/inbox/conversations/{conv_id}", headers=auth(agent)).status_code == 403

    admin_view = client.get("/inbox/conversations", headers=auth(admin)).json()["data"]
    assert admin_view["total"] == 1
    assert admin_view["items"][0]["platform"] == "whatsapp"
    assert admin_view["items"][0]["channel_name"] == "wa-1"

    r = client.post(f"/inbox/conversations/{conv_id}/assign", json={"agent_id": agent.id}, headers=auth(admin))
    assert r.status_code == 200
    assert r.json()["data"]["assigned_agent_id"] == agent.id

    mine = client.get("/inbox/conversations", headers=auth(agent)).json()["data"]
    assert [c["id"] for c in mine["items"]] == [conv_id]


def test_conversation_filters(client, call, make_agent, auth, runtime):
    admin = call(make_agent, "admin@example.com", role=AgentRole.ADMIN)
    seeded = _seed_conversation(call, runtime, text="Where is my order?")
    call(runtime.registry.ingest, seeded.conversation.channel_id, ContactRef("+971500000002"), MessageInput(content="thanks"))
    headers = auth(admin)

    r = client.get("/inbox/conversations", params={"search": "order"}, headers=headers)
    assert [c["id"] for c in r.json()["data"]["items"]] == [seeded.conversation.id]
    r = client.get("/inbox/conversations", params={"platform": "facebook"}, headers=headers)
    assert r.json()["data"]["total"] == 0
    r = client.get("/inbox/conversations", params={"limit": 1, "page": 2}, headers=headers)
    assert r.json()["data"]["total"] == 2
    assert len(r.json()["data"]["items"]) == 1
    assert client.get("/inbox/conversations", params={"status": "snoozed"}, headers=headers).status_code == 400


def test_reading_a_conversation_clears_unread(client, call, make_agent, auth, runtime):
    admin = call(make_agent, "admin@example.com", role=AgentRole.ADMIN)
    seeded = _seed_conversation(call, runtime)
    conv_id = seeded.conversation.id

    peek = client.get(f"/inbox/conversations/{conv_id}", params={"mark_read": "false"}, headers=auth(admin))
    assert peek.json()["data"]["conversation"]["unread_count"] == 1
    assert [m["content"] for m in peek.json()["data"]["messages"]] == ["Hi there"]

    r = client.post(f"/inbox/conversations/{conv_id}/read", headers=auth(admin))
    assert r.json()["data"]["unread_count"] == 0


def test_agent_reply_over_rest(client, call, make_agent, auth, runtime, driver):
    admin = call(make_agent, "admin@example.com", role=AgentRole.ADMIN)
    agent = call(make_agent, "agent@example.com")
    seeded = _seed_conversation(call, runtime)
    conv_id = seeded.conversation.id

    r = client.post(f"/inbox/conversations/{conv_id}/messages", json={"content": "Hello"}, headers=auth(agent))
    assert r.status_code == 403
    assert driver.sent == []

    call(runtime.registry.assign, conv_id, admin.id, agent.id)
    r = client.post(f"/inbox/conversations/{conv_id}/messages", json={"content": "Hello"}, headers=auth(agent))
    assert r.status_code == 200
    msg = r.json()["data"]
    assert msg["direction"] == "outgoing"
    assert msg["status"] == "sent"
    assert msg["agent_id"] == agent.id

    assert client.post(f"/inbox/conversations/{conv_id}/messages", json={"content": " "}, headers=auth(agent)).status_code == 400
    r = client.post(
        f"/inbox/conversations/{conv_id}/messages",
        json={"content_type": "image", "media": {"url": "https://cdn.test/a.jpg"}},
        headers=auth(agent),
    )
    assert r.status_code == 200
    assert r.json()["data"]["media"] == {"url": "https://cdn.test/a.jpg", "type": "image"}


def test_failed_reply_returns_the_failed_message(client, call, make_agent, auth, runtime, driver):
    admin = call(make_agent, "admin@example.com", role=AgentRole.ADMIN)
    seeded = _seed_conversation(call, runtime)
    driver.fail_send = "gateway refused"

    r = client.post(
        f"/inbox/conversations/{seeded.conversation.id}/messages", json={"content": "Hello"}, headers=auth(admin)
    )
    assert r.status_code == 502
    body = r.json()
    assert body["detail"]["code"] == "send_failed"
    assert body["data"]["status"] == "failed"
    assert body["data"]["error"] == "gateway refused"


def test_status_changes(client, call, make_agent, auth, runtime):
    admin = call(make_agent, "admin@example.com", role=AgentRole.ADMIN)
    seeded = _seed_conversation(call, runtime)
    url = f"/inbox/conversations/{seeded.conversation.id}/status"
    r = client.put(url, json={"status": "resolved"}, headers=auth(admin))
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "resolved"
    assert client.put(url, json={"status": "deleted"}, headers=auth(admin)).status_code == 400
    assert client.put("/inbox/conversations/nope/status", json={"status": "resolved"}, headers=auth(admin)).status_code == 404


def test_stats_endpoint(client, call, make_agent, auth, runtime):
    admin = call(make_agent, "admin@example.com", role=AgentRole.ADMIN)
    _seed_conversation(call, runtime)
    data = client.get("/inbox/stats", headers=auth(admin)).json()["data"]
    assert data["conversations"]["total"] == 1
    assert data["conversations"]["unread_messages"] == 1
    assert data["channels"] == {"active": 1}
