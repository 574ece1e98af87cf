import asyncio
import os
from functools import partial

import httpx
import pytest

# Ensure tests always use SQLite (some environments may export DATABASE_URL).
os.environ.pop("DATABASE_URL", None)
os.environ.pop("BOOTSTRAP_ADMIN_EMAIL", None)
os.environ.pop("BOOTSTRAP_ADMIN_PASSWORD", None)
os.environ.pop("GEMINI_API_KEY", None)
os.environ.setdefault("AGENT_AUTH_SECRET", "test-secret")
os.environ.setdefault("APP_ENV", "test")
os.environ["ENABLE_WS_PUBSUB"] = "0"

from inbox.adapters.meta import MetaAdapter
from inbox.adapters.whatsapp_web import SCAN_QR_CODE, STOPPED, WORKING, DriverStatus, SessionDriver, WhatsAppWebAdapter
from inbox.auth import hash_password, issue_access_token
from inbox.errors import UpstreamError
from inbox.models import Agent, AgentRole, AgentStatus, PermissionSet, Platform, new_id
from inbox.polling import BackoffPolicy, Clock
from inbox.runtime import RuntimeSettings, build_runtime

META_APP_SECRET = "meta-app-secret"
META_VERIFY_TOKEN = "verify-me"
GATEWAY_SECRET = "gateway-secret"


class FakeSessionDriver(SessionDriver):
    """In-memory gateway. ``live`` is every session currently held upstream."""

    def __init__(self, *, pair_after=0, phone="+971500000001"):
        self.pair_after = pair_after
        self.phone = phone
        self.live = set()
        self.paired = set()
        self.started = []
        self.stopped = []
        self.sent = []
        self.polls = {}
        self.fail_start = None
        self.fail_send = None
        self.hang_send = False
        self.closed = False

    def pair(self, session):
        self.paired.add(session)

    async def start(self, session):
        if self.fail_start:
            raise UpstreamError(self.fail_start)
        self.live.add(session)
        self.started.append(session)
        self.polls[session] = 0

    async def status(self, session):
        if session not in self.live:
            return DriverStatus(state=STOPPED)
        self.polls[session] = self.polls.get(session, 0) + 1
        if session in self.paired or (self.pair_after is not None and self.polls[session] > self.pair_after):
            return DriverStatus(state=WORKING, phone=self.phone)
        return DriverStatus(state=SCAN_QR_CODE)

    async def qr(self, session):
        return f"qr:{session}" if session in self.live else None

    async def send(self, session, chat_id, message):
        if self.hang_send:
            await asyncio.Event().wait()
        if self.fail_send:
            raise UpstreamError(self.fail_send)
        self.sent.append((session, chat_id, message.content))
        return f"true_{chat_id}_{len(self.sent)}"

    async def stop(self, session):
        self.live.discard(session)
        self.stopped.append(session)

    async def close(self):
        self.closed = True


class FakeClock(Clock):
    """Advances instantly on sleep; ``frozen`` parks every sleep until cancelled."""

    def __init__(self):
        self.now = 0.0
        self.frozen = False
        self.sleeps = []

    def monotonic(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        if self.frozen:
            await asyncio.Event().wait()
        self.now += seconds
        await asyncio.sleep(0)


class FakeGraph:
    """Graph API double served through ``httpx.MockTransport``."""

    def __init__(self):
        self.requests = []
        self.rejected_tokens = {"bad-token"}
        self.expired_tokens = set()
        self.profiles = {"psid-1": {"name": "Lina", "profile_pic": "https://cdn.test/lina.jpg"}}
        self.sent = 0

    def transport(self):
        return httpx.MockTransport(self.handle)

    @staticmethod
    def _error(code, message):
        return httpx.Response(400, json={"error": {"code": code, "message": message, "type": "OAuthException"}})

    def handle(self, request):
        self.requests.append(request)
        token = request.url.params.get("access_token")
        path = request.url.path.split("/", 2)[-1]
        if token in self.rejected_tokens:
            return self._error(190, "Invalid OAuth access token.")
        if request.method == "POST" and path == "me/messages":
            if token in self.expired_tokens:
                return self._error(190, "Session has expired")
            self.sent += 1
            return httpx.Response(200, json={"recipient_id": "psid-1", "message_id": f"m_{self.sent}"})
        if request.method == "POST" and path.endswith("/subscribed_apps"):
            return httpx.Response(200, json={"success": True})
        if request.method == "GET":
            if path in self.profiles:
                return httpx.Response(200, json=self.profiles[path])
            return httpx.Response(200, json={"id": path, "name": f"Page {path}"})
        return httpx.Response(404, json={"error": {"message": "unknown path"}})

    def sent_bodies(self):
        return [r for r in self.requests if r.method == "POST" and r.url.path.endswith("/me/messages")]


@pytest.fixture
def driver():
    return FakeSessionDriver()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def graph():
    return FakeGraph()


@pytest.fixture
def settings():
    return RuntimeSettings(
        meta_app_secret=META_APP_SECRET,
        meta_verify_token=META_VERIFY_TOKEN,
        gateway_webhook_secret=GATEWAY_SECRET,
        ws_auth_timeout=2.0,
    )


@pytest.fixture
def runtime_factory(tmp_path, clock, graph, settings):
    db_path = str(tmp_path / "inbox.sqlite")

    def _make(driver, *, send_timeout=2.0, queue_maxsize=50, generator=None):
        adapters = [
            WhatsAppWebAdapter(
                driver,
                pairing_policy=BackoffPolicy(base_delay=1.0, factor=1.0, max_delay=1.0, max_attempts=100),
                pairing_timeout=5.0,
                clock=clock,
            ),
            MetaAdapter(Platform.FACEBOOK, graph_url="https://graph.test", transport=graph.transport()),
            MetaAdapter(Platform.INSTAGRAM, graph_url="https://graph.test", transport=graph.transport()),
        ]
        return build_runtime(
            db_path=db_path,
            db_url="",
            adapters=adapters,
            settings=settings,
            send_timeout=send_timeout,
            queue_maxsize=queue_maxsize,
            generator=generator,
        )

    return _make


@pytest.fixture
def runtime(runtime_factory, driver):
    return runtime_factory(driver)


@pytest.fixture
def run(runtime):
    """Run ``scenario()`` inside a started runtime, stopping it afterwards."""

    def _run(scenario, rt=None):
        rt = rt or runtime

        async def _main():
            await rt.start()
            try:
                return await scenario()
            finally:
                await rt.stop()

        return asyncio.run(_main())

    return _run


@pytest.fixture
def make_agent(runtime):
    async def _make(email, *, role=AgentRole.AGENT, permissions=None, status=AgentStatus.ACTIVE, password="secret123", db=None):
        return await (db or runtime.db).insert_agent(
            Agent(
                id=new_id(),
                email=email,
                name=email.split("@", 1)[0].title(),
                role=role,
                permissions=permissions or PermissionSet.for_role(role),
                status=status,
                password_hash=hash_password(password),
            )
        )

    return _make


@pytest.fixture
def client(runtime):
    from fastapi.testclient import TestClient

    from inbox.main import create_app

    with TestClient(create_app(runtime)) as c:
        yield c


@pytest.fixture
def call(client):
    """Run a coroutine function on the app's event loop."""

    def _call(fn, *args, **kwargs):
        return client.portal.call(partial(fn, *args, **kwargs))

    return _call


@pytest.fixture
def auth():
    def _headers(agent):
        return {"Authorization": f"Bearer {issue_access_token(agent.id)}"}

    return _headers
