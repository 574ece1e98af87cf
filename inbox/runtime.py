from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from . import config
from .adapters.base import ChannelAdapter
from .adapters.manager import ChannelManager
from .adapters.meta import MetaAdapter
from .adapters.whatsapp_web import GatewaySessionDriver, WhatsAppWebAdapter
from .auth import hash_password
from .broadcaster import EventBroadcaster
from .db import DatabaseManager
from .models import Agent, AgentRole, Platform, PermissionSet, new_id
from .polling import BackoffPolicy
from .presence import PresenceTracker
from .pubsub import RedisRelay
from .registry import ConversationRegistry
from .usage import GeminiProvider, GenerativeProvider, MeteredProvider, UsageLedger

log = logging.getLogger(__name__)


@dataclass
class RuntimeSettings:
    meta_app_secret: str = config.META_APP_SECRET
    meta_verify_token: str = config.META_VERIFY_TOKEN
    gateway_webhook_secret: str = config.WA_GATEWAY_WEBHOOK_SECRET
    ws_auth_timeout: float = config.WS_AUTH_TIMEOUT_SECONDS
    reconnect_policy: BackoffPolicy = field(
        default_factory=lambda: BackoffPolicy(
            base_delay=config.WS_RECONNECT_BASE_MS / 1000.0,
            factor=2.0,
            max_delay=config.WS_RECONNECT_MAX_MS / 1000.0,
            max_attempts=config.WS_RECONNECT_MAX_ATTEMPTS,
        )
    )


@dataclass
class InboxRuntime:
    """Everything a request handler may touch, built once per process."""

    db: DatabaseManager
    broadcaster: EventBroadcaster
    channels: ChannelManager
    registry: ConversationRegistry
    presence: PresenceTracker
    ledger: UsageLedger
    settings: RuntimeSettings = field(default_factory=RuntimeSettings)
    relay: Optional[RedisRelay] = None
    generator: Optional[MeteredProvider] = None

    async def start(self) -> None:
        await self.db.init_db()
        await self.bootstrap_admin()
        await self.channels.restore()
        if self.relay is not None and await self.relay.connect():
            self.relay.start(self.broadcaster)

    async def stop(self) -> None:
        await self.broadcaster.close()
        await self.channels.close()
        if self.generator is not None:
            await self.generator.close()
        if self.relay is not None:
            await self.relay.close()
        await self.db.close()

    async def bootstrap_admin(self) -> None:
        if not (config.BOOTSTRAP_ADMIN_EMAIL and config.BOOTSTRAP_ADMIN_PASSWORD):
            return
        if await self.db.count_agents():
            return
        await self.db.insert_agent(
            Agent(
                id=new_id(),
                email=config.BOOTSTRAP_ADMIN_EMAIL,
                name="Administrator",
                role=AgentRole.ADMIN,
                permissions=PermissionSet.full(),
                password_hash=hash_password(config.BOOTSTRAP_ADMIN_PASSWORD),
            )
        )
        log.info("Bootstrap admin %s created", config.BOOTSTRAP_ADMIN_EMAIL)

    def adapter(self, platform: Platform) -> ChannelAdapter:
        return self.channels.adapter_for(platform)


def default_adapters() -> list:
    return [
        WhatsAppWebAdapter(GatewaySessionDriver()),
        MetaAdapter(Platform.FACEBOOK),
        MetaAdapter(Platform.INSTAGRAM),
    ]


def build_runtime(
    *,
    db_path: Optional[str] = None,
    db_url: Optional[str] = None,
    adapters: Optional[Iterable[ChannelAdapter]] = None,
    settings: Optional[RuntimeSettings] = None,
    send_timeout: float = config.SEND_TIMEOUT_SECONDS,
    queue_maxsize: int = config.WS_CLIENT_QUEUE_MAX,
    generator: Optional[GenerativeProvider] = None,
) -> InboxRuntime:
    db = DatabaseManager(db_path, db_url)
    relay = RedisRelay() if (config.ENABLE_WS_PUBSUB and config.REDIS_URL) else None
    broadcaster = EventBroadcaster(queue_maxsize=queue_maxsize, relay=relay)
    channels = ChannelManager(
        db, broadcaster, adapters if adapters is not None else default_adapters(), send_timeout=send_timeout
    )
    registry = ConversationRegistry(db, broadcaster, channels)
    channels.inbound_handler = registry.handle_adapter_event
    ledger = UsageLedger(db)
    if generator is None and config.GEMINI_API_KEY:
        generator = GeminiProvider()
    return InboxRuntime(
        db=db,
        broadcaster=broadcaster,
        channels=channels,
        registry=registry,
        presence=PresenceTracker(db, broadcaster),
        ledger=ledger,
        settings=settings or RuntimeSettings(),
        relay=relay,
        generator=MeteredProvider(generator, ledger) if generator is not None else None,
    )
