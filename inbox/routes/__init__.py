from .agents import create_agents_router
from .auth import create_auth_router
from .channels import create_channels_router
from .inbox import create_inbox_router
from .realtime import create_realtime_router
from .webhooks import create_webhooks_router

__all__ = [
    "create_agents_router",
    "create_auth_router",
    "create_channels_router",
    "create_inbox_router",
    "create_realtime_router",
    "create_webhooks_router",
]
