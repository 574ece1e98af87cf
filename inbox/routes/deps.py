from __future__ import annotations

from typing import Any, Callable, Mapping

from fastapi import Depends, Request

from ..auth import authenticate_token, bearer_token
from ..errors import ValidationError
from ..models import Agent
from ..observability.context import set_agent_id
from ..permissions import require
from ..runtime import InboxRuntime


def get_runtime(request: Request) -> InboxRuntime:
    return request.app.state.runtime


async def current_agent(request: Request, rt: InboxRuntime = Depends(get_runtime)) -> Agent:
    agent = await authenticate_token(rt.db, bearer_token(request))
    request.state.agent = agent
    set_agent_id(agent.id)
    return agent


def require_permission(action: str) -> Callable:
    async def _dep(agent: Agent = Depends(current_agent)) -> Agent:
        require(agent, action)
        return agent

    return _dep


def body_str(payload: Mapping[str, Any], key: str, *, required: bool = False, default: str = "") -> str:
    value = payload.get(key, default)
    if value is None:
        value = ""
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    value = value.strip()
    if required and not value:
        raise ValidationError(f"{key} is required")
    return value
