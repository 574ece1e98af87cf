from __future__ import annotations

from fastapi import APIRouter, Body, Depends

from ..auth import issue_access_token, verify_password
from ..errors import AuthenticationError, envelope
from ..models import Agent, AgentStatus, utc_now
from ..runtime import InboxRuntime
from .deps import body_str, current_agent, get_runtime


def create_auth_router() -> APIRouter:
    router = APIRouter(prefix="/auth", tags=["auth"])

    @router.post("/login")
    async def login(payload: dict = Body(...), rt: InboxRuntime = Depends(get_runtime)):
        email = body_str(payload, "email", required=True).lower()
        password = payload.get("password") or ""
        agent = await rt.db.get_agent_by_email(email)
        if agent is None or not verify_password(str(password), agent.password_hash):
            raise AuthenticationError("Invalid email or password")
        if agent.status is not AgentStatus.ACTIVE:
            raise AuthenticationError(f"Account is {agent.status.value}")
        agent = await rt.db.update_agent(agent.id, last_login_at=utc_now()) or agent
        return envelope(
            {
                "access_token": issue_access_token(agent.id),
                "token_type": "bearer",
                "agent": agent.to_dict(),
            }
        )

    @router.get("/me")
    async def me(agent: Agent = Depends(current_agent)):
        return envelope(agent.to_dict())

    return router
