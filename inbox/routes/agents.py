from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends

from .. import config
from ..auth import hash_password
from ..errors import AuthorizationError, NotFoundError, ValidationError, envelope
from ..models import Agent, AgentStatus, PermissionSet, new_id, parse_agent_status, parse_role
from ..permissions import can
from ..runtime import InboxRuntime
from .deps import body_str, current_agent, get_runtime, require_permission

log = logging.getLogger(__name__)


def _check_password(password) -> str:
    if not isinstance(password, str) or len(password) < config.MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {config.MIN_PASSWORD_LENGTH} characters")
    return password


def _check_email(email: str) -> str:
    if "@" not in email or email.startswith("@") or email.endswith("@"):
        raise ValidationError("A valid email is required")
    return email.lower()


async def _load(rt: InboxRuntime, agent_id: str) -> Agent:
    agent = await rt.db.get_agent(agent_id)
    if agent is None:
        raise NotFoundError("Agent not found")
    return agent


def _self_or_manager(actor: Agent, agent_id: str) -> None:
    if actor.id != agent_id and not can(actor, "manage_agents"):
        raise AuthorizationError("Permission 'manage_agents' required")


def create_agents_router() -> APIRouter:
    router = APIRouter(tags=["agents"])

    @router.get("/agents")
    async def list_agents(rt: InboxRuntime = Depends(get_runtime), actor: Agent = Depends(current_agent)):
        return envelope([a.to_dict() for a in await rt.db.list_agents()])

    @router.get("/agents/{agent_id}")
    async def get_agent(agent_id: str, rt: InboxRuntime = Depends(get_runtime), actor: Agent = Depends(current_agent)):
        return envelope((await _load(rt, agent_id)).to_dict())

    @router.post("/agents")
    async def create_agent(
        payload: dict = Body(...),
        rt: InboxRuntime = Depends(get_runtime),
        actor: Agent = Depends(require_permission("manage_agents")),
    ):
        email = _check_email(body_str(payload, "email", required=True))
        name = body_str(payload, "name", required=True)
        password = _check_password(payload.get("password"))
        role = parse_role(payload.get("role"))
        permissions = PermissionSet.from_mapping(payload.get("permissions"), base=PermissionSet.for_role(role))
        agent = await rt.db.insert_agent(
            Agent(
                id=new_id(),
                email=email,
                name=name,
                role=role,
                permissions=permissions,
                password_hash=hash_password(password),
            )
        )
        log.info("Agent %s created by %s", agent.id, actor.id)
        return envelope(agent.to_dict())

    @router.put("/agents/{agent_id}")
    async def update_agent(
        agent_id: str,
        payload: dict = Body(...),
        rt: InboxRuntime = Depends(get_runtime),
        actor: Agent = Depends(require_permission("manage_agents")),
    ):
        await _load(rt, agent_id)
        values = {}
        if "name" in payload:
            values["name"] = body_str(payload, "name", required=True)
        if "email" in payload:
            values["email"] = _check_email(body_str(payload, "email", required=True))
        if "role" in payload:
            values["role"] = parse_role(payload.get("role")).value
        if "status" in payload:
            values["status"] = parse_agent_status(payload.get("status")).value
        agent = await rt.db.update_agent(agent_id, **values)
        if agent.status is AgentStatus.ACTIVE:
            rt.broadcaster.refresh_agent(agent)
        else:
            await rt.broadcaster.disconnect_agent(agent_id)
        return envelope(agent.to_dict())

    @router.put("/agents/{agent_id}/permissions")
    async def update_permissions(
        agent_id: str,
        payload: dict = Body(...),
        rt: InboxRuntime = Depends(get_runtime),
        actor: Agent = Depends(require_permission("manage_agents")),
    ):
        agent = await _load(rt, agent_id)
        permissions = PermissionSet.from_mapping(payload.get("permissions", payload), base=agent.permissions)
        agent = await rt.db.update_agent(agent_id, permissions=permissions.to_json())
        # Live sockets pick up the new visibility immediately.
        rt.broadcaster.refresh_agent(agent)
        return envelope(agent.to_dict())

    @router.put("/agents/{agent_id}/password")
    async def change_password(
        agent_id: str,
        payload: dict = Body(...),
        rt: InboxRuntime = Depends(get_runtime),
        actor: Agent = Depends(current_agent),
    ):
        _self_or_manager(actor, agent_id)
        await _load(rt, agent_id)
        password = _check_password(payload.get("password"))
        await rt.db.update_agent(agent_id, password_hash=hash_password(password))
        return envelope({"agent_id": agent_id})

    @router.post("/agents/{agent_id}/status")
    async def presence_ping(
        agent_id: str,
        payload: dict = Body(default={}),
        rt: InboxRuntime = Depends(get_runtime),
        actor: Agent = Depends(current_agent),
    ):
        _self_or_manager(actor, agent_id)
        online = payload.get("is_online", True)
        if not isinstance(online, bool):
            raise ValidationError("is_online must be a boolean")
        if not await rt.presence.set_online(agent_id, online):
            raise NotFoundError("Agent not found")
        return envelope({"agent_id": agent_id, "is_online": online})

    @router.delete("/agents/{agent_id}")
    async def delete_agent(
        agent_id: str,
        rt: InboxRuntime = Depends(get_runtime),
        actor: Agent = Depends(require_permission("manage_agents")),
    ):
        if agent_id == actor.id:
            raise ValidationError("Agents cannot delete themselves")
        await _load(rt, agent_id)
        released = await rt.db.unassign_agent(agent_id)
        await rt.db.delete_agent(agent_id)
        await rt.broadcaster.disconnect_agent(agent_id)
        log.info("Agent %s deleted by %s (%s conversations unassigned)", agent_id, actor.id, released)
        return envelope({"agent_id": agent_id, "unassigned_conversations": released})

    @router.get("/usage")
    async def usage_totals(
        since: Optional[str] = None,
        rt: InboxRuntime = Depends(get_runtime),
        actor: Agent = Depends(require_permission("manage_agents")),
    ):
        return envelope(await rt.ledger.totals(since=since))

    return router
