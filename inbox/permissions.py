"""Authorization gate.

Pure functions over an agent and, where relevant, a conversation. Nothing here
reads the store or presence: the online flag never gates access.
"""
from __future__ import annotations

from typing import Optional

from .errors import AuthorizationError
from .models import Agent, AgentStatus, Conversation

ACTIONS = ("reply", "assign", "bulk_message", "manage_agents", "manage_channels")


def can_view(agent: Agent, conversation: Conversation) -> bool:
    if agent.status is not AgentStatus.ACTIVE:
        return False
    perms = agent.permissions
    if perms.view_all:
        return True
    if perms.view_assigned:
        return conversation.assigned_agent_id is not None and conversation.assigned_agent_id == agent.id
    return False


def can_reply(agent: Agent, conversation: Conversation) -> bool:
    if agent.status is not AgentStatus.ACTIVE or not agent.permissions.reply:
        return False
    return agent.permissions.view_all or conversation.assigned_agent_id == agent.id


def can(agent: Agent, action: str) -> bool:
    if action not in ACTIONS:
        raise ValueError(f"unknown action {action!r}")
    return agent.status is AgentStatus.ACTIVE and bool(getattr(agent.permissions, action))


def require(agent: Agent, action: str, conversation: Optional[Conversation] = None) -> None:
    if action == "reply" and conversation is not None:
        allowed = can_reply(agent, conversation)
    else:
        allowed = can(agent, action)
    if not allowed:
        raise AuthorizationError(f"Permission '{action}' required")


def require_view(agent: Agent, conversation: Conversation) -> None:
    if not can_view(agent, conversation):
        raise AuthorizationError("Not allowed to view this conversation")


def visible_scope(agent: Agent) -> Optional[str]:
    """Return the storage filter implied by the agent's view permissions.

    ``"all"`` for unrestricted, ``"assigned"`` for own conversations only,
    ``None`` when the agent sees nothing.
    """
    if agent.status is not AgentStatus.ACTIVE:
        return None
    if agent.permissions.view_all:
        return "all"
    if agent.permissions.view_assigned:
        return "assigned"
    return None
