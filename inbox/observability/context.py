"""Per-task logging context.

The HTTP middleware binds the request id, authentication binds the agent and
channel workers bind the channel whose events they apply. asyncio copies the
context into each task, so values never leak between requests or channels.
"""
from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Dict, Iterator, Optional

FIELDS = ("request_id", "agent_id", "channel_id")

_VARS: Dict[str, ContextVar[Optional[str]]] = {name: ContextVar(name, default=None) for name in FIELDS}


def get(name: str) -> Optional[str]:
    return _VARS[name].get()


def snapshot() -> Dict[str, Optional[str]]:
    return {name: var.get() for name, var in _VARS.items()}


def new_request_id(incoming: Optional[str] = None) -> str:
    return (incoming or "").strip() or uuid.uuid4().hex


def set_agent_id(agent_id: Optional[str]) -> Token:
    return _VARS["agent_id"].set(agent_id or None)


@contextmanager
def bound(**values: Optional[str]) -> Iterator[None]:
    tokens = [(_VARS[name], _VARS[name].set(value or None)) for name, value in values.items()]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
