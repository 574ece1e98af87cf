from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Request
from jose import JWTError, jwt
from passlib.context import CryptContext

from . import config
from .errors import AuthenticationError
from .models import Agent, AgentStatus

log = logging.getLogger(__name__)

pwd_context = CryptContext(
    schemes=["argon2", "bcrypt"],
    default="argon2",
    deprecated="auto",
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, stored: str) -> bool:
    if not stored:
        return False
    try:
        return pwd_context.verify(password, stored)
    except ValueError:
        return False


def _jwt_secret() -> str:
    if not config.AGENT_AUTH_SECRET:
        if config.IS_PRODUCTION:
            raise RuntimeError("AGENT_AUTH_SECRET must be set in production")
        log.warning("AGENT_AUTH_SECRET is empty; set it for secure authentication.")
    return config.AGENT_AUTH_SECRET or "dev-unsafe-secret"


def issue_access_token(agent_id: str, ttl_seconds: Optional[int] = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": agent_id,
        "iss": config.JWT_ISSUER,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds or config.ACCESS_TOKEN_TTL_SECONDS)).timestamp()),
    }
    return jwt.encode(payload, _jwt_secret(), algorithm="HS256")


def parse_access_token(token: str) -> Optional[str]:
    """Return the agent id carried by a valid token, else None."""
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            _jwt_secret(),
            algorithms=["HS256"],
            options={"require_sub": True, "require_exp": True},
            issuer=config.JWT_ISSUER,
        )
    except JWTError:
        return None
    agent_id = str(payload.get("sub") or "").strip()
    return agent_id or None


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization") or ""
    parts = header.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


async def authenticate_token(db, token: Optional[str]) -> Agent:
    """Resolve a bearer token to an active agent, reading permissions fresh from the store."""
    agent_id = parse_access_token(token or "")
    if not agent_id:
        raise AuthenticationError("Unauthorized")
    agent = await db.get_agent(agent_id)
    if agent is None or agent.status is not AgentStatus.ACTIVE:
        raise AuthenticationError("Unauthorized")
    return agent
