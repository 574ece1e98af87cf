"""Typed records for channels, conversations, messages and agents.

Rows coming out of the store are converted here, once. JSON text columns
(permissions, credentials) are parsed and validated in ``from_row`` so the rest
of the code never touches raw blobs.
"""
from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .errors import ValidationError

PREVIEW_LENGTH = 100


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


class Platform(str, Enum):
    WHATSAPP = "whatsapp"
    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"

    @classmethod
    def parse(cls, value: Any) -> "Platform":
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            raise ValidationError(f"Unsupported platform: {value!r}") from None


class ChannelStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class SessionState(str, Enum):
    PENDING = "pending"
    AWAITING_PAIRING = "awaiting_pairing"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    REMOVED = "removed"

    def durable_status(self) -> ChannelStatus:
        if self is SessionState.AWAITING_PAIRING:
            return ChannelStatus.PENDING
        return ChannelStatus(self.value)


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    RESOLVED = "resolved"
    ARCHIVED = "archived"


class Direction(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


# Status may only move up this ladder; failed is terminal.
STATUS_RANK = {
    MessageStatus.PENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
    MessageStatus.FAILED: 99,
}


class ContentType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    LOCATION = "location"
    CONTACT = "contact"


class AgentRole(str, Enum):
    ADMIN = "admin"
    SUPERVISOR = "supervisor"
    AGENT = "agent"


class AgentStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


def _parse_enum(enum_cls, value: Any, what: str):
    try:
        return enum_cls(str(value or "").strip().lower())
    except ValueError:
        raise ValidationError(f"Invalid {what}: {value!r}") from None


def _load_json(raw: Any, default):
    if raw is None or raw == "":
        return default
    if isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


# ── permissions ─────────────────────────────────────────────────

_WIRE_NAMES = {
    "view_all": "viewAll",
    "view_assigned": "viewAssigned",
    "reply": "reply",
    "assign": "assign",
    "bulk_message": "bulkMessage",
    "manage_agents": "manageAgents",
    "manage_channels": "manageChannels",
}
_FROM_WIRE = {v: k for k, v in _WIRE_NAMES.items()}


@dataclass(frozen=True)
class PermissionSet:
    view_all: bool = False
    view_assigned: bool = True
    reply: bool = True
    assign: bool = False
    bulk_message: bool = False
    manage_agents: bool = False
    manage_channels: bool = False

    @classmethod
    def full(cls) -> "PermissionSet":
        return cls(**{f.name: True for f in fields(cls)})

    @classmethod
    def for_role(cls, role: AgentRole) -> "PermissionSet":
        return cls.full() if role is AgentRole.ADMIN else cls()

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]], base: Optional["PermissionSet"] = None) -> "PermissionSet":
        """Merge ``raw`` (camelCase or snake_case keys) over ``base``.

        Unknown keys and non-boolean values are rejected.
        """
        current = base or cls()
        if not raw:
            return current
        if not isinstance(raw, Mapping):
            raise ValidationError("permissions must be an object")
        updates: Dict[str, bool] = {}
        for key, value in raw.items():
            name = _FROM_WIRE.get(key, key)
            if name not in _WIRE_NAMES:
                raise ValidationError(f"Unknown permission: {key}")
            if not isinstance(value, bool):
                raise ValidationError(f"Permission {key} must be a boolean")
            updates[name] = value
        return replace(current, **updates)

    @classmethod
    def from_json(cls, raw: Any) -> "PermissionSet":
        data = _load_json(raw, {})
        if not isinstance(data, dict):
            return cls()
        # Stored rows are trusted but may predate a key; ignore anything unknown.
        known = {k: v for k, v in data.items() if _FROM_WIRE.get(k, k) in _WIRE_NAMES and isinstance(v, bool)}
        return cls.from_mapping(known)

    def to_dict(self) -> Dict[str, bool]:
        return {_WIRE_NAMES[f.name]: getattr(self, f.name) for f in fields(self)}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


# ── records ─────────────────────────────────────────────────────

@dataclass
class Channel:
    id: str
    platform: Platform
    name: str
    identifier: str
    status: ChannelStatus = ChannelStatus.PENDING
    phone_number: Optional[str] = None
    credentials: Dict[str, Any] = field(default_factory=dict)
    status_reason: Optional[str] = None
    last_active_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @staticmethod
    def placeholder_identifier() -> str:
        return f"pending-{int(time.time() * 1000)}"

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Channel":
        creds = _load_json(row["credentials"], {})
        return cls(
            id=row["id"],
            platform=Platform(row["platform"]),
            name=row["name"],
            identifier=row["identifier"],
            status=ChannelStatus(row["status"]),
            phone_number=row["phone_number"],
            credentials=creds if isinstance(creds, dict) else {},
            status_reason=row["status_reason"],
            last_active_at=row["last_active_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "platform": self.platform.value,
            "name": self.name,
            "identifier": self.identifier,
            "status": self.status.value,
            "status_reason": self.status_reason,
            "phone_number": self.phone_number,
            "has_credentials": bool(self.credentials),
            "last_active_at": self.last_active_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class Conversation:
    id: str
    channel_id: str
    contact_id: str
    contact_name: Optional[str] = None
    contact_avatar: Optional[str] = None
    last_message: Optional[str] = None
    last_message_at: Optional[str] = None
    unread_count: int = 0
    assigned_agent_id: Optional[str] = None
    status: ConversationStatus = ConversationStatus.ACTIVE
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    # Joined from channels on read paths only.
    platform: Optional[str] = None
    channel_name: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Conversation":
        keys = row.keys()
        return cls(
            id=row["id"],
            channel_id=row["channel_id"],
            contact_id=row["contact_id"],
            contact_name=row["contact_name"],
            contact_avatar=row["contact_avatar"],
            last_message=row["last_message"],
            last_message_at=row["last_message_at"],
            unread_count=int(row["unread_count"] or 0),
            assigned_agent_id=row["assigned_agent_id"],
            status=ConversationStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            platform=row["platform"] if "platform" in keys else None,
            channel_name=row["channel_name"] if "channel_name" in keys else None,
        )

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "channel_id": self.channel_id,
            "contact_id": self.contact_id,
            "contact_name": self.contact_name,
            "contact_avatar": self.contact_avatar,
            "last_message": self.last_message,
            "last_message_at": self.last_message_at,
            "unread_count": self.unread_count,
            "assigned_agent_id": self.assigned_agent_id,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.platform is not None:
            data["platform"] = self.platform
            data["channel_name"] = self.channel_name
        return data


@dataclass(frozen=True)
class MediaRef:
    url: str
    type: ContentType

    @classmethod
    def parse(cls, raw: Any, content_type: ContentType) -> Optional["MediaRef"]:
        if raw is None or raw == "":
            return None
        if isinstance(raw, str):
            return cls(url=raw, type=content_type)
        if isinstance(raw, Mapping) and raw.get("url"):
            return cls(url=str(raw["url"]), type=_parse_enum(ContentType, raw.get("type") or content_type.value, "media type"))
        raise ValidationError("media must be a URL or {url, type}")

    def to_dict(self) -> dict:
        return {"url": self.url, "type": self.type.value}


@dataclass
class Message:
    id: str
    conversation_id: str
    direction: Direction
    content: str
    content_type: ContentType = ContentType.TEXT
    media: Optional[MediaRef] = None
    status: MessageStatus = MessageStatus.PENDING
    error: Optional[str] = None
    agent_id: Optional[str] = None
    external_id: Optional[str] = None
    created_at: Optional[str] = None
    seq: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Message":
        content_type = ContentType(row["content_type"] or "text")
        media = MediaRef(url=row["media_url"], type=content_type) if row["media_url"] else None
        return cls(
            id=row["id"],
            seq=int(row["seq"]) if row["seq"] is not None else None,
            conversation_id=row["conversation_id"],
            direction=Direction(row["direction"]),
            content=row["content"] or "",
            content_type=content_type,
            media=media,
            status=MessageStatus(row["status"]),
            error=row["error"],
            agent_id=row["agent_id"],
            external_id=row["external_id"],
            created_at=row["created_at"],
        )

    @property
    def preview(self) -> str:
        text = (self.content or "").strip()
        if not text and self.media is not None:
            text = f"[{self.content_type.value}]"
        return text[:PREVIEW_LENGTH]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "seq": self.seq,
            "conversation_id": self.conversation_id,
            "direction": self.direction.value,
            "content": self.content,
            "content_type": self.content_type.value,
            "media": self.media.to_dict() if self.media else None,
            "status": self.status.value,
            "error": self.error,
            "agent_id": self.agent_id,
            "external_id": self.external_id,
            "created_at": self.created_at,
        }


@dataclass
class Agent:
    id: str
    email: str
    name: str
    role: AgentRole = AgentRole.AGENT
    permissions: PermissionSet = field(default_factory=PermissionSet)
    status: AgentStatus = AgentStatus.ACTIVE
    is_online: bool = False
    password_hash: str = field(default="", repr=False)
    last_login_at: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Agent":
        return cls(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            role=AgentRole(row["role"]),
            permissions=PermissionSet.from_json(row["permissions"]),
            status=AgentStatus(row["status"]),
            is_online=bool(row["is_online"]),
            password_hash=row["password_hash"] or "",
            last_login_at=row["last_login_at"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role.value,
            "permissions": self.permissions.to_dict(),
            "status": self.status.value,
            "is_online": self.is_online,
            "last_login_at": self.last_login_at,
            "created_at": self.created_at,
        }


# ── inbound / outbound payloads ─────────────────────────────────

@dataclass(frozen=True)
class ContactRef:
    id: str
    name: Optional[str] = None
    avatar: Optional[str] = None


@dataclass(frozen=True)
class MessageInput:
    """Message content crossing into the registry, from an adapter or an agent."""

    content: str = ""
    content_type: ContentType = ContentType.TEXT
    media: Optional[MediaRef] = None
    external_id: Optional[str] = None

    @classmethod
    def parse(cls, raw: Mapping[str, Any]) -> "MessageInput":
        if not isinstance(raw, Mapping):
            raise ValidationError("message must be an object")
        content_type = _parse_enum(ContentType, raw.get("content_type") or "text", "content_type")
        media = MediaRef.parse(raw.get("media") or raw.get("media_url"), content_type)
        content = raw.get("content")
        if content is not None and not isinstance(content, str):
            raise ValidationError("content must be a string")
        msg = cls(content=(content or ""), content_type=content_type, media=media)
        msg.validate()
        return msg

    def validate(self) -> None:
        if not self.content.strip() and self.media is None:
            raise ValidationError("Message content is required")
        if self.content_type is not ContentType.TEXT and self.media is None and self.content_type not in (
            ContentType.LOCATION,
            ContentType.CONTACT,
        ):
            raise ValidationError(f"{self.content_type.value} messages require media")


def parse_conversation_status(value: Any) -> ConversationStatus:
    return _parse_enum(ConversationStatus, value, "conversation status")


def parse_role(value: Any) -> AgentRole:
    return _parse_enum(AgentRole, value or "agent", "role")


def parse_agent_status(value: Any) -> AgentStatus:
    return _parse_enum(AgentStatus, value, "agent status")


def parse_message_status(value: Any) -> MessageStatus:
    return _parse_enum(MessageStatus, value, "message status")
