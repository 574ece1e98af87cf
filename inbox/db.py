from __future__ import annotations

import asyncio
import json
import logging
import re
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

import aiosqlite
import asyncpg

from . import config
from .errors import ConflictError
from .models import (
    Agent,
    Channel,
    ChannelStatus,
    Conversation,
    ConversationStatus,
    ContactRef,
    Message,
    MessageStatus,
    STATUS_RANK,
    utc_now,
)

log = logging.getLogger(__name__)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS channels (
        id             TEXT PRIMARY KEY,
        platform       TEXT NOT NULL,            -- whatsapp | facebook | instagram
        name           TEXT NOT NULL,
        identifier     TEXT NOT NULL,            -- phone / page id / IG account id
        phone_number   TEXT,
        credentials    TEXT,                     -- JSON blob, never sent to clients
        status         TEXT NOT NULL DEFAULT 'pending',
        status_reason  TEXT,
        last_active_at TEXT,
        created_at     TEXT NOT NULL,
        updated_at     TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_channels_platform_identifier
        ON channels (platform, identifier);

    CREATE TABLE IF NOT EXISTS conversations (
        id                TEXT PRIMARY KEY,
        channel_id        TEXT NOT NULL,
        contact_id        TEXT NOT NULL,
        contact_name      TEXT,
        contact_avatar    TEXT,
        last_message      TEXT,
        last_message_at   TEXT,
        unread_count      INTEGER NOT NULL DEFAULT 0,
        assigned_agent_id TEXT,
        status            TEXT NOT NULL DEFAULT 'active',
        created_at        TEXT NOT NULL,
        updated_at        TEXT NOT NULL
    );
    -- one conversation per (channel, contact); ingest relies on this for atomic upserts
    CREATE UNIQUE INDEX IF NOT EXISTS uniq_conversations_channel_contact
        ON conversations (channel_id, contact_id);
    CREATE INDEX IF NOT EXISTS idx_conversations_last_message_at
        ON conversations (last_message_at);
    CREATE INDEX IF NOT EXISTS idx_conversations_assigned
        ON conversations (assigned_agent_id);

    CREATE TABLE IF NOT EXISTS messages (
        seq             INTEGER PRIMARY KEY AUTOINCREMENT,
        id              TEXT NOT NULL UNIQUE,
        conversation_id TEXT NOT NULL,
        direction       TEXT NOT NULL,           -- incoming | outgoing
        content         TEXT,
        content_type    TEXT NOT NULL DEFAULT 'text',
        media_url       TEXT,
        status          TEXT NOT NULL DEFAULT 'pending',
        error           TEXT,
        agent_id        TEXT,
        external_id     TEXT,
        created_at      TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_messages_conversation_seq
        ON messages (conversation_id, seq);
    -- webhook redelivery of the same platform message is a no-op
    CREATE UNIQUE INDEX IF NOT EXISTS uniq_messages_conversation_external
        ON messages (conversation_id, external_id);
    CREATE INDEX IF NOT EXISTS idx_messages_external
        ON messages (external_id);

    CREATE TABLE IF NOT EXISTS agents (
        id            TEXT PRIMARY KEY,
        email         TEXT NOT NULL UNIQUE,
        name          TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        role          TEXT NOT NULL DEFAULT 'agent',
        permissions   TEXT NOT NULL,             -- JSON PermissionSet
        status        TEXT NOT NULL DEFAULT 'active',
        is_online     INTEGER NOT NULL DEFAULT 0,
        last_login_at TEXT,
        created_at    TEXT NOT NULL,
        updated_at    TEXT NOT NULL
    );

    -- append-only ledger of generative provider usage
    CREATE TABLE IF NOT EXISTS api_usage (
        id               INTEGER PRIMARY KEY AUTOINCREMENT,
        agent_id         TEXT,
        service          TEXT NOT NULL,
        operation        TEXT NOT NULL,
        model            TEXT,
        input_tokens     INTEGER NOT NULL DEFAULT 0,
        output_tokens    INTEGER NOT NULL DEFAULT 0,
        images_generated INTEGER NOT NULL DEFAULT 0,
        created_at       TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_api_usage_service_time
        ON api_usage (service, created_at)
"""

_STATUS_RANK_SQL = (
    "(CASE status WHEN 'pending' THEN 0 WHEN 'sent' THEN 1 "
    "WHEN 'delivered' THEN 2 WHEN 'read' THEN 3 ELSE 99 END)"
)

_AGENT_COLUMNS = {"name", "email", "password_hash", "role", "permissions", "status", "last_login_at"}


def _strip_dash_comments(sql: str) -> str:
    out_lines: List[str] = []
    for line in (sql or "").splitlines():
        if "--" in line:
            line = line.split("--", 1)[0]
        if line.strip():
            out_lines.append(line)
    return "\n".join(out_lines).strip()


def _normalize_db_url(db_url: Optional[str]) -> Optional[str]:
    # asyncpg does not accept SQLAlchemy-style driver suffixes.
    raw_url = (db_url or "").strip() or None
    if not raw_url:
        return None
    for prefix in ("postgresql+asyncpg://", "postgres+asyncpg://", "postgresql+psycopg://", "postgresql+psycopg2://"):
        if raw_url.startswith(prefix):
            raw_url = raw_url.replace(prefix, "postgresql://", 1)
    if (urlparse(raw_url).scheme or "").lower() not in ("postgresql", "postgres"):
        return None
    return raw_url


def _is_unique_violation(exc: BaseException) -> bool:
    return isinstance(exc, (sqlite3.IntegrityError, asyncpg.exceptions.UniqueViolationError))


class DatabaseManager:
    """Session store on SQLite (aiosqlite) or PostgreSQL (asyncpg).

    Every mutation that must be atomic is a single statement; there is no
    read-then-write anywhere in this class.
    """

    def __init__(self, db_path: str | None = None, db_url: str | None = None):
        self.db_url = _normalize_db_url(db_url if db_url is not None else config.DATABASE_URL)
        self.db_path = db_path or config.DB_PATH
        self.use_postgres = bool(self.db_url)
        if not self.use_postgres:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._pool: Optional[asyncpg.pool.Pool] = None
        self._pool_lock = asyncio.Lock()

    async def _get_pool(self):
        if self._pool:
            return self._pool
        async with self._pool_lock:
            if self._pool:
                return self._pool
            self._pool = await asyncpg.create_pool(
                self.db_url,
                min_size=config.PG_POOL_MIN,
                max_size=config.PG_POOL_MAX,
                timeout=config.PG_CONNECT_TIMEOUT_SECONDS,
                # PgBouncer in transaction mode does not mix with prepared statements
                statement_cache_size=0,
            )
        return self._pool

    def _convert(self, query: str) -> str:
        """Convert SQLite style placeholders to asyncpg numbered ones."""
        if not self.use_postgres:
            return query

        idx = 1

        def repl(match):
            nonlocal idx
            rep = f"${idx}"
            idx += 1
            return rep

        return re.sub(r"\?", repl, query)

    # ── basic connection helpers ──
    @asynccontextmanager
    async def _conn(self):
        if self.use_postgres:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                yield conn
            return
        timeout_s = max(0.1, float(config.SQLITE_BUSY_TIMEOUT_MS) / 1000.0)
        async with aiosqlite.connect(self.db_path, timeout=timeout_s) as db:
            db.row_factory = aiosqlite.Row
            await db.execute(f"PRAGMA busy_timeout = {int(config.SQLITE_BUSY_TIMEOUT_MS)}")
            yield db

    async def _fetchall(self, query: str, params: Sequence[Any] = (), *, write: bool = False) -> list:
        async with self._conn() as db:
            if self.use_postgres:
                return list(await db.fetch(self._convert(query), *params))
            cur = await db.execute(query, tuple(params))
            rows = await cur.fetchall()
            if write:
                await db.commit()
            return list(rows)

    async def _fetchone(self, query: str, params: Sequence[Any] = (), *, write: bool = False):
        rows = await self._fetchall(query, params, write=write)
        return rows[0] if rows else None

    async def _execute(self, query: str, params: Sequence[Any] = ()) -> int:
        """Run a write statement and return the affected row count."""
        async with self._conn() as db:
            if self.use_postgres:
                status = await db.execute(self._convert(query), *params)
                try:
                    return int(str(status).rsplit(" ", 1)[-1])
                except ValueError:
                    return 0
            cur = await db.execute(query, tuple(params))
            await db.commit()
            return cur.rowcount

    async def ping(self) -> bool:
        """Lightweight connectivity check (used by /health)."""
        try:
            row = await self._fetchone("SELECT 1 AS ok")
            return bool(row and row[0])
        except Exception:
            log.warning("Database ping failed", exc_info=True)
            return False

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # ── schema ──
    async def init_db(self):
        async with self._conn() as db:
            if self.use_postgres:
                script = SCHEMA.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "SERIAL PRIMARY KEY")
                statements = [s.strip() for s in _strip_dash_comments(script).split(";") if s.strip()]
                for stmt in statements:
                    await db.execute(stmt)
            else:
                await db.executescript(SCHEMA)
                await db.commit()

    # ── channels ──
    async def insert_channel(self, channel: Channel) -> Channel:
        now = utc_now()
        row = await self._fetchone(
            """
            INSERT INTO channels (id, platform, name, identifier, phone_number, credentials,
                                  status, status_reason, last_active_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING *
            """,
            (
                channel.id,
                channel.platform.value,
                channel.name,
                channel.identifier,
                channel.phone_number,
                _dump_json(channel.credentials),
                channel.status.value,
                channel.status_reason,
                channel.last_active_at,
                now,
                now,
            ),
            write=True,
        )
        return Channel.from_row(row)

    async def get_channel(self, channel_id: str) -> Optional[Channel]:
        row = await self._fetchone("SELECT * FROM channels WHERE id = ?", (channel_id,))
        return Channel.from_row(row) if row else None

    async def find_channel(self, platform: str, identifier: str) -> Optional[Channel]:
        row = await self._fetchone(
            "SELECT * FROM channels WHERE platform = ? AND identifier = ? ORDER BY created_at DESC LIMIT 1",
            (platform, identifier),
        )
        return Channel.from_row(row) if row else None

    async def list_channels(self, platform: Optional[str] = None) -> List[Channel]:
        if platform:
            rows = await self._fetchall(
                "SELECT * FROM channels WHERE platform = ? ORDER BY created_at", (platform,)
            )
        else:
            rows = await self._fetchall("SELECT * FROM channels ORDER BY created_at")
        return [Channel.from_row(r) for r in rows]

    async def update_channel_status(
        self,
        channel_id: str,
        status: ChannelStatus,
        *,
        reason: Optional[str] = None,
        identifier: Optional[str] = None,
        phone_number: Optional[str] = None,
        touch_active: bool = False,
    ) -> Optional[Channel]:
        now = utc_now()
        row = await self._fetchone(
            """
            UPDATE channels
               SET status = ?,
                   status_reason = ?,
                   identifier = COALESCE(?, identifier),
                   phone_number = COALESCE(?, phone_number),
                   last_active_at = CASE WHEN ? = 1 THEN ? ELSE last_active_at END,
                   updated_at = ?
             WHERE id = ?
            RETURNING *
            """,
            (status.value, reason, identifier, phone_number, 1 if touch_active else 0, now, now, channel_id),
            write=True,
        )
        return Channel.from_row(row) if row else None

    async def delete_channel(self, channel_id: str) -> bool:
        """Delete a channel row and archive its conversations."""
        now = utc_now()
        await self._execute(
            "UPDATE conversations SET status = ?, updated_at = ? WHERE channel_id = ?",
            (ConversationStatus.ARCHIVED.value, now, channel_id),
        )
        return await self._execute("DELETE FROM channels WHERE id = ?", (channel_id,)) > 0

    async def channel_counts(self) -> Dict[str, int]:
        rows = await self._fetchall("SELECT status, COUNT(*) AS n FROM channels GROUP BY status")
        return {r["status"]: int(r["n"]) for r in rows}

    # ── conversations ──
    async def upsert_conversation(self, conversation_id: str, channel_id: str, contact: ContactRef) -> Tuple[Conversation, bool]:
        """Create or fetch the conversation for (channel, contact) in one statement.

        Returns ``(conversation, created)``. Contact name/avatar are refreshed
        when provided and kept otherwise.
        """
        now = utc_now()
        row = await self._fetchone(
            """
            INSERT INTO conversations (id, channel_id, contact_id, contact_name, contact_avatar,
                                       unread_count, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 0, 'active', ?, ?)
            ON CONFLICT (channel_id, contact_id) DO UPDATE SET
                contact_name = COALESCE(excluded.contact_name, conversations.contact_name),
                contact_avatar = COALESCE(excluded.contact_avatar, conversations.contact_avatar)
            RETURNING *
            """,
            (conversation_id, channel_id, contact.id, contact.name, contact.avatar, now, now),
            write=True,
        )
        conv = Conversation.from_row(row)
        return conv, conv.id == conversation_id

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        row = await self._fetchone(
            """
            SELECT c.*, ch.platform AS platform, ch.name AS channel_name
              FROM conversations c LEFT JOIN channels ch ON ch.id = c.channel_id
             WHERE c.id = ?
            """,
            (conversation_id,),
        )
        return Conversation.from_row(row) if row else None

    async def record_conversation_activity(
        self, conversation_id: str, preview: str, at: str, *, incoming: bool
    ) -> Optional[Conversation]:
        """Set preview/timestamp and, for incoming messages, bump unread, atomically."""
        row = await self._fetchone(
            """
            UPDATE conversations
               SET unread_count = unread_count + ?,
                   last_message = ?,
                   last_message_at = ?,
                   status = CASE WHEN status IN ('resolved', 'archived') AND ? = 1 THEN 'active' ELSE status END,
                   updated_at = ?
             WHERE id = ?
            RETURNING *
            """,
            (1 if incoming else 0, preview, at, 1 if incoming else 0, at, conversation_id),
            write=True,
        )
        return Conversation.from_row(row) if row else None

    async def list_conversations(
        self,
        *,
        assigned_to: Optional[str] = None,
        status: Optional[str] = None,
        platform: Optional[str] = None,
        channel_id: Optional[str] = None,
        unread_only: bool = False,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Conversation], int]:
        where: List[str] = []
        params: List[Any] = []
        if assigned_to is not None:
            where.append("c.assigned_agent_id = ?")
            params.append(assigned_to)
        if status:
            where.append("c.status = ?")
            params.append(status)
        if platform:
            where.append("ch.platform = ?")
            params.append(platform)
        if channel_id:
            where.append("c.channel_id = ?")
            params.append(channel_id)
        if unread_only:
            where.append("c.unread_count > 0")
        if search:
            like = f"%{search.lower()}%"
            where.append(
                "(LOWER(COALESCE(c.contact_name, '')) LIKE ? OR LOWER(c.contact_id) LIKE ? "
                "OR LOWER(COALESCE(c.last_message, '')) LIKE ?)"
            )
            params.extend([like, like, like])
        clause = ("WHERE " + " AND ".join(where)) if where else ""
        base = f"FROM conversations c LEFT JOIN channels ch ON ch.id = c.channel_id {clause}"
        total_row = await self._fetchone(f"SELECT COUNT(*) AS n {base}", params)
        rows = await self._fetchall(
            f"""
            SELECT c.*, ch.platform AS platform, ch.name AS channel_name {base}
             ORDER BY COALESCE(c.last_message_at, c.created_at) DESC, c.id
             LIMIT ? OFFSET ?
            """,
            [*params, int(limit), int(offset)],
        )
        return [Conversation.from_row(r) for r in rows], int(total_row["n"] if total_row else 0)

    async def set_assignment(self, conversation_id: str, agent_id: Optional[str]) -> Optional[Conversation]:
        row = await self._fetchone(
            "UPDATE conversations SET assigned_agent_id = ?, updated_at = ? WHERE id = ? RETURNING *",
            (agent_id, utc_now(), conversation_id),
            write=True,
        )
        return Conversation.from_row(row) if row else None

    async def reset_unread(self, conversation_id: str) -> Optional[Conversation]:
        row = await self._fetchone(
            "UPDATE conversations SET unread_count = 0, updated_at = ? WHERE id = ? RETURNING *",
            (utc_now(), conversation_id),
            write=True,
        )
        return Conversation.from_row(row) if row else None

    async def set_conversation_status(self, conversation_id: str, status: ConversationStatus) -> Optional[Conversation]:
        row = await self._fetchone(
            "UPDATE conversations SET status = ?, updated_at = ? WHERE id = ? RETURNING *",
            (status.value, utc_now(), conversation_id),
            write=True,
        )
        return Conversation.from_row(row) if row else None

    async def unassign_agent(self, agent_id: str) -> int:
        return await self._execute(
            "UPDATE conversations SET assigned_agent_id = NULL, updated_at = ? WHERE assigned_agent_id = ?",
            (utc_now(), agent_id),
        )

    async def conversation_stats(self, *, assigned_to: Optional[str] = None) -> dict:
        clause, params = ("WHERE assigned_agent_id = ?", [assigned_to]) if assigned_to is not None else ("", [])
        row = await self._fetchone(
            f"""
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN unread_count > 0 THEN 1 ELSE 0 END), 0) AS unread_conversations,
                   COALESCE(SUM(unread_count), 0) AS unread_messages,
                   COALESCE(SUM(CASE WHEN status = 'active' THEN 1 ELSE 0 END), 0) AS active,
                   COALESCE(SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END), 0) AS pending,
                   COALESCE(SUM(CASE WHEN status = 'resolved' THEN 1 ELSE 0 END), 0) AS resolved
              FROM conversations {clause}
            """,
            params,
        )
        return {k: int(row[k] or 0) for k in row.keys()} if row else {}

    # ── messages ──
    async def insert_message(self, message: Message) -> Tuple[Message, bool]:
        """Append a message; a repeated (conversation, external_id) returns the stored one."""
        row = await self._fetchone(
            """
            INSERT INTO messages (id, conversation_id, direction, content, content_type, media_url,
                                  status, error, agent_id, external_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (conversation_id, external_id) DO NOTHING
            RETURNING *
            """,
            (
                message.id,
                message.conversation_id,
                message.direction.value,
                message.content,
                message.content_type.value,
                message.media.url if message.media else None,
                message.status.value,
                message.error,
                message.agent_id,
                message.external_id,
                message.created_at or utc_now(),
            ),
            write=True,
        )
        if row is not None:
            return Message.from_row(row), True
        existing = await self._fetchone(
            "SELECT * FROM messages WHERE conversation_id = ? AND external_id = ?",
            (message.conversation_id, message.external_id),
        )
        return Message.from_row(existing), False

    async def get_messages(self, conversation_id: str, *, limit: int = 50, offset: int = 0) -> List[Message]:
        """Return the newest page of messages, oldest first."""
        rows = await self._fetchall(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY seq DESC LIMIT ? OFFSET ?",
            (conversation_id, int(limit), int(offset)),
        )
        return [Message.from_row(r) for r in reversed(rows)]

    async def count_messages(self, conversation_id: str) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) AS n FROM messages WHERE conversation_id = ?", (conversation_id,)
        )
        return int(row["n"]) if row else 0

    async def find_message_by_external_id(self, channel_id: str, external_id: str) -> Optional[Message]:
        row = await self._fetchone(
            """
            SELECT m.* FROM messages m JOIN conversations c ON c.id = m.conversation_id
             WHERE c.channel_id = ? AND m.external_id = ?
             ORDER BY m.seq DESC LIMIT 1
            """,
            (channel_id, external_id),
        )
        return Message.from_row(row) if row else None

    async def upgrade_message_status(
        self, message_id: str, status: MessageStatus, error: Optional[str] = None
    ) -> Optional[Message]:
        """Move a message's status forward; returns None when it would be a downgrade."""
        row = await self._fetchone(
            f"""
            UPDATE messages SET status = ?, error = COALESCE(?, error)
             WHERE id = ? AND {_STATUS_RANK_SQL} < ?
            RETURNING *
            """,
            (status.value, error, message_id, STATUS_RANK[status]),
            write=True,
        )
        return Message.from_row(row) if row else None

    # ── agents ──
    async def insert_agent(self, agent: Agent) -> Agent:
        now = utc_now()
        try:
            row = await self._fetchone(
                """
                INSERT INTO agents (id, email, name, password_hash, role, permissions, status,
                                    is_online, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                RETURNING *
                """,
                (
                    agent.id,
                    agent.email,
                    agent.name,
                    agent.password_hash,
                    agent.role.value,
                    agent.permissions.to_json(),
                    agent.status.value,
                    now,
                    now,
                ),
                write=True,
            )
        except Exception as exc:
            if _is_unique_violation(exc):
                raise ConflictError("An agent with this email already exists") from exc
            raise
        return Agent.from_row(row)

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        row = await self._fetchone("SELECT * FROM agents WHERE id = ?", (agent_id,))
        return Agent.from_row(row) if row else None

    async def get_agent_by_email(self, email: str) -> Optional[Agent]:
        row = await self._fetchone("SELECT * FROM agents WHERE email = ?", ((email or "").strip().lower(),))
        return Agent.from_row(row) if row else None

    async def list_agents(self) -> List[Agent]:
        rows = await self._fetchall("SELECT * FROM agents ORDER BY created_at")
        return [Agent.from_row(r) for r in rows]

    async def count_agents(self) -> int:
        row = await self._fetchone("SELECT COUNT(*) AS n FROM agents")
        return int(row["n"]) if row else 0

    async def update_agent(self, agent_id: str, **values: Any) -> Optional[Agent]:
        cols = {k: v for k, v in values.items() if k in _AGENT_COLUMNS}
        if not cols:
            return await self.get_agent(agent_id)
        assignments = ", ".join(f"{k} = ?" for k in cols)
        try:
            row = await self._fetchone(
                f"UPDATE agents SET {assignments}, updated_at = ? WHERE id = ? RETURNING *",
                [*cols.values(), utc_now(), agent_id],
                write=True,
            )
        except Exception as exc:
            if _is_unique_violation(exc):
                raise ConflictError("An agent with this email already exists") from exc
            raise
        return Agent.from_row(row) if row else None

    async def set_agent_online(self, agent_id: str, online: bool) -> bool:
        return await self._execute(
            "UPDATE agents SET is_online = ?, updated_at = ? WHERE id = ?",
            (1 if online else 0, utc_now(), agent_id),
        ) > 0

    async def delete_agent(self, agent_id: str) -> bool:
        return await self._execute("DELETE FROM agents WHERE id = ?", (agent_id,)) > 0

    # ── usage ledger ──
    async def insert_usage(
        self,
        *,
        service: str,
        operation: str,
        model: Optional[str],
        input_tokens: int,
        output_tokens: int,
        images_generated: int,
        agent_id: Optional[str] = None,
    ) -> None:
        await self._execute(
            """
            INSERT INTO api_usage (agent_id, service, operation, model, input_tokens,
                                   output_tokens, images_generated, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (agent_id, service, operation, model, int(input_tokens), int(output_tokens), int(images_generated), utc_now()),
        )

    async def usage_totals(self, *, since: Optional[str] = None) -> List[dict]:
        clause, params = ("WHERE created_at >= ?", [since]) if since else ("", [])
        rows = await self._fetchall(
            f"""
            SELECT service, operation, COUNT(*) AS calls,
                   SUM(input_tokens) AS input_tokens,
                   SUM(output_tokens) AS output_tokens,
                   SUM(images_generated) AS images_generated
              FROM api_usage {clause}
             GROUP BY service, operation
             ORDER BY service, operation
            """,
            params,
        )
        return [
            {
                "service": r["service"],
                "operation": r["operation"],
                "calls": int(r["calls"] or 0),
                "input_tokens": int(r["input_tokens"] or 0),
                "output_tokens": int(r["output_tokens"] or 0),
                "images_generated": int(r["images_generated"] or 0),
            }
            for r in rows
        ]


def _dump_json(value: Any) -> Optional[str]:
    if not value:
        return None
    return json.dumps(value)
