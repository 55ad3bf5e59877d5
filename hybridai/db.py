import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from .schemas import Chat, ChatMessage


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _message_from_row(row: aiosqlite.Row) -> ChatMessage:
    return ChatMessage(
        id=row["id"],
        chat_id=row["chat_id"],
        role=row["role"],
        parts=json.loads(row["parts_json"] or "[]"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else None,
    )


class Database:
    """Chat history store: chats and messages indexed by id."""

    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS chats(
                    id TEXT PRIMARY KEY,
                    database_id TEXT,
                    title TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS chat_messages(
                    id TEXT PRIMARY KEY,
                    chat_id TEXT,
                    role TEXT,
                    parts_json TEXT,
                    metadata_json TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_chat_messages_chat ON chat_messages(chat_id, created_at);
                CREATE TABLE IF NOT EXISTS query_buffers(
                    database_id TEXT PRIMARY KEY,
                    sql_text TEXT,
                    updated_at TEXT
                );
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        row = await self.fetchone(
            "SELECT id, database_id, title, created_at, updated_at FROM chats WHERE id=?",
            (chat_id,),
        )
        if not row:
            return None
        return Chat(**dict(row))

    async def ensure_chat(self, chat_id: str, database_id: str) -> Chat:
        now = utc_now()
        # INSERT OR IGNORE keeps concurrent first messages from racing on creation.
        await self.execute(
            "INSERT OR IGNORE INTO chats(id, database_id, title, created_at, updated_at) VALUES (?,?,?,?,?)",
            (chat_id, database_id, None, now, now),
        )
        chat = await self.get_chat(chat_id)
        if chat is None:
            raise RuntimeError(f"Chat {chat_id} could not be created")
        return chat

    async def get_message(self, message_id: str) -> Optional[ChatMessage]:
        row = await self.fetchone(
            "SELECT id, chat_id, role, parts_json, metadata_json, created_at, updated_at "
            "FROM chat_messages WHERE id=?",
            (message_id,),
        )
        if not row:
            return None
        return _message_from_row(row)

    async def insert_message(self, message: ChatMessage) -> ChatMessage:
        await self.execute(
            "INSERT INTO chat_messages(id, chat_id, role, parts_json, metadata_json, created_at, updated_at) "
            "VALUES (?,?,?,?,?,?,?)",
            (
                message.id,
                message.chat_id,
                message.role,
                json.dumps(message.parts, ensure_ascii=True),
                json.dumps(message.metadata, ensure_ascii=True) if message.metadata is not None else None,
                message.created_at,
                message.updated_at,
            ),
        )
        return message

    async def update_message(self, message: ChatMessage) -> ChatMessage:
        await self.execute(
            "UPDATE chat_messages SET chat_id=?, role=?, parts_json=?, metadata_json=?, created_at=?, updated_at=? "
            "WHERE id=?",
            (
                message.chat_id,
                message.role,
                json.dumps(message.parts, ensure_ascii=True),
                json.dumps(message.metadata, ensure_ascii=True) if message.metadata is not None else None,
                message.created_at,
                message.updated_at,
                message.id,
            ),
        )
        return message

    async def upsert_message(self, message: ChatMessage, chat_id: str) -> ChatMessage:
        """Insert by id, or update in place keeping the stored createdAt."""
        now = utc_now()
        existing = await self.get_message(message.id)
        if existing:
            metadata = {**(existing.metadata or {}), **(message.metadata or {}), "updatedAt": now}
            updated = message.model_copy(
                update={
                    "chat_id": chat_id,
                    "created_at": existing.created_at,
                    "updated_at": now,
                    "metadata": metadata,
                }
            )
            return await self.update_message(updated)
        created_at = message.created_at or now
        metadata = {**(message.metadata or {}), "createdAt": created_at, "updatedAt": now}
        inserted = message.model_copy(
            update={"chat_id": chat_id, "created_at": created_at, "updated_at": now, "metadata": metadata}
        )
        return await self.insert_message(inserted)

    async def delete_message(self, message_id: str) -> None:
        await self.execute("DELETE FROM chat_messages WHERE id=?", (message_id,))

    async def list_messages(self, chat_id: str) -> List[ChatMessage]:
        rows = await self.fetchall(
            "SELECT id, chat_id, role, parts_json, metadata_json, created_at, updated_at "
            "FROM chat_messages WHERE chat_id=? ORDER BY created_at ASC",
            (chat_id,),
        )
        return [_message_from_row(r) for r in rows]

    async def get_query_buffer(self, database_id: str) -> str:
        row = await self.fetchone("SELECT sql_text FROM query_buffers WHERE database_id=?", (database_id,))
        return (row["sql_text"] or "") if row else ""

    async def set_query_buffer(self, database_id: str, sql_text: str) -> str:
        updated_at = utc_now()
        await self.execute(
            "INSERT OR REPLACE INTO query_buffers(database_id, sql_text, updated_at) VALUES (?,?,?)",
            (database_id, sql_text, updated_at),
        )
        return updated_at
