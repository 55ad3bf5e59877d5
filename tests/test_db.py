from pathlib import Path

import pytest

from hybridai.db import Database
from hybridai.schemas import ChatMessage


def user_message(message_id: str, text: str) -> ChatMessage:
    return ChatMessage(id=message_id, role="user", parts=[{"type": "text", "text": text}])


@pytest.mark.asyncio
async def test_db_init_creates_tables(tmp_path: Path):
    db = Database(str(tmp_path / "schema.db"))
    await db.init()
    rows = await db.fetchall("SELECT name FROM sqlite_master WHERE type='table'")
    tables = {row["name"] for row in rows}
    assert {"chats", "chat_messages", "query_buffers"}.issubset(tables)


@pytest.mark.asyncio
async def test_ensure_chat_is_idempotent(tmp_path: Path):
    db = Database(str(tmp_path / "chats.db"))
    await db.init()
    first = await db.ensure_chat("chat-1", "db-1")
    second = await db.ensure_chat("chat-1", "db-1")
    assert first == second
    assert first.database_id == "db-1"


@pytest.mark.asyncio
async def test_upsert_keeps_created_at(tmp_path: Path):
    db = Database(str(tmp_path / "messages.db"))
    await db.init()
    inserted = await db.upsert_message(user_message("m1", "hello"), "chat-1")
    updated = await db.upsert_message(user_message("m1", "hello again"), "chat-1")

    messages = await db.list_messages("chat-1")
    assert len(messages) == 1
    assert messages[0].text() == "hello again"
    assert messages[0].created_at == inserted.created_at
    assert updated.metadata["createdAt"] == inserted.created_at
    assert updated.metadata["updatedAt"] >= inserted.metadata["updatedAt"]


@pytest.mark.asyncio
async def test_list_messages_ordered_and_delete(tmp_path: Path):
    db = Database(str(tmp_path / "order.db"))
    await db.init()
    await db.upsert_message(user_message("m1", "one"), "chat-1")
    await db.upsert_message(ChatMessage(id="m2", role="assistant", parts=[]), "chat-1")
    await db.upsert_message(user_message("x", "other chat"), "chat-2")
    assert [m.id for m in await db.list_messages("chat-1")] == ["m1", "m2"]

    await db.delete_message("m2")
    assert [m.id for m in await db.list_messages("chat-1")] == ["m1"]
    assert await db.get_message("m2") is None


@pytest.mark.asyncio
async def test_query_buffer_round_trip(tmp_path: Path):
    db = Database(str(tmp_path / "buffer.db"))
    await db.init()
    assert await db.get_query_buffer("db-1") == ""
    await db.set_query_buffer("db-1", "SELECT 1")
    await db.set_query_buffer("db-1", "SELECT 2")
    assert await db.get_query_buffer("db-1") == "SELECT 2"
