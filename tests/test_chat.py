import asyncio
import itertools
import json
from pathlib import Path

import pytest

from hybridai.chat import AssistantMessageBuilder, ChatRegistry, ChatSession, is_complete_with_tool_calls
from hybridai.db import Database
from hybridai.errors import ChatDatabaseMismatch, LocalInferenceError, ToolResultAlreadyAttached
from hybridai.schemas import ChatMessage
from hybridai.settings_store import ChatSettingsStore
from hybridai.transport import ChatTransportRouter, DatabaseRef
from tests.fakes import FakeDataSource, FakeLocalLLM, FakeRemote, FakeSupervisor, completion


def user_message(message_id: str, text: str) -> ChatMessage:
    return ChatMessage(id=message_id, role="user", parts=[{"type": "text", "text": text}])


def remote_text_turn(message_id: str, text: str):
    return [
        {"type": "start", "messageId": message_id},
        {"type": "text-start", "id": "t1"},
        {"type": "text-delta", "id": "t1", "delta": text},
        {"type": "text-end", "id": "t1"},
        {"type": "finish"},
    ]


async def make_router(
    tmp_path: Path,
    *,
    local_ai: bool = False,
    supervisor=None,
    local_llm=None,
    remote=None,
    data_source=None,
    local_attempt_timeout_s: float = 5.0,
):
    db = Database(str(tmp_path / "chat.db"))
    await db.init()
    settings_store = ChatSettingsStore(None)
    if local_ai:
        settings_store.update(use_local_ai=True, provider="local")
    counter = itertools.count(1)
    router = ChatTransportRouter(
        database=DatabaseRef(id="db-1", type="postgres", source=data_source or FakeDataSource()),
        store=db,
        settings_store=settings_store,
        supervisor=supervisor or FakeSupervisor(),
        local_llm=local_llm or FakeLocalLLM(),
        remote=remote or FakeRemote(),
        local_attempt_timeout_s=local_attempt_timeout_s,
        generate_id=lambda: f"id-{next(counter)}",
    )
    return router, db


async def drain(stream):
    return [event async for event in stream]


@pytest.mark.asyncio
async def test_submit_same_message_twice_keeps_one_record(tmp_path: Path):
    router, db = await make_router(tmp_path)
    message = user_message("m1", "hello")
    await drain(router.send_messages(chat_id="c1", messages=[message], trigger="submit-message"))
    first = await db.get_message("m1")
    await drain(router.send_messages(chat_id="c1", messages=[message], trigger="submit-message"))

    stored = await db.list_messages("c1")
    assert [m.id for m in stored] == ["m1"]
    assert stored[0].created_at == first.created_at


@pytest.mark.asyncio
async def test_regenerate_deletes_target_message(tmp_path: Path):
    remote = FakeRemote()
    router, db = await make_router(tmp_path, remote=remote)
    await db.upsert_message(user_message("m1", "hello"), "c1")
    await db.upsert_message(ChatMessage(id="m2", role="assistant", parts=[]), "c1")

    history = await db.list_messages("c1")
    await drain(
        router.send_messages(chat_id="c1", messages=history, trigger="regenerate-message", message_id="m2")
    )
    assert [m.id for m in await db.list_messages("c1")] == ["m1"]
    assert remote.payloads[0]["trigger"] == "regenerate-message"
    assert remote.payloads[0]["messageId"] == "m2"


@pytest.mark.asyncio
async def test_remote_payload_shape(tmp_path: Path):
    remote = FakeRemote([remote_text_turn("a1", "hi")])
    router, db = await make_router(tmp_path, remote=remote)
    await db.set_query_buffer("db-1", "SELECT * FROM users")
    events = await drain(
        router.send_messages(
            chat_id="c1",
            messages=[user_message("m1", "hello")],
            trigger="submit-message",
            body={"locale": "en"},
        )
    )
    assert events == remote_text_turn("a1", "hi")
    payload = remote.payloads[0]
    assert payload["id"] == "c1"
    assert payload["databaseId"] == "db-1"
    assert payload["type"] == "postgres"
    assert payload["locale"] == "en"
    assert payload["prompt"]["id"] == "m1"
    assert "Current query in the SQL runner: SELECT * FROM users" in payload["context"]
    assert '"users"' in payload["context"]


@pytest.mark.asyncio
async def test_local_unreachable_falls_back_to_remote_silently(tmp_path: Path):
    supervisor = FakeSupervisor(ensure_error=LocalInferenceError("connection refused"))
    remote = FakeRemote([remote_text_turn("a1", "from remote")])
    router, _ = await make_router(tmp_path, local_ai=True, supervisor=supervisor, remote=remote)

    events = await drain(
        router.send_messages(chat_id="c1", messages=[user_message("m1", "hi")], trigger="submit-message")
    )
    assert events == remote_text_turn("a1", "from remote")
    assert not any(e["type"] == "error" for e in events)
    assert router.local_failures == 1
    assert len(remote.payloads) == 1


@pytest.mark.asyncio
async def test_slow_local_model_times_out_to_remote(tmp_path: Path):
    local_llm = FakeLocalLLM([completion("too late")], delay_seconds=1.0)
    remote = FakeRemote([remote_text_turn("a1", "from remote")])
    router, _ = await make_router(
        tmp_path, local_ai=True, local_llm=local_llm, remote=remote, local_attempt_timeout_s=0.05
    )
    events = await drain(
        router.send_messages(chat_id="c1", messages=[user_message("m1", "hi")], trigger="submit-message")
    )
    assert [e.get("delta") for e in events if e["type"] == "text-delta"] == ["from remote"]
    assert router.local_failures == 1


@pytest.mark.asyncio
async def test_local_tool_round_trip(tmp_path: Path):
    tool_call = {
        "id": "call_1",
        "type": "function",
        "function": {
            "name": "select",
            "arguments": json.dumps({"tableAndSchema": {"tableName": "users", "schemaName": "public"}, "limit": 5}),
        },
    }
    local_llm = FakeLocalLLM([completion("", [tool_call]), completion("There is one user.")])
    source = FakeDataSource(rows=[{"id": 1}])
    remote = FakeRemote()
    router, _ = await make_router(tmp_path, local_ai=True, local_llm=local_llm, remote=remote, data_source=source)

    events = await drain(
        router.send_messages(chat_id="c1", messages=[user_message("m1", "how many?")], trigger="submit-message")
    )
    assert [e["type"] for e in events] == [
        "start",
        "tool-input-available",
        "tool-output-available",
        "text-start",
        "text-delta",
        "text-end",
        "finish",
    ]
    assert events[1]["providerExecuted"] is True
    assert events[2]["output"] == [{"id": 1}]
    assert events[4]["delta"] == "There is one user."
    assert remote.payloads == []

    second_call = local_llm.calls[1]["messages"]
    assert second_call[0]["role"] == "system"
    assert second_call[-2]["tool_calls"][0]["id"] == "call_1"
    assert second_call[-1] == {"role": "tool", "tool_call_id": "call_1", "content": json.dumps([{"id": 1}])}


@pytest.mark.asyncio
async def test_local_invalid_operator_reported_to_model(tmp_path: Path):
    tool_call = {
        "id": "call_1",
        "function": {
            "name": "select",
            "arguments": json.dumps(
                {
                    "tableAndSchema": {"tableName": "users", "schemaName": "public"},
                    "whereFilters": [{"column": "name", "operator": "~~", "values": ["x"]}],
                }
            ),
        },
    }
    local_llm = FakeLocalLLM([completion("", [tool_call]), completion("Sorry.")])
    source = FakeDataSource()
    router, _ = await make_router(tmp_path, local_ai=True, local_llm=local_llm, data_source=source)

    events = await drain(
        router.send_messages(chat_id="c1", messages=[user_message("m1", "q")], trigger="submit-message")
    )
    outputs = [e["output"] for e in events if e["type"] == "tool-output-available"]
    assert outputs == [{"error": "Invalid operator: ~~"}]
    assert source.calls == []


def test_builder_rejects_second_result():
    builder = AssistantMessageBuilder(ChatMessage(id="a1", role="assistant"))
    call = builder.apply({"type": "tool-input-available", "toolCallId": "t1", "toolName": "enums", "input": {}})
    assert call is not None and call.tool_name == "enums"
    builder.attach_output("t1", [])
    with pytest.raises(ToolResultAlreadyAttached):
        builder.attach_output("t1", [])
    assert is_complete_with_tool_calls(builder.message)


@pytest.mark.asyncio
async def test_session_dispatches_client_tool_and_continues(tmp_path: Path):
    remote = FakeRemote(
        [
            [
                {"type": "start", "messageId": "a1"},
                {
                    "type": "tool-input-available",
                    "toolCallId": "t1",
                    "toolName": "columns",
                    "input": {"tableAndSchema": {"tableName": "users", "schemaName": "public"}},
                },
                {"type": "finish"},
            ],
            remote_text_turn("a1", "Users has an email column."),
        ]
    )
    source = FakeDataSource(columns=[{"id": "email", "type": "text"}])
    router, db = await make_router(tmp_path, remote=remote, data_source=source)
    session = ChatSession(chat_id="c1", router=router, store=db, dispatcher=router.dispatcher)

    events = await drain(session.send_message(user_message("m1", "columns?")))
    output_events = [e for e in events if e["type"] == "tool-output-available"]
    assert output_events == [{"type": "tool-output-available", "toolCallId": "t1", "output": [{"id": "email", "type": "text"}]}]
    assert len(remote.payloads) == 2
    assert remote.payloads[1]["trigger"] == "submit-message"
    assert remote.payloads[1]["prompt"]["id"] == "a1"

    stored = await db.list_messages("c1")
    assert [m.id for m in stored] == ["m1", "a1"]
    parts = stored[1].parts
    assert parts[0]["type"] == "tool-columns"
    assert parts[0]["state"] == "output-available"
    assert parts[-1] == {"type": "text", "text": "Users has an email column."}


@pytest.mark.asyncio
async def test_session_abort_does_not_store_assistant(tmp_path: Path):
    remote = FakeRemote([remote_text_turn("a1", "partial answer")])
    router, db = await make_router(tmp_path, remote=remote)
    session = ChatSession(chat_id="c1", router=router, store=db, dispatcher=router.dispatcher)
    abort = asyncio.Event()

    events = []
    async for event in session.send_message(user_message("m1", "hi"), abort=abort):
        events.append(event)
        abort.set()

    assert [e["type"] for e in events] == ["start"]
    assert [m.id for m in await db.list_messages("c1")] == ["m1"]


@pytest.mark.asyncio
async def test_session_regenerate_replaces_assistant(tmp_path: Path):
    remote = FakeRemote([remote_text_turn("a1", "first"), remote_text_turn("a2", "second")])
    router, db = await make_router(tmp_path, remote=remote)
    session = ChatSession(chat_id="c1", router=router, store=db, dispatcher=router.dispatcher)
    await drain(session.send_message(user_message("m1", "hi")))
    assert [m.id for m in session.messages] == ["m1", "a1"]

    await drain(session.regenerate())
    stored = await db.list_messages("c1")
    assert [m.id for m in stored] == ["m1", "a2"]
    assert stored[1].text() == "second"
    assert remote.payloads[1]["messageId"] == "a1"

    with pytest.raises(ValueError):
        await drain(session.regenerate("m1"))


def registry_over(db: Database) -> ChatRegistry:
    def router_factory(database: DatabaseRef) -> ChatTransportRouter:
        return ChatTransportRouter(
            database=database,
            store=db,
            settings_store=ChatSettingsStore(None),
            supervisor=FakeSupervisor(),
            local_llm=FakeLocalLLM(),
            remote=FakeRemote(),
        )

    return ChatRegistry(store=db, router_factory=router_factory)


@pytest.mark.asyncio
async def test_registry_keeps_chat_bound_to_its_database(tmp_path: Path):
    db = Database(str(tmp_path / "chat.db"))
    await db.init()
    first = DatabaseRef(id="db-1", type="postgres", source=FakeDataSource())
    other = DatabaseRef(id="db-2", type="postgres", source=FakeDataSource())
    registry = registry_over(db)

    session = await registry.get_or_create("c1", first)
    assert await registry.get_or_create("c1", first) is session
    with pytest.raises(ChatDatabaseMismatch) as excinfo:
        await registry.get_or_create("c1", other)
    assert excinfo.value.status_code == 409
    assert excinfo.value.database_id == "db-1"
    assert (await registry.get_or_create("c2", other)).router.database.id == "db-2"


@pytest.mark.asyncio
async def test_registry_rejects_stored_chat_from_other_database(tmp_path: Path):
    db = Database(str(tmp_path / "chat.db"))
    await db.init()
    await db.ensure_chat("c1", "db-1")
    registry = registry_over(db)

    with pytest.raises(ChatDatabaseMismatch) as excinfo:
        await registry.get_or_create("c1", DatabaseRef(id="db-2", type="postgres", source=FakeDataSource()))
    assert excinfo.value.requested_id == "db-2"
    session = await registry.get_or_create("c1", DatabaseRef(id="db-1", type="postgres", source=FakeDataSource()))
    assert session.router.database.id == "db-1"
