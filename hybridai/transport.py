import asyncio
import json
import logging
import uuid
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from .db import Database
from .llm import LocalLLMClient
from .ollama_manager import OllamaSupervisor
from .remote import RemoteAssistantClient
from .schemas import Chat, ChatMessage, ChatSettings, ToolCall
from .settings_store import ChatSettingsStore
from .tools import TOOL_DEFINITIONS, DataSource, ToolDispatcher


logger = logging.getLogger("uvicorn.error")

SYSTEM_PROMPT_TEMPLATE = """You are a SQL assistant helping users with their database queries.

Context:
{context}

You have access to tools to query the database. Use them to help the user."""


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class DatabaseRef:
    id: str
    type: str
    source: DataSource


def to_local_message(message: ChatMessage) -> Dict[str, str]:
    """Only the first text part is forwarded to the local model."""
    role = "user" if message.role == "user" else "assistant"
    return {"role": role, "content": message.text()}


def _parse_arguments(raw: Any) -> Optional[Dict[str, Any]]:
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw or "{}")
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


class ChatTransportRouter:
    """Per-turn transport: local Ollama when enabled, remote assistant otherwise or on failure."""

    def __init__(
        self,
        *,
        database: DatabaseRef,
        store: Database,
        settings_store: ChatSettingsStore,
        supervisor: OllamaSupervisor,
        local_llm: LocalLLMClient,
        remote: RemoteAssistantClient,
        dispatcher: Optional[ToolDispatcher] = None,
        local_attempt_timeout_s: float = 120.0,
        max_tool_rounds: int = 5,
        generate_id: Callable[[], str] = new_id,
    ) -> None:
        self.database = database
        self.store = store
        self.settings_store = settings_store
        self.supervisor = supervisor
        self.local_llm = local_llm
        self.remote = remote
        self.dispatcher = dispatcher or ToolDispatcher(database.source)
        self.local_attempt_timeout_s = local_attempt_timeout_s
        self.max_tool_rounds = max_tool_rounds
        self.generate_id = generate_id
        self.local_failures = 0

    async def build_context(self) -> str:
        sql = (await self.store.get_query_buffer(self.database.id)).strip()
        tables = await self.database.source.get_tables_and_schemas()
        return "\n".join(
            [
                f"Current query in the SQL runner: {sql or 'Empty'}",
                "Database schemas and tables:",
                json.dumps(tables, indent=2),
            ]
        )

    @staticmethod
    def local_mode_enabled(settings: ChatSettings) -> bool:
        return settings.use_local_ai and settings.provider == "local"

    async def send_messages(
        self,
        *,
        chat_id: str,
        messages: List[ChatMessage],
        trigger: str,
        message_id: Optional[str] = None,
        abort: Optional[asyncio.Event] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        if not messages:
            raise ValueError("Last message not found")
        last_message = messages[-1]
        if trigger == "regenerate-message" and not message_id:
            message_id = last_message.id

        chat = await self.store.ensure_chat(chat_id, self.database.id)
        if trigger == "submit-message":
            await self.store.upsert_message(last_message, chat_id)
        if trigger == "regenerate-message" and message_id:
            await self.store.delete_message(message_id)

        context = await self.build_context()
        settings = self.settings_store.get()

        if self.local_mode_enabled(settings):
            events = await self._attempt_local(messages, context, settings, abort)
            if events is not None:
                for event in events:
                    if abort is not None and abort.is_set():
                        return
                    yield event
                return

        payload = self._remote_payload(chat, messages, trigger, message_id, context, body)
        async with aclosing(self.remote.ask(payload, abort=abort)) as events:
            async for event in events:
                yield event
                if abort is not None and abort.is_set():
                    return

    def _remote_payload(
        self,
        chat: Chat,
        messages: List[ChatMessage],
        trigger: str,
        message_id: Optional[str],
        context: str,
        body: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        prompt = messages[-1].model_dump(mode="json", include={"id", "role", "parts", "metadata"})
        return {
            **(body or {}),
            "id": chat.id,
            "createdAt": chat.created_at,
            "updatedAt": chat.updated_at,
            "type": self.database.type,
            "databaseId": self.database.id,
            "prompt": prompt,
            "trigger": trigger,
            "messageId": message_id,
            "context": context,
        }

    async def _attempt_local(
        self,
        messages: List[ChatMessage],
        context: str,
        settings: ChatSettings,
        abort: Optional[asyncio.Event],
    ) -> Optional[List[Dict[str, Any]]]:
        """Run the local turn to completion; ``None`` means fall back to remote."""
        local_task = asyncio.ensure_future(
            asyncio.wait_for(self._run_local(messages, context, settings), timeout=self.local_attempt_timeout_s)
        )
        waiters = {local_task}
        if abort is not None:
            waiters.add(asyncio.ensure_future(abort.wait()))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()
        if not local_task.done() or local_task.cancelled():
            # Aborted: whatever the local model produces later is discarded.
            return []
        exc = local_task.exception()
        if exc is not None:
            self.local_failures += 1
            logger.warning("Local AI inference failed, falling back to remote: %r", exc)
            return None
        return local_task.result()

    async def _run_local(
        self,
        messages: List[ChatMessage],
        context: str,
        settings: ChatSettings,
    ) -> List[Dict[str, Any]]:
        await self.supervisor.ensure_running()
        model = LocalLLMClient.select_model(None, settings.default_local_model)
        conversation: List[Dict[str, Any]] = [
            {"role": "system", "content": SYSTEM_PROMPT_TEMPLATE.format(context=context)}
        ]
        conversation.extend(to_local_message(m) for m in messages)

        events: List[Dict[str, Any]] = [{"type": "start", "messageId": self.generate_id()}]
        for round_index in range(self.max_tool_rounds + 1):
            data = await self.local_llm.chat_completion(model, conversation, tools=TOOL_DEFINITIONS)
            choices = data.get("choices") or []
            message = (choices[0].get("message") if choices else None) or {}
            tool_calls = message.get("tool_calls") or []
            if not tool_calls or round_index == self.max_tool_rounds:
                content = message.get("content") or ""
                if content:
                    text_id = self.generate_id()
                    events.append({"type": "text-start", "id": text_id})
                    events.append({"type": "text-delta", "id": text_id, "delta": content})
                    events.append({"type": "text-end", "id": text_id})
                break
            conversation.append(
                {"role": "assistant", "content": message.get("content") or "", "tool_calls": tool_calls}
            )
            for raw_call in tool_calls:
                events.extend(await self._run_local_tool_call(raw_call, conversation))
        events.append({"type": "finish"})
        return events

    async def _run_local_tool_call(
        self,
        raw_call: Dict[str, Any],
        conversation: List[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        function = raw_call.get("function") or {}
        call_id = raw_call.get("id") or self.generate_id()
        tool_name = str(function.get("name") or "")
        arguments = _parse_arguments(function.get("arguments"))
        call = ToolCall(tool_name=tool_name, tool_call_id=call_id, input=arguments or {})
        if arguments is None:
            output: Any = {"error": "Tool arguments must be a JSON object"}
        else:
            output = await self.dispatcher.run(call)
        conversation.append(
            {"role": "tool", "tool_call_id": call_id, "content": json.dumps(output, default=str)}
        )
        return [
            {
                "type": "tool-input-available",
                "toolCallId": call_id,
                "toolName": tool_name,
                "input": call.input,
                "providerExecuted": True,
            },
            {"type": "tool-output-available", "toolCallId": call_id, "output": output},
        ]
