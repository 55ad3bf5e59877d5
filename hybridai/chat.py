import asyncio
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional

from .db import Database
from .errors import ChatDatabaseMismatch, ToolResultAlreadyAttached
from .schemas import ChatMessage, ToolCall
from .tools import ToolDispatcher
from .transport import ChatTransportRouter, DatabaseRef, new_id


logger = logging.getLogger("uvicorn.error")


def _tool_parts(message: ChatMessage) -> List[Dict[str, Any]]:
    return [p for p in message.parts if str(p.get("type", "")).startswith("tool-")]


def is_complete_with_tool_calls(message: Optional[ChatMessage]) -> bool:
    """True when the assistant stopped on tool calls that all have outputs."""
    if message is None or message.role != "assistant" or not message.parts:
        return False
    if not str(message.parts[-1].get("type", "")).startswith("tool-"):
        return False
    return all(p.get("state") == "output-available" for p in _tool_parts(message))


class AssistantMessageBuilder:
    """Folds UI message-stream events into one assistant message."""

    def __init__(self, message: ChatMessage) -> None:
        self.message = message
        self.error: Optional[str] = None
        self.finished = False
        self._text_parts: Dict[str, Dict[str, Any]] = {}

    def _find_tool_part(self, tool_call_id: str) -> Optional[Dict[str, Any]]:
        for part in self.message.parts:
            if part.get("toolCallId") == tool_call_id:
                return part
        return None

    def _text_part(self, text_id: Optional[str]) -> Dict[str, Any]:
        key = text_id or ""
        part = self._text_parts.get(key)
        if part is None:
            part = {"type": "text", "text": ""}
            self.message.parts.append(part)
            self._text_parts[key] = part
        return part

    def apply(self, event: Dict[str, Any]) -> Optional[ToolCall]:
        """Apply an event; returns a tool call the client must execute, if any."""
        kind = event.get("type")
        if kind == "start":
            if event.get("messageId") and not self.message.parts:
                self.message.id = str(event["messageId"])
        elif kind == "text-start":
            self._text_part(event.get("id"))
        elif kind == "text-delta":
            part = self._text_part(event.get("id"))
            part["text"] += str(event.get("delta") or "")
        elif kind == "tool-input-available":
            call = ToolCall(
                tool_name=str(event.get("toolName") or ""),
                tool_call_id=str(event.get("toolCallId") or ""),
                input=event.get("input") or {},
            )
            self.message.parts.append(
                {
                    "type": f"tool-{call.tool_name}",
                    "toolCallId": call.tool_call_id,
                    "state": "input-available",
                    "input": call.input,
                }
            )
            if not event.get("providerExecuted"):
                return call
        elif kind == "tool-output-available":
            tool_call_id = str(event.get("toolCallId") or "")
            if self._find_tool_part(tool_call_id) is None:
                logger.warning("Ignoring output for unknown tool call %s", tool_call_id)
            else:
                self.attach_output(tool_call_id, event.get("output"))
        elif kind == "error":
            self.error = str(event.get("errorText") or "Unknown error")
        elif kind == "finish":
            self.finished = True
        return None

    def attach_output(self, tool_call_id: str, output: Any) -> None:
        part = self._find_tool_part(tool_call_id)
        if part is None:
            raise KeyError(f"Unknown tool call {tool_call_id}")
        if part.get("state") == "output-available":
            raise ToolResultAlreadyAttached(tool_call_id)
        part["output"] = output
        part["state"] = "output-available"


class ChatSession:
    """One conversation: in-memory history, tool execution and persistence of results."""

    def __init__(
        self,
        *,
        chat_id: str,
        router: ChatTransportRouter,
        store: Database,
        dispatcher: ToolDispatcher,
        messages: Optional[List[ChatMessage]] = None,
        max_auto_steps: int = 5,
    ) -> None:
        self.chat_id = chat_id
        self.router = router
        self.store = store
        self.dispatcher = dispatcher
        self.messages: List[ChatMessage] = list(messages or [])
        self.max_auto_steps = max_auto_steps
        self._turn_lock = asyncio.Lock()

    def _index_of(self, message_id: str) -> Optional[int]:
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                return index
        return None

    async def send_message(
        self,
        message: ChatMessage,
        *,
        abort: Optional[asyncio.Event] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        async with self._turn_lock:
            index = self._index_of(message.id)
            if index is None:
                self.messages.append(message)
            else:
                self.messages[index] = message
            async for event in self._run("submit-message", None, abort, body):
                yield event

    async def regenerate(
        self,
        message_id: Optional[str] = None,
        *,
        abort: Optional[asyncio.Event] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        async with self._turn_lock:
            if message_id is None:
                assistants = [m for m in self.messages if m.role == "assistant"]
                if not assistants:
                    raise ValueError("No assistant message to regenerate")
                message_id = assistants[-1].id
            index = self._index_of(message_id)
            if index is None or self.messages[index].role != "assistant":
                raise ValueError(f"Message {message_id} is not an assistant message of this chat")
            del self.messages[index:]
            async for event in self._run("regenerate-message", message_id, abort, body):
                yield event

    async def _run(
        self,
        trigger: str,
        message_id: Optional[str],
        abort: Optional[asyncio.Event],
        body: Optional[Dict[str, Any]],
    ) -> AsyncIterator[Dict[str, Any]]:
        for _ in range(self.max_auto_steps + 1):
            last = self.messages[-1] if self.messages else None
            if last is not None and last.role == "assistant":
                # Continuation after client-side tool results.
                draft = last.model_copy(deep=True)
            else:
                draft = ChatMessage(id=new_id(), chat_id=self.chat_id, role="assistant", parts=[])
            builder = AssistantMessageBuilder(draft)

            stream = self.router.send_messages(
                chat_id=self.chat_id,
                messages=list(self.messages),
                trigger=trigger,
                message_id=message_id,
                abort=abort,
                body=body,
            )
            async with aclosing(stream) as events:
                async for event in events:
                    yield event
                    call = builder.apply(event)
                    if call is not None:
                        output = await self.dispatcher.run(call)
                        builder.attach_output(call.tool_call_id, output)
                        yield {"type": "tool-output-available", "toolCallId": call.tool_call_id, "output": output}

            if abort is not None and abort.is_set():
                logger.info("Chat %s turn aborted; assistant message not stored", self.chat_id)
                return
            if builder.error is not None:
                logger.warning("Chat %s turn ended with error: %s", self.chat_id, builder.error)
                return
            await self._on_finish(builder.message)
            if not is_complete_with_tool_calls(builder.message):
                return
            trigger, message_id = "submit-message", None
        logger.warning("Chat %s stopped after %s automatic tool steps", self.chat_id, self.max_auto_steps)

    async def _on_finish(self, message: ChatMessage) -> None:
        stored = await self.store.upsert_message(message, self.chat_id)
        index = self._index_of(stored.id)
        if index is None:
            self.messages.append(stored)
        else:
            self.messages[index] = stored


class ChatRegistry:
    """Keeps one ChatSession per chat id, hydrated from stored history."""

    def __init__(self, *, store: Database, router_factory, max_auto_steps: int = 5) -> None:
        self.store = store
        self.router_factory = router_factory
        self.max_auto_steps = max_auto_steps
        self._sessions: Dict[str, ChatSession] = {}
        self._lock = asyncio.Lock()

    async def get_or_create(self, chat_id: str, database: DatabaseRef) -> ChatSession:
        """A chat stays bound to the database it was started on."""
        async with self._lock:
            session = self._sessions.get(chat_id)
            if session is not None:
                bound_id = session.router.database.id
                if bound_id != database.id:
                    raise ChatDatabaseMismatch(chat_id, bound_id, database.id)
                return session
            stored = await self.store.get_chat(chat_id)
            if stored is not None and stored.database_id != database.id:
                raise ChatDatabaseMismatch(chat_id, stored.database_id, database.id)
            router: ChatTransportRouter = self.router_factory(database)
            session = ChatSession(
                chat_id=chat_id,
                router=router,
                store=self.store,
                dispatcher=router.dispatcher,
                messages=await self.store.list_messages(chat_id),
                max_auto_steps=self.max_auto_steps,
            )
            self._sessions[chat_id] = session
            return session
