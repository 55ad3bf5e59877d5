import asyncio
from typing import Any, Dict, List, Optional

from hybridai.errors import HybridAIError, LocalInferenceError
from hybridai.schemas import InferenceServerStatus, LocalModel, PullProgressEvent


class FakeProcess:
    def __init__(self) -> None:
        self.returncode: Optional[int] = None
        self.stdout = None
        self.stderr = None
        self.terminated = False
        self.killed = False
        self._exited = asyncio.Event()

    def terminate(self) -> None:
        self.terminated = True
        self.returncode = -15
        self._exited.set()

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeSupervisor:
    def __init__(
        self,
        *,
        installed: bool = True,
        running: bool = True,
        models: Optional[List[LocalModel]] = None,
        pull_events: Optional[List[PullProgressEvent]] = None,
        pull_error: Optional[HybridAIError] = None,
        ensure_error: Optional[Exception] = None,
        install_messages: Optional[List[str]] = None,
        install_error: Optional[HybridAIError] = None,
    ) -> None:
        self.installed = installed
        self.running = running
        self.models = models or []
        self.pull_events = pull_events or []
        self.pull_error = pull_error
        self.ensure_error = ensure_error
        self.install_messages = install_messages or []
        self.install_error = install_error
        self.ensure_calls = 0
        self.deleted: List[str] = []
        self.closed = False

    async def get_status(self) -> InferenceServerStatus:
        return InferenceServerStatus(
            installed=self.installed,
            running=self.running,
            version="ollama version is 0.5.7" if self.installed else None,
        )

    async def start(self) -> None:
        self.running = True

    async def stop(self) -> None:
        self.running = False

    async def ensure_running(self) -> None:
        self.ensure_calls += 1
        if self.ensure_error is not None:
            raise self.ensure_error
        self.running = True

    async def list_models(self) -> List[LocalModel]:
        return list(self.models)

    async def pull_model(self, model_name: str):
        for event in self.pull_events:
            yield event
        if self.pull_error is not None:
            raise self.pull_error

    async def delete_model(self, model_name: str) -> None:
        self.deleted.append(model_name)

    async def auto_install(self):
        for message in self.install_messages:
            yield message
        if self.install_error is not None:
            raise self.install_error

    async def aclose(self) -> None:
        self.closed = True


def completion(content: str = "", tool_calls: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    message: Dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {"choices": [{"message": message}]}


class FakeLocalLLM:
    """Returns queued completions in order; an Exception in the queue is raised instead."""

    def __init__(self, responses: Optional[List[Any]] = None, delay_seconds: float = 0.0) -> None:
        self.responses = list(responses or [])
        self.delay_seconds = delay_seconds
        self.calls: List[Dict[str, Any]] = []

    async def chat_completion(self, model, messages, tools=None, temperature=0.2):
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        self.calls.append({"model": model, "messages": [dict(m) for m in messages], "tools": tools})
        if not self.responses:
            raise LocalInferenceError("no scripted response")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self) -> None:
        return None


class FakeRemote:
    """Replays one scripted event list per call to ``ask``."""

    def __init__(self, turns: Optional[List[List[Dict[str, Any]]]] = None) -> None:
        self.turns = list(turns or [])
        self.payloads: List[Dict[str, Any]] = []

    async def ask(self, payload, abort=None):
        self.payloads.append(payload)
        events = self.turns.pop(0) if self.turns else [{"type": "finish"}]
        for event in events:
            if abort is not None and abort.is_set():
                return
            yield event

    async def close(self) -> None:
        return None


class FakeDataSource:
    def __init__(
        self,
        *,
        tables: Optional[List[Dict[str, Any]]] = None,
        columns: Optional[List[Dict[str, Any]]] = None,
        enums: Optional[List[Dict[str, Any]]] = None,
        rows: Optional[List[Dict[str, Any]]] = None,
        select_error: Optional[Exception] = None,
    ) -> None:
        self.tables = tables if tables is not None else [{"schema": "public", "tables": ["users"]}]
        self.columns = columns or []
        self.enums = enums or []
        self.rows = rows or []
        self.select_error = select_error
        self.calls: List[tuple] = []

    async def get_tables_and_schemas(self):
        return self.tables

    async def get_columns(self, schema, table):
        self.calls.append(("columns", schema, table))
        return self.columns

    async def get_enums(self):
        self.calls.append(("enums",))
        return self.enums

    async def select_rows(self, query):
        self.calls.append(("select", query))
        if self.select_error is not None:
            raise self.select_error
        return self.rows
