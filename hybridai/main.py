import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .chat import ChatRegistry, ChatSession
from .config import CONFIG_PATH, AppSettings, load_settings, save_settings
from .datasource import DataSourceRegistry, SQLiteDataSource
from .db import Database
from .errors import HybridAIError, normalize_error_message
from .installer import OllamaInstaller
from .llm import LocalLLMClient
from .ollama_manager import OllamaSupervisor
from .profiles import apply_profile, list_profiles
from .remote import RemoteAssistantClient, events_to_byte_stream
from .schemas import ModelNameRequest, RegenerateRequest, SubmitMessageRequest
from .settings_store import ChatSettingsStore
from .transport import ChatTransportRouter, DatabaseRef


logger = logging.getLogger("uvicorn.error")


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_supervisor(request: Request) -> OllamaSupervisor:
    return request.app.state.supervisor


def get_settings_store(request: Request) -> ChatSettingsStore:
    return request.app.state.settings_store


def get_data_sources(request: Request) -> DataSourceRegistry:
    return request.app.state.data_sources


def get_chats(request: Request) -> ChatRegistry:
    return request.app.state.chats


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def ndjson_format(payload: dict) -> str:
    return json.dumps(payload) + "\n"


async def _prime(stream: AsyncIterator[Any]) -> Tuple[bool, Any]:
    """Pull the first item so immediate failures become regular HTTP errors."""
    try:
        return True, await stream.__anext__()
    except StopAsyncIteration:
        return False, None


def _error_payload(exc: HybridAIError) -> Dict[str, Any]:
    return {"detail": normalize_error_message(exc.message), "kind": exc.kind}


async def hybridai_error_handler(request: Request, exc: HybridAIError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=_error_payload(exc))


router = APIRouter()


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    new_settings = AppSettings(**{**settings.model_dump(), **body})
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    # Ollama host/port/binary, storage paths, data sources and max_auto_steps
    # take effect on restart; chats already open keep their turn bounds.
    remote: RemoteAssistantClient = request.app.state.remote
    remote.url = new_settings.remote_api_url
    remote.api_token = new_settings.remote_api_token
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.get("/api/ollama/status")
async def ollama_status(supervisor: OllamaSupervisor = Depends(get_supervisor)):
    status = await supervisor.get_status()
    return status.model_dump()


@router.post("/api/ollama/start")
async def ollama_start(supervisor: OllamaSupervisor = Depends(get_supervisor)):
    await supervisor.start()
    return {"ok": True}


@router.post("/api/ollama/stop")
async def ollama_stop(supervisor: OllamaSupervisor = Depends(get_supervisor)):
    await supervisor.stop()
    return {"ok": True}


@router.post("/api/ollama/ensure-running")
async def ollama_ensure_running(supervisor: OllamaSupervisor = Depends(get_supervisor)):
    await supervisor.ensure_running()
    return {"ok": True}


@router.get("/api/ollama/models")
async def ollama_list_models(supervisor: OllamaSupervisor = Depends(get_supervisor)):
    models = await supervisor.list_models()
    return {"models": [m.model_dump() for m in models]}


@router.post("/api/ollama/models/pull")
async def ollama_pull_model(
    payload: ModelNameRequest,
    supervisor: OllamaSupervisor = Depends(get_supervisor),
):
    stream = supervisor.pull_model(payload.model_name)
    has_first, first = await _prime(stream)

    async def body():
        try:
            if has_first:
                yield ndjson_format(first.to_wire())
                async for event in stream:
                    yield ndjson_format(event.to_wire())
        except HybridAIError as exc:
            yield ndjson_format({"status": "error", "error": normalize_error_message(exc.message)})
        finally:
            await stream.aclose()

    return StreamingResponse(body(), media_type="application/x-ndjson")


@router.delete("/api/ollama/models")
async def ollama_delete_model(
    payload: ModelNameRequest = Body(...),
    supervisor: OllamaSupervisor = Depends(get_supervisor),
):
    await supervisor.delete_model(payload.model_name)
    return {"ok": True}


@router.post("/api/ollama/install")
async def ollama_install(supervisor: OllamaSupervisor = Depends(get_supervisor)):
    stream = supervisor.auto_install()
    has_first, first = await _prime(stream)

    async def body():
        try:
            if has_first:
                yield ndjson_format({"message": first})
                async for message in stream:
                    yield ndjson_format({"message": message})
        except HybridAIError as exc:
            yield ndjson_format({"error": normalize_error_message(exc.message), "kind": exc.kind})
        finally:
            await stream.aclose()

    return StreamingResponse(body(), media_type="application/x-ndjson")


@router.get("/api/model-profiles")
async def model_profiles():
    return {"profiles": [p.model_dump() for p in list_profiles()]}


@router.get("/api/ai-settings")
async def get_ai_settings(store: ChatSettingsStore = Depends(get_settings_store)):
    return {"settings": store.get().model_dump()}


@router.put("/api/ai-settings")
async def update_ai_settings(
    payload: Dict[str, Any] = Body(default={}),
    store: ChatSettingsStore = Depends(get_settings_store),
):
    try:
        updated = store.update(**payload)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {"settings": updated.model_dump()}


@router.post("/api/ai-settings/profile")
async def select_profile(
    payload: Dict[str, Any] = Body(default={}),
    store: ChatSettingsStore = Depends(get_settings_store),
):
    try:
        updated = store.replace(apply_profile(store.get(), str(payload.get("profileId") or "")))
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {"settings": updated.model_dump()}


@router.get("/api/databases/{database_id}/query")
async def get_query_buffer(database_id: str, db: Database = Depends(get_db)):
    return {"sql": await db.get_query_buffer(database_id)}


@router.put("/api/databases/{database_id}/query")
async def set_query_buffer(
    database_id: str,
    payload: Dict[str, Any] = Body(default={}),
    db: Database = Depends(get_db),
):
    updated_at = await db.set_query_buffer(database_id, str(payload.get("sql") or ""))
    return {"ok": True, "updated_at": updated_at}


@router.get("/api/chats/{chat_id}/messages")
async def list_chat_messages(chat_id: str, db: Database = Depends(get_db)):
    messages = await db.list_messages(chat_id)
    return {"messages": [m.model_dump() for m in messages]}


async def _session_for(
    chat_id: str,
    database_id: str,
    data_sources: DataSourceRegistry,
    chats: ChatRegistry,
) -> ChatSession:
    entry = data_sources.get(database_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Database not found")
    database_type, source = entry
    return await chats.get_or_create(chat_id, DatabaseRef(id=database_id, type=database_type, source=source))


def _chat_stream(events: AsyncIterator[Dict[str, Any]]) -> StreamingResponse:
    async def guarded():
        try:
            async for event in events:
                yield event
        except (HybridAIError, ValueError) as exc:
            logger.warning("Chat turn failed: %s", exc)
            yield {"type": "error", "errorText": normalize_error_message(str(exc))}

    return StreamingResponse(events_to_byte_stream(guarded()), media_type="text/event-stream")


@router.post("/api/chats/{chat_id}/messages")
async def submit_chat_message(
    chat_id: str,
    payload: SubmitMessageRequest,
    data_sources: DataSourceRegistry = Depends(get_data_sources),
    chats: ChatRegistry = Depends(get_chats),
):
    session = await _session_for(chat_id, payload.database_id, data_sources, chats)
    return _chat_stream(session.send_message(payload.message))


@router.post("/api/chats/{chat_id}/regenerate")
async def regenerate_chat_message(
    chat_id: str,
    payload: RegenerateRequest,
    data_sources: DataSourceRegistry = Depends(get_data_sources),
    chats: ChatRegistry = Depends(get_chats),
):
    session = await _session_for(chat_id, payload.database_id, data_sources, chats)
    if payload.message_id is not None and all(m.id != payload.message_id for m in session.messages):
        raise HTTPException(status_code=404, detail="Message not found")
    return _chat_stream(session.regenerate(payload.message_id))


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    supervisor: Optional[OllamaSupervisor] = None,
    local_llm: Optional[LocalLLMClient] = None,
    remote: Optional[RemoteAssistantClient] = None,
    settings_store: Optional[ChatSettingsStore] = None,
    data_sources: Optional[DataSourceRegistry] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        try:
            yield
        finally:
            await app.state.supervisor.aclose()
            await app.state.local_llm.close()
            await app.state.remote.close()

    app = FastAPI(title="HybridAI Orchestrator", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    if supervisor is None:
        supervisor = OllamaSupervisor(
            host=settings.ollama_host,
            port=settings.ollama_port,
            binary=settings.ollama_binary,
            health_timeout_s=settings.health_timeout_s,
            list_timeout_s=settings.list_timeout_s,
            start_poll_interval_s=settings.start_poll_interval_s,
            start_max_attempts=settings.start_max_attempts,
            shutdown_grace_s=settings.shutdown_grace_s,
        )
        supervisor.installer = OllamaInstaller(
            check_installed=supervisor.check_installed,
            settle_delay_s=settings.install_settle_delay_s,
            retry_delay_s=settings.install_retry_delay_s,
        )
    app.state.supervisor = supervisor
    app.state.local_llm = local_llm or LocalLLMClient(f"{settings.ollama_base_url}/v1")
    app.state.remote = remote or RemoteAssistantClient(settings.remote_api_url, settings.remote_api_token)
    app.state.settings_store = settings_store or ChatSettingsStore(Path(settings.ai_settings_path))
    if data_sources is None:
        data_sources = DataSourceRegistry()
        for database_id, source_cfg in settings.data_sources.items():
            if source_cfg.type != "sqlite":
                logger.warning("Skipping data source %s: unsupported type %s", database_id, source_cfg.type)
                continue
            data_sources.register(database_id, source_cfg.type, SQLiteDataSource(source_cfg.path))
    app.state.data_sources = data_sources
    app.state.config_path = config_path or CONFIG_PATH

    def router_factory(database: DatabaseRef) -> ChatTransportRouter:
        current = app.state.settings
        return ChatTransportRouter(
            database=database,
            store=app.state.db,
            settings_store=app.state.settings_store,
            supervisor=app.state.supervisor,
            local_llm=app.state.local_llm,
            remote=app.state.remote,
            local_attempt_timeout_s=current.local_attempt_timeout_s,
            max_tool_rounds=current.max_tool_rounds,
        )

    app.state.chats = ChatRegistry(
        store=app.state.db,
        router_factory=router_factory,
        max_auto_steps=settings.max_auto_steps,
    )

    app.add_exception_handler(HybridAIError, hybridai_error_handler)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import uvicorn

    settings = app.state.settings
    try:
        uvicorn.run("hybridai.main:app", host=settings.host, port=settings.port)
    except KeyboardInterrupt:
        pass
