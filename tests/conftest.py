from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from hybridai.config import AppSettings
from hybridai.datasource import DataSourceRegistry
from hybridai.main import create_app
from hybridai.settings_store import ChatSettingsStore
from tests.fakes import FakeDataSource, FakeLocalLLM, FakeRemote, FakeSupervisor


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        ollama_host="127.0.0.1",
        ollama_port=11434,
        remote_api_url="http://remote.test/ai/ask",
        remote_api_token=None,
        database_path=str(tmp_path / "test.db"),
        ai_settings_path=str(tmp_path / "ai-settings.json"),
        local_attempt_timeout_s=5.0,
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        supervisor: FakeSupervisor | None = None,
        local_llm: FakeLocalLLM | None = None,
        remote: FakeRemote | None = None,
        data_source: FakeDataSource | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        supervisor = supervisor or FakeSupervisor()
        local_llm = local_llm or FakeLocalLLM()
        remote = remote or FakeRemote()
        registry = DataSourceRegistry()
        registry.register("db-1", "postgres", data_source or FakeDataSource())
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            supervisor=supervisor,
            local_llm=local_llm,
            remote=remote,
            settings_store=ChatSettingsStore(Path(settings.ai_settings_path)),
            data_sources=registry,
            config_path=cfg_path,
        )
        return app, cfg_path, supervisor, remote

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, supervisor, remote = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_supervisor = supervisor  # type: ignore[attr-defined]
            http_client.fake_remote = remote  # type: ignore[attr-defined]
            yield http_client
