import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "HYBRIDAI_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class DataSourceConfig(BaseModel):
    type: str = "sqlite"
    path: str


class AppSettings(BaseModel):
    # Local inference server (Ollama)
    ollama_host: str = "127.0.0.1"
    ollama_port: int = 11434
    ollama_binary: str = "ollama"
    health_timeout_s: float = 2.0
    list_timeout_s: float = 5.0
    start_poll_interval_s: float = 0.5
    start_max_attempts: int = 20
    shutdown_grace_s: float = 5.0
    install_settle_delay_s: float = 2.0
    install_retry_delay_s: float = 3.0

    # Remote assistant
    remote_api_url: str = "http://127.0.0.1:3000/ai/ask"
    remote_api_token: Optional[str] = None

    # Chat turns
    local_attempt_timeout_s: float = 120.0
    max_tool_rounds: int = 5
    max_auto_steps: int = 5

    database_path: str = "hybridai.db"
    ai_settings_path: str = "ai-settings.json"
    data_sources: Dict[str, DataSourceConfig] = Field(default_factory=dict)
    host: str = "127.0.0.1"
    port: int = 8000

    @property
    def ollama_base_url(self) -> str:
        return f"http://{self.ollama_host}:{self.ollama_port}"

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("remote_api_token"):
            data["remote_api_token"] = "********"
        return data


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "ollama_host": os.getenv("OLLAMA_HOST"),
        "ollama_port": os.getenv("OLLAMA_PORT"),
        "ollama_binary": os.getenv("OLLAMA_BINARY"),
        "remote_api_url": os.getenv("REMOTE_API_URL"),
        "remote_api_token": os.getenv("REMOTE_API_TOKEN"),
        "database_path": os.getenv("DATABASE_PATH"),
        "ai_settings_path": os.getenv("AI_SETTINGS_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "ollama_port" in cleaned:
        cleaned["ollama_port"] = int(cleaned["ollama_port"])
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except (OSError, ValueError):
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    if not merged.get("remote_api_token") and env_data.get("remote_api_token"):
        merged["remote_api_token"] = env_data["remote_api_token"]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
