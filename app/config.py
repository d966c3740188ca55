import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "MULTICHAT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = ("azure_api_key", "gemini_api_key")

# Model ids carry their provider as a prefix (azure-, claude-, gemini-).
DEFAULT_MODELS = [
    "gemini-3-flash-preview",
    "gemini-3-pro-preview",
    "gemini-flash-lite-latest",
    "azure-gpt-35-turbo",
    "azure-gpt-4",
    "azure-gpt-4o",
    "azure-gpt-5-mini",
    "azure-text-embedding-ada-002",
    "azure-dall-e-3",
    "claude-sonnet-4-5-20250929",
    "claude-opus-4-5-20251101",
]


class ToolServerConfig(BaseModel):
    id: str
    name: str
    url: str


class WorkflowPacingConfig(BaseModel):
    step_delay_s: float = 0.05
    result_delay_s: float = 3.0
    skip_delay_s: float = 1.5


class AppSettings(BaseModel):
    azure_api_key: Optional[str] = None
    azure_endpoint: Optional[str] = None
    azure_chat_api_version: str = "2023-03-15-preview"
    azure_embedding_api_version: str = "2023-05-15"
    azure_image_api_version: str = "2024-02-01"
    claude_endpoint: Optional[str] = None
    gemini_api_key: Optional[str] = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    default_gemini_model: str = "gemini-3-flash-preview"

    available_models: List[str] = Field(default_factory=lambda: list(DEFAULT_MODELS))
    default_models: List[str] = Field(default_factory=lambda: ["gemini-3-flash-preview"])
    mcp_servers: List[ToolServerConfig] = Field(default_factory=list)
    tool_timeout_s: float = 15.0
    max_tool_loops: int = 5

    web_scraper_endpoint: Optional[str] = None
    search_api_version: str = "2023-11-01"

    database_path: str = "app_data.db"
    default_partition: str = "local"
    host: str = "0.0.0.0"
    port: int = 8000
    poll_interval_s: float = 5.0
    workflow_pacing: WorkflowPacingConfig = Field(default_factory=WorkflowPacingConfig)

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _parse_server_configs(raw: str) -> List[dict]:
    try:
        parsed = json.loads(raw)
    except Exception:
        return []
    if not isinstance(parsed, list):
        return []
    servers = []
    for item in parsed:
        if isinstance(item, dict) and item.get("name") and item.get("url"):
            servers.append({"id": str(item.get("id") or item["name"]), "name": item["name"], "url": item["url"]})
    return servers


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "azure_api_key": os.getenv("AZURE_API_KEY"),
        "azure_endpoint": os.getenv("AZURE_ENDPOINT"),
        "claude_endpoint": os.getenv("CLAUDE_ENDPOINT"),
        "gemini_api_key": os.getenv("GEMINI_API_KEY"),
        "mcp_servers": os.getenv("MCP_SERVER_CONFIGS"),
        "web_scraper_endpoint": os.getenv("WEB_SCRAPER_ENDPOINT"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "poll_interval_s": os.getenv("POLL_INTERVAL_S"),
        "tool_timeout_s": os.getenv("TOOL_TIMEOUT_S"),
    }
    cleaned: Dict[str, Any] = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "mcp_servers" in cleaned:
        cleaned["mcp_servers"] = _parse_server_configs(cleaned["mcp_servers"])
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    if "poll_interval_s" in cleaned:
        cleaned["poll_interval_s"] = float(cleaned["poll_interval_s"])
    if "tool_timeout_s" in cleaned:
        cleaned["tool_timeout_s"] = float(cleaned["tool_timeout_s"])
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
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    default_models = merged.get("default_models") or []
    available = merged.get("available_models") or DEFAULT_MODELS
    merged["default_models"] = [m for m in default_models if m in available] or [available[0]]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
