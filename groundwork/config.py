import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "GROUNDWORK_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = ("github_token", "browser_api_token", "docs_mcp_token")


class EndpointConfig(BaseModel):
    base_url: str
    model_id: str

    model_config = {"protected_namespaces": ()}


def _default_endpoint() -> EndpointConfig:
    return EndpointConfig(base_url="http://127.0.0.1:1234/v1", model_id="qwen/qwen3-8b")


class AppSettings(BaseModel):
    # Model endpoints (OpenAI-compatible)
    model_base_url: str = "http://127.0.0.1:1234/v1"
    max_output_tokens: Optional[int] = None
    clarify_endpoint: EndpointConfig = Field(default_factory=_default_endpoint)
    planner_endpoint: EndpointConfig = Field(default_factory=_default_endpoint)
    answer_endpoint: EndpointConfig = Field(default_factory=_default_endpoint)
    embedding_model: str = "text-embedding-nomic-embed-text-v1.5"

    # Knowledge retrieval
    qdrant_url: Optional[str] = "http://127.0.0.1:6333"
    qdrant_api_key: Optional[str] = None
    qdrant_collection: str = "curated_knowledge"
    embedding_dim: int = 768
    retrieval_top_k: int = Field(default=5, ge=1)

    # Sessions
    transcript_max_messages: int = Field(default=50, ge=2)
    max_clarification_rounds: int = Field(default=3, ge=0)
    emit_rag_result: bool = False

    # Capability providers
    github_api_base: str = "https://api.github.com"
    github_token: Optional[str] = None
    sandbox_base_url: str = "http://127.0.0.1:8787"
    browser_account_id: Optional[str] = None
    browser_api_token: Optional[str] = None
    browser_api_base: str = "https://api.cloudflare.com/client/v4"
    docs_mcp_base_url: Optional[str] = None
    docs_mcp_token: Optional[str] = None

    database_path: str = "groundwork.db"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "model_base_url": os.getenv("MODEL_BASE_URL"),
        "max_output_tokens": os.getenv("MAX_OUTPUT_TOKENS"),
        "model_id": os.getenv("MODEL_ID"),
        "embedding_model": os.getenv("EMBEDDING_MODEL"),
        "qdrant_url": os.getenv("QDRANT_URL"),
        "qdrant_api_key": os.getenv("QDRANT_API_KEY"),
        "qdrant_collection": os.getenv("QDRANT_COLLECTION"),
        "embedding_dim": os.getenv("EMBEDDING_DIM"),
        "retrieval_top_k": os.getenv("RETRIEVAL_TOP_K"),
        "transcript_max_messages": os.getenv("TRANSCRIPT_MAX_MESSAGES"),
        "max_clarification_rounds": os.getenv("MAX_CLARIFICATION_ROUNDS"),
        "emit_rag_result": os.getenv("EMIT_RAG_RESULT"),
        "github_api_base": os.getenv("GITHUB_API_BASE"),
        "github_token": os.getenv("GITHUB_TOKEN"),
        "sandbox_base_url": os.getenv("SANDBOX_BASE_URL"),
        "browser_account_id": os.getenv("BROWSER_ACCOUNT_ID"),
        "browser_api_token": os.getenv("BROWSER_API_TOKEN"),
        "browser_api_base": os.getenv("BROWSER_API_BASE"),
        "docs_mcp_base_url": os.getenv("DOCS_MCP_BASE_URL"),
        "docs_mcp_token": os.getenv("DOCS_MCP_TOKEN"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in (
        "max_output_tokens",
        "embedding_dim",
        "retrieval_top_k",
        "transcript_max_messages",
        "max_clarification_rounds",
        "port",
    ):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    if "emit_rag_result" in cleaned:
        cleaned["emit_rag_result"] = str(cleaned["emit_rag_result"]).lower() in ENV_OVERRIDE_TRUE
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _apply_model_overrides(merged: Dict[str, Any]) -> None:
    """Point every model role at MODEL_BASE_URL / MODEL_ID when no per-role endpoint is configured."""
    model_id = merged.pop("model_id", None)
    base_url = merged.get("model_base_url")
    if not model_id and not base_url:
        return
    defaults = _default_endpoint()
    for key in ("clarify_endpoint", "planner_endpoint", "answer_endpoint"):
        if isinstance(merged.get(key), dict):
            continue
        merged[key] = {
            "base_url": base_url or defaults.base_url,
            "model_id": model_id or defaults.model_id,
        }


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
    _apply_model_overrides(merged)
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
