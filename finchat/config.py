import json
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "FINCHAT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = ("openai_api_key", "gateway_api_key", "valyu_api_key", "sandbox_api_key")
# Settings a running self-hosted server may change over HTTP; everything else is fixed at startup.
MUTABLE_FIELDS = (
    "openai_model",
    "gateway_model",
    "default_local_provider",
    "local_probe_timeout_s",
    "thinking_models",
    "preferred_models",
    "embedding_markers",
    "chat_max_rounds",
    "external_max_rounds",
    "max_parallel_tools",
    "chat_timeout_s",
    "external_timeout_s",
    "stream_buffer_size",
    "max_tokens",
    "valyu_max_results",
)

AppMode = Literal["self-hosted", "valyu"]
LocalProvider = Literal["ollama", "lmstudio"]

THINKING_MODELS = [
    "deepseek-r1",
    "deepseek-v3",
    "deepseek-v3.1",
    "qwen3",
    "qwq",
    "phi4-reasoning",
    "phi-4-reasoning",
    "cogito",
]
PREFERRED_MODELS = [
    "deepseek-r1",
    "qwen3",
    "phi4-reasoning",
    "cogito",
    "llama3.1",
    "gemma3:4b",
    "gemma3",
    "llama3.2",
    "llama3",
    "qwen2.5",
    "codestral",
]


class AppSettings(BaseModel):
    app_mode: AppMode = "valyu"

    # Hosted model (paid credential) and gateway alias fallback
    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-5.2-2025-12-11"
    gateway_api_key: Optional[str] = None
    gateway_base_url: str = "https://ai-gateway.vercel.sh/v1"
    gateway_model: str = "openai/gpt-5.2-2025-12-11"

    # Local inference
    ollama_base_url: str = "http://localhost:11434"
    lmstudio_base_url: str = "http://localhost:1234"
    default_local_provider: LocalProvider = "ollama"
    local_probe_timeout_s: float = 3.0
    thinking_models: List[str] = Field(default_factory=lambda: list(THINKING_MODELS))
    preferred_models: List[str] = Field(default_factory=lambda: list(PREFERRED_MODELS))
    embedding_markers: List[str] = Field(default_factory=lambda: ["embed", "embedding", "nomic"])

    # Loop limits
    chat_max_rounds: int = 10
    external_max_rounds: int = 10
    max_parallel_tools: int = 5
    chat_timeout_s: float = 800.0
    external_timeout_s: float = 300.0
    stream_buffer_size: int = 64
    max_tokens: int = 4096

    # Tool back-ends
    valyu_api_key: Optional[str] = None
    valyu_base_url: str = "https://api.valyu.ai/v1"
    valyu_max_results: int = 8
    sandbox_api_url: Optional[str] = None
    sandbox_api_key: Optional[str] = None

    database_path: str = "finchat.db"
    host: str = "0.0.0.0"
    port: int = 3000

    model_config = {"protected_namespaces": ()}

    @property
    def self_hosted(self) -> bool:
        return self.app_mode == "self-hosted"

    def local_base_url(self, provider: str) -> str:
        if provider == "lmstudio":
            return self.lmstudio_base_url.rstrip("/")
        return self.ollama_base_url.rstrip("/")

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "********"
        return data


class RequestOverrides(BaseModel):
    """Per-request preferences carried in headers (or body fields)."""

    local_enabled: bool = True
    local_provider: LocalProvider = "ollama"
    preferred_model: Optional[str] = None
    response_format: Optional[str] = None

    model_config = {"frozen": True, "protected_namespaces": ()}

    @classmethod
    def from_headers(cls, headers: Any, settings: Optional[AppSettings] = None) -> "RequestOverrides":
        default_provider = settings.default_local_provider if settings else "ollama"
        provider = str(headers.get("x-local-provider") or default_provider).strip().lower()
        if provider not in ("ollama", "lmstudio"):
            provider = default_provider
        preferred = (headers.get("x-ollama-model") or "").strip() or None
        fmt = (headers.get("x-response-format") or "").strip().lower() or None
        return cls(
            local_enabled=str(headers.get("x-ollama-enabled", "")).strip().lower() != "false",
            local_provider=provider,
            preferred_model=preferred,
            response_format=fmt,
        )


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "app_mode": os.getenv("APP_MODE") or os.getenv("NEXT_PUBLIC_APP_MODE"),
        "openai_api_key": os.getenv("OPENAI_API_KEY"),
        "openai_base_url": os.getenv("OPENAI_BASE_URL"),
        "openai_model": os.getenv("OPENAI_MODEL"),
        "gateway_api_key": os.getenv("AI_GATEWAY_API_KEY"),
        "gateway_base_url": os.getenv("AI_GATEWAY_BASE_URL"),
        "gateway_model": os.getenv("AI_GATEWAY_MODEL"),
        "ollama_base_url": os.getenv("OLLAMA_BASE_URL"),
        "lmstudio_base_url": os.getenv("LMSTUDIO_BASE_URL"),
        "local_probe_timeout_s": os.getenv("LOCAL_PROBE_TIMEOUT_S"),
        "chat_max_rounds": os.getenv("CHAT_MAX_ROUNDS"),
        "external_max_rounds": os.getenv("EXTERNAL_MAX_ROUNDS"),
        "chat_timeout_s": os.getenv("CHAT_TIMEOUT_S"),
        "external_timeout_s": os.getenv("EXTERNAL_TIMEOUT_S"),
        "valyu_api_key": os.getenv("VALYU_API_KEY"),
        "valyu_base_url": os.getenv("VALYU_BASE_URL"),
        "sandbox_api_url": os.getenv("SANDBOX_API_URL"),
        "sandbox_api_key": os.getenv("SANDBOX_API_KEY") or os.getenv("DAYTONA_API_KEY"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("chat_max_rounds", "external_max_rounds", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("local_probe_timeout_s", "chat_timeout_s", "external_timeout_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
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
    # Secrets usually live only in the environment.
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
