import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "AGENTGATE_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = ("anthropic_api_key", "tavily_api_key", "webhook_secret")

DEFAULT_SOUL = """# Agentgate

You are a helpful personal AI assistant.

## Guidelines
- Be concise and direct
- Use markdown formatting when helpful
- If you don't know something, say so
- Be friendly but professional
"""


class ModelTiers(BaseModel):
    light: str = "claude-haiku-4-5-20251001"
    standard: str = "claude-sonnet-4-5-20250929"

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    anthropic_api_key: Optional[str] = None
    anthropic_base_url: str = "https://api.anthropic.com/v1"
    # Used when a caller does not name a model for a request.
    anthropic_model: Optional[str] = None
    max_tokens: int = 4096
    models: ModelTiers = Field(default_factory=ModelTiers)

    # Turn bounds
    max_tool_iterations: int = 10
    wall_clock_timeout_s: float = 120.0
    pacing_delay_s: float = 3.0
    retry_delays_s: List[float] = Field(default_factory=lambda: [2.0, 5.0, 15.0])
    background_retry_delays_s: List[float] = Field(default_factory=lambda: [5.0, 15.0, 30.0, 60.0])

    # Confirmation gate / concurrency
    pending_action_ttl_s: float = 600.0
    lock_ttl_s: float = 30.0

    # History window
    max_history_messages: int = 50
    max_context_chars: int = 100_000
    recent_context_messages: int = 6

    tavily_api_key: Optional[str] = None
    database_path: str = "agentgate.db"
    host: str = "0.0.0.0"
    port: int = 8000
    webhook_secret: Optional[str] = None
    # Empty means every sender is allowed.
    allowed_user_ids: List[str] = Field(default_factory=list)
    soul: str = DEFAULT_SOUL

    def is_user_allowed(self, user_id: Optional[str]) -> bool:
        if not self.allowed_user_ids:
            return True
        return user_id is not None and str(user_id) in self.allowed_user_ids

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
        "anthropic_api_key": os.getenv("ANTHROPIC_API_KEY"),
        "anthropic_base_url": os.getenv("ANTHROPIC_BASE_URL"),
        "anthropic_model": os.getenv("ANTHROPIC_MODEL"),
        "max_tokens": os.getenv("ANTHROPIC_MAX_TOKENS"),
        "max_tool_iterations": os.getenv("MAX_TOOL_ITERATIONS"),
        "wall_clock_timeout_s": os.getenv("WALL_CLOCK_TIMEOUT_S"),
        "pacing_delay_s": os.getenv("PACING_DELAY_S"),
        "pending_action_ttl_s": os.getenv("PENDING_ACTION_TTL_S"),
        "lock_ttl_s": os.getenv("LOCK_TTL_S"),
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "webhook_secret": os.getenv("WEBHOOK_SECRET"),
        "allowed_user_ids": os.getenv("ALLOWED_USER_IDS"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("max_tokens", "max_tool_iterations", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("wall_clock_timeout_s", "pacing_delay_s", "pending_action_ttl_s", "lock_ttl_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    if "allowed_user_ids" in cleaned:
        ids = [part.strip() for part in cleaned["allowed_user_ids"].split(",") if part.strip()]
        if ids:
            cleaned["allowed_user_ids"] = ids
        else:
            del cleaned["allowed_user_ids"]
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
    # Secrets left blank in config.json fall back to the environment.
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    # An allowlist set in the environment always takes precedence.
    if env_data.get("allowed_user_ids"):
        merged["allowed_user_ids"] = env_data["allowed_user_ids"]
    if "models" not in merged:
        merged["models"] = ModelTiers().model_dump()
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
