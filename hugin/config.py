import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

from .schemas import ProcessorTier

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "HUGIN_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_KEYS = ("openrouter_api_key", "parallel_api_key")

logger = logging.getLogger("uvicorn.error")

# Ordered compose fallbacks: DeepSeek first, then OpenAI, then Gemini.
DEFAULT_COMPOSE_MODELS = [
    "tngtech/deepseek-r1t2-chimera:free",
    "tngtech/deepseek-r1t-chimera:free",
    "deepseek/deepseek-chat-v3.1:free",
    "deepseek/deepseek-chat-v3-0324:free",
    "openai/gpt-5-mini",
    "google/gemini-2.5-flash",
]

# Heuristic long-end queue estimates per processor tier. Not derived from
# measured upstream latency; recalibrate against the real distribution.
DEFAULT_STUCK_ESTIMATES = {"lite": 90, "base": 120, "core": 120, "pro": 180, "ultra": 240}


class AppSettings(BaseModel):
    openrouter_api_key: Optional[str] = None
    openrouter_url: str = "https://openrouter.ai/api/v1/chat/completions"
    compose_models: List[str] = Field(default_factory=lambda: list(DEFAULT_COMPOSE_MODELS))
    compose_timeout_s: float = 40.0
    compose_temperature: float = 0.2
    site_url: Optional[str] = None
    app_title: str = "Hugin Compose"

    parallel_api_key: Optional[str] = None
    parallel_base_url: str = "https://api.parallel.ai"
    create_timeout_s: float = 20.0
    default_processor: ProcessorTier = "pro"
    default_wait_s: int = 25
    max_wait_s: int = 55
    status_probe_timeout_s: float = 8.0
    result_fetch_floor_s: float = 2.0
    result_fetch_margin_s: float = 2.0
    stuck_grace_s: int = 10
    stuck_estimates: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_STUCK_ESTIMATES))

    host: str = "0.0.0.0"
    port: int = 8000

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_KEYS:
            if data.get(key):
                data[key] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _split_models(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "openrouter_api_key": os.getenv("OPENROUTER_API_KEY"),
        "openrouter_url": os.getenv("OPENROUTER_URL"),
        "compose_models": os.getenv("COMPOSE_MODELS"),
        "compose_timeout_s": os.getenv("COMPOSE_TIMEOUT_S"),
        "create_timeout_s": os.getenv("CREATE_TIMEOUT_S"),
        "site_url": os.getenv("NEXTAUTH_URL") or os.getenv("SITE_URL"),
        "parallel_api_key": os.getenv("PARALLEL_API_KEY"),
        "parallel_base_url": os.getenv("PARALLEL_BASE_URL"),
        "default_processor": os.getenv("DEFAULT_PROCESSOR"),
        "default_wait_s": os.getenv("DEFAULT_WAIT_S"),
        "max_wait_s": os.getenv("MAX_WAIT_S"),
        "status_probe_timeout_s": os.getenv("STATUS_PROBE_TIMEOUT_S"),
        "stuck_grace_s": os.getenv("STUCK_GRACE_S"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "compose_models" in cleaned:
        cleaned["compose_models"] = _split_models(cleaned["compose_models"])
    for key in ("compose_timeout_s", "create_timeout_s", "status_probe_timeout_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    for key in ("default_wait_s", "max_wait_s", "stuck_grace_s", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _merge_stuck_estimates(merged: Dict[str, Any]) -> None:
    """Fill tiers missing from a partial ``stuck_estimates`` override."""
    override = merged.get("stuck_estimates")
    if not isinstance(override, dict):
        return
    merged["stuck_estimates"] = {**DEFAULT_STUCK_ESTIMATES, **override}


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable config file %s: %s", path, exc)
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    # Secrets normally live in the environment only.
    for key in SECRET_KEYS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    _merge_stuck_estimates(merged)
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
