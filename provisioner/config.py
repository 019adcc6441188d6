import json
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "PROVISIONER_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class AppSettings(BaseModel):
    provider_base_url: str = "https://api.clay.com/v3"
    app_origin: str = "https://app.clay.com"
    workspace_id: Optional[str] = None
    auth_scheme: Literal["cookie", "bearer"] = "cookie"
    session_cookie: Optional[str] = None
    database_path: str = "provisioner.db"
    host: str = "0.0.0.0"
    port: int = 8000

    # Scheduling
    max_parallel: int = 1
    fail_fast: bool = False
    step_timeout_s: Optional[float] = None

    # Per-call timeouts; table creation is synchronous work on the provider side.
    request_timeout_s: float = 30.0
    create_timeout_s: float = 120.0
    populate_timeout_s: float = 30.0

    fallbacks_enabled: bool = True
    default_row_limit: int = 100

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("session_cookie"):
            data["session_cookie"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "provider_base_url": os.getenv("PROVIDER_BASE_URL"),
        "app_origin": os.getenv("PROVIDER_APP_ORIGIN"),
        "workspace_id": os.getenv("PROVIDER_WORKSPACE_ID"),
        "auth_scheme": os.getenv("PROVIDER_AUTH_SCHEME"),
        "session_cookie": os.getenv("PROVIDER_SESSION_COOKIE"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "max_parallel": os.getenv("MAX_PARALLEL"),
        "fail_fast": os.getenv("FAIL_FAST"),
        "step_timeout_s": os.getenv("STEP_TIMEOUT_S"),
        "request_timeout_s": os.getenv("REQUEST_TIMEOUT_S"),
        "create_timeout_s": os.getenv("CREATE_TIMEOUT_S"),
        "populate_timeout_s": os.getenv("POPULATE_TIMEOUT_S"),
        "fallbacks_enabled": os.getenv("FALLBACKS_ENABLED"),
        "default_row_limit": os.getenv("DEFAULT_ROW_LIMIT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("port", "max_parallel", "default_row_limit"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("step_timeout_s", "request_timeout_s", "create_timeout_s", "populate_timeout_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    for key in ("fail_fast", "fallbacks_enabled"):
        if key in cleaned:
            cleaned[key] = str(cleaned[key]).lower() in ENV_OVERRIDE_TRUE
    if "auth_scheme" in cleaned:
        cleaned["auth_scheme"] = str(cleaned["auth_scheme"]).strip().lower()
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
        except ValueError:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    # Secrets are usually only present in the environment.
    if not merged.get("session_cookie") and env_data.get("session_cookie"):
        merged["session_cookie"] = env_data["session_cookie"]
    if merged.get("max_parallel") is not None:
        merged["max_parallel"] = max(1, int(merged["max_parallel"]))
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
