import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

CONFIG_FILENAME = "plans.json"
ENV_OVERRIDE_KEY = "PLANGATE_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

DEFAULT_STALE_AFTER_DAYS = 30
DEFAULT_EXECUTOR_TIMEOUT_MINUTES = 30

logger = logging.getLogger(__name__)


class PlannerSettings(BaseModel):
    project_root: str = "."
    # informational: proposals older than this are reported as stale
    stale_after_days: float = Field(default=DEFAULT_STALE_AFTER_DAYS, gt=0)
    executor_timeout_minutes: float = Field(default=DEFAULT_EXECUTOR_TIMEOUT_MINUTES, gt=0)
    # not read here; exposed via /settings for the external command-safety classifier
    guarded_tools: List[str] = Field(default_factory=list)
    available_tools: List[str] = Field(default_factory=list)
    host: str = "127.0.0.1"
    port: int = 8000

    def project_path(self) -> Path:
        return Path(self.project_root).resolve()

    def to_safe_dict(self) -> dict:
        return self.model_dump()


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "project_root": os.getenv("PLANGATE_PROJECT_ROOT"),
        "stale_after_days": os.getenv("PLANGATE_STALE_AFTER_DAYS"),
        "executor_timeout_minutes": os.getenv("PLANGATE_EXECUTOR_TIMEOUT_MINUTES"),
        "guarded_tools": os.getenv("PLANGATE_GUARDED_TOOLS"),
        "available_tools": os.getenv("PLANGATE_AVAILABLE_TOOLS"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "stale_after_days" in cleaned:
        cleaned["stale_after_days"] = float(cleaned["stale_after_days"])
    if "executor_timeout_minutes" in cleaned:
        cleaned["executor_timeout_minutes"] = float(cleaned["executor_timeout_minutes"])
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    for key in ("guarded_tools", "available_tools"):
        if key in cleaned:
            cleaned[key] = [item.strip() for item in cleaned[key].split(",") if item.strip()]
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def default_config_path(project_root: Optional[Path] = None) -> Path:
    return (project_root or Path(".")) / CONFIG_FILENAME


def load_settings(config_path: Optional[Path] = None) -> PlannerSettings:
    env_data = _load_from_env()
    if config_path is None:
        root = Path(env_data.get("project_root") or ".")
        config_path = default_config_path(root)
    file_data: Dict[str, Any] = {}
    if config_path.exists():
        try:
            file_data = json.loads(config_path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable settings file %s: %s", config_path, exc)
            file_data = {}
        if not isinstance(file_data, dict):
            logger.warning("Ignoring settings file %s: expected a JSON object", config_path)
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    if "project_root" not in merged:
        merged["project_root"] = str(config_path.parent)
    return PlannerSettings(**merged)


def save_settings(settings: PlannerSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or default_config_path(settings.project_path())
    path.write_text(settings.model_dump_json(indent=2))
