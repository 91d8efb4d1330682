"""Configuration management using Pydantic settings with optional file persistence."""

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Paths ---

APP_NAME = "agent-task-orchestrator"


def get_config_dir() -> Path:
    """Get the configuration directory (e.g. ~/.config/agent-task-orchestrator).

    AGENT_CONFIG_DIR overrides the location, which keeps tests and sandboxes
    out of the user's home directory.
    """
    override = os.environ.get("AGENT_CONFIG_DIR")
    if override:
        path = Path(override).expanduser()
    else:
        if os.name == "nt":
            base = Path(os.environ.get("APPDATA", Path.home() / ".config")).expanduser()
        else:
            base = Path("~/.config").expanduser()
        path = base / APP_NAME

    path.mkdir(parents=True, exist_ok=True)
    return path


def get_config_file() -> Path:
    return get_config_dir() / "config.json"


def load_config_file() -> dict[str, Any]:
    """Load settings from the JSON config file if it exists."""
    config_file = get_config_file()
    if not config_file.exists():
        return {}

    try:
        text = config_file.read_text(encoding="utf-8")
        if not text.strip():
            return {}
        data = json.loads(text)
    except (OSError, json.JSONDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def save_config_file(config_data: dict[str, Any]) -> Path:
    """Save settings to the JSON config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config_data, indent=2), encoding="utf-8")
    return config_file


StoreBackend = Literal["sqlite", "memory"]


class OrchestratorSettings(BaseSettings):
    """Step execution behavior."""

    model_config = SettingsConfigDict(env_prefix="AGENT_ORCHESTRATOR_")

    retry_delay_seconds: float = Field(default=0.0, ge=0.0, description="Pause between retries of a failed step")
    step_timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0.0,
        description="Fail a step that runs longer than this. Unset means steps may run indefinitely.",
    )
    default_max_retries: int = Field(default=0, ge=0, description="Retries for template steps that do not declare max_retries")


class StoreSettings(BaseSettings):
    """Task store configuration."""

    model_config = SettingsConfigDict(env_prefix="AGENT_STORE_")

    backend: StoreBackend = Field(default="sqlite")
    db_path: Optional[str] = Field(default=None, description="SQLite database path (default: <config dir>/agent_tasks.db)")
    write_retries: int = Field(default=3, ge=0, description="Retries for transient write failures")
    retry_backoff_seconds: float = Field(default=0.05, ge=0.0)
    retention_days: int = Field(default=90, ge=1, description="Age after which terminal task results are cleaned up")

    def get_db_path(self) -> Path:
        if self.db_path:
            return Path(self.db_path).expanduser()
        return get_config_dir() / "agent_tasks.db"


class TelemetrySettings(BaseSettings):
    """Telemetry aggregation configuration."""

    model_config = SettingsConfigDict(env_prefix="AGENT_TELEMETRY_")

    default_period_hours: int = Field(default=720, gt=0)
    top_n: int = Field(default=8, gt=0, description="Length of slowest/most-failed action rankings")


class TemplateSettings(BaseSettings):
    """Task template configuration."""

    model_config = SettingsConfigDict(env_prefix="AGENT_TEMPLATES_")

    directory: Optional[str] = Field(default=None, description="Directory with extra task template YAML files")


class ServerSettings(BaseSettings):
    """Process-level configuration."""

    model_config = SettingsConfigDict(env_prefix="AGENT_SERVER_")

    logging_level: str = Field(default="INFO")


class AppSettings(BaseSettings):
    """Root application settings.

    Priority: Environment Variables > Config File > Defaults
    """

    model_config = SettingsConfigDict(env_prefix="AGENT_", extra="ignore")

    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)
    templates: TemplateSettings = Field(default_factory=TemplateSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    def save(self) -> Path:
        """Save current configuration to file."""
        data = self.model_dump(mode="json", exclude_none=True)
        return save_config_file(data)


def _load_settings() -> AppSettings:
    """Load settings with file config as base, env vars overlay."""
    file_data = load_config_file()
    # Env vars are read by the nested sections themselves, so file values
    # only fill in what the environment leaves unset.
    sections: dict[str, Any] = {}
    for name, section_cls in (
        ("orchestrator", OrchestratorSettings),
        ("store", StoreSettings),
        ("telemetry", TelemetrySettings),
        ("templates", TemplateSettings),
        ("server", ServerSettings),
    ):
        file_section = file_data.get(name) or {}
        env_section = section_cls().model_dump(exclude_unset=True)
        sections[name] = section_cls(**{**file_section, **env_section})
    return AppSettings(**sections)


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return _load_settings()
