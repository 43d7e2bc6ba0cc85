from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import BaseModel, Field


DEFAULT_SETTINGS_PATH = os.environ.get("RECURTASK_SETTINGS", "/data/settings.yml")


class AppSettings(BaseModel):
    name: str = "Recurtask"
    # Civil timezone used for recurrence arithmetic and display.
    timezone: str = "UTC"
    host: str = "0.0.0.0"  # nosec B104
    port: int = 8888
    base_url: str = ""


class SecuritySettings(BaseModel):
    jwt_secret: str = "CHANGE_ME_JWT_SECRET"
    token_minutes: int = 60 * 24


class DatabaseSettings(BaseModel):
    path: str = "/data/recurtask.db"


class NotificationSettings(BaseModel):
    # Dispatch loop cadence.
    interval_seconds: float = 60.0

    # When enabled, the server itself polls for every account whose
    # notification permission is granted.
    server_dispatch: bool = False

    # One of: log, webhook, ntfy, gotify
    sink: str = "log"

    webhook_url: str = ""

    ntfy_base_url: str = "https://ntfy.sh"
    ntfy_topic: str = ""
    ntfy_token: str = ""

    gotify_base_url: str = ""
    gotify_token: str = ""
    gotify_priority: int = 5

    # Answer given by the CLI permission platform: undetermined, granted, denied
    permission: str = "undetermined"


class LoggingSettings(BaseModel):
    level: str = "INFO"
    dir: str = "/data/logs"


class Settings(BaseModel):
    app: AppSettings = Field(default_factory=AppSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


_DEFAULT_SETTINGS_YAML = (
    "app:\n  name: 'Recurtask'\n  timezone: 'UTC'\n  host: '0.0.0.0'\n  port: 8888\n"
    "security:\n  jwt_secret: 'CHANGE_ME_JWT_SECRET'\n"
    "database:\n  path: '/data/recurtask.db'\n"
    "notifications:\n  interval_seconds: 60\n  server_dispatch: false\n  sink: 'log'\n"
    "  permission: 'undetermined'\n"
    "logging:\n  level: 'INFO'\n  dir: '/data/logs'\n"
)


def _ensure_settings_file(path: str) -> None:
    p = Path(path)
    if p.exists():
        return

    p.parent.mkdir(parents=True, exist_ok=True)

    # Copy sample settings into place to make first-run behavior predictable.
    sample = Path(__file__).resolve().parent.parent / "settings.sample.yml"
    if sample.exists():
        p.write_text(sample.read_text(encoding="utf-8"), encoding="utf-8")
    else:
        p.write_text(_DEFAULT_SETTINGS_YAML, encoding="utf-8")


def _load_yaml(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError("settings.yml must contain a YAML mapping at the root")
    return data


def load_settings(path: str) -> Settings:
    """Load and validate a settings file, applying environment overrides."""
    _ensure_settings_file(path)
    raw = _load_yaml(path)
    s = Settings.model_validate(raw)

    jwt_secret = os.environ.get("RECURTASK_JWT_SECRET")
    if jwt_secret:
        s.security.jwt_secret = jwt_secret

    base_url_env = os.environ.get("RECURTASK_BASE_URL")
    if base_url_env:
        s.app.base_url = str(base_url_env).strip()

    tz_env = os.environ.get("RECURTASK_TIMEZONE")
    if tz_env:
        s.app.timezone = str(tz_env).strip()

    # Port override is occasionally useful in container orchestration.
    port_env = os.environ.get("PORT") or os.environ.get("RECURTASK_PORT")
    if port_env:
        try:
            s.app.port = int(port_env)
        except ValueError:
            pass

    return s


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings_path = os.environ.get("RECURTASK_SETTINGS", DEFAULT_SETTINGS_PATH)
    return load_settings(settings_path)
