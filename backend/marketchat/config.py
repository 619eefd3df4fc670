"""Marketchat application configuration.

Loads settings from two YAML files:
  * marketchat.settings.yaml  : non-secret configuration
  * marketchat.secrets.yaml   : secrets (never committed)

Both files are optional. Missing files fall back to the defaults declared
on the pydantic models below, which match the recommended timings for the
messaging protocol (30s heartbeat, 45s presence TTL, 5s fallback poll).
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("marketchat.settings.yaml")
SECRETS_FILE  = Path("marketchat.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"
    algorithm:  str = "HS256"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 8000
    reload:          bool = False
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: Literal["debug", "info", "warning", "error"] = "info"

    @field_validator("level", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


class StorageSettings(BaseModel):
    """DuckDB file locations. Relative paths resolve against the settings file."""
    conversations_db_path: str = "conversations.duckdb"
    users_db_path:         str = "users.duckdb"


class MessagingSettings(BaseModel):
    max_text_length: int = Field(default=4000, ge=1)
    # REST publishes the stored message itself; the socket send_message
    # event is then only an advisory trigger.
    publish_on_write: bool = True


class PresenceSettings(BaseModel):
    ttl_seconds:                float = Field(default=45.0, gt=0)
    heartbeat_interval_seconds: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def _ttl_covers_heartbeat(self) -> "PresenceSettings":
        if self.ttl_seconds <= self.heartbeat_interval_seconds:
            logger.warning(
                "presence.ttl_seconds (%s) <= heartbeat interval (%s); "
                "users will flicker offline between beats",
                self.ttl_seconds,
                self.heartbeat_interval_seconds,
            )
        return self


class RealtimeSettings(BaseModel):
    dedup_cache_size: int = Field(default=10000, ge=1)
    max_connections:  int = Field(default=0, ge=0)  # 0 = no limit


class ClientSettings(BaseModel):
    base_url:                  str   = "http://localhost:8000"
    poll_interval_seconds:     float = Field(default=5.0, gt=0)
    self_sent_ttl_seconds:     float = Field(default=5.0, gt=0)
    request_timeout_seconds:   float = Field(default=10.0, gt=0)
    reconnect_backoff_initial: float = Field(default=1.0, gt=0)
    reconnect_backoff_max:     float = Field(default=30.0, gt=0)


class AppSettings(BaseModel):
    server:    ServerSettings    = Field(default_factory=ServerSettings)
    logging:   LoggingSettings   = Field(default_factory=LoggingSettings)
    storage:   StorageSettings   = Field(default_factory=StorageSettings)
    messaging: MessagingSettings = Field(default_factory=MessagingSettings)
    presence:  PresenceSettings  = Field(default_factory=PresenceSettings)
    realtime:  RealtimeSettings  = Field(default_factory=RealtimeSettings)
    client:    ClientSettings    = Field(default_factory=ClientSettings)
    secrets:   Secrets           = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------


def _resolve_storage_paths(settings: AppSettings, settings_path: Path) -> None:
    """Anchor relative DuckDB paths to the directory holding the settings file.

    ``:memory:`` and absolute paths are left untouched.
    """
    base = settings_path.resolve().parent
    storage = settings.storage
    for field in ("conversations_db_path", "users_db_path"):
        value = getattr(storage, field)
        if value == ":memory:" or Path(value).is_absolute():
            continue
        setattr(storage, field, str(base / value))


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    secrets_path = Path(secrets_path) if secrets_path else settings_path.with_name(SECRETS_FILE.name)

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    if settings_path.exists():
        _resolve_storage_paths(app_settings, settings_path)

    logger.info(
        "Settings loaded (server=%s:%s, presence.ttl=%ss, client.poll=%ss)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.presence.ttl_seconds,
        app_settings.client.poll_interval_seconds,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppSettings]) -> None:
    """Replace (or clear, with ``None``) the process-wide settings."""
    global _config
    _config = config


def reset_config() -> None:
    """Drop the cached settings so the next ``get_config()`` reloads them."""
    set_config(None)
