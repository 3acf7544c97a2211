"""PharmaLink chat backend configuration.

Loads settings from two YAML files:
  * pharmalink.settings.yaml: non-secret configuration
  * pharmalink.secrets.yaml: secrets (never committed)

Both paths can be overridden with the PHARMALINK_SETTINGS_FILE and
PHARMALINK_SECRETS_FILE environment variables.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("pharmalink.settings.yaml")
SECRETS_FILE  = Path("pharmalink.secrets.yaml")


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
    host: str = "0.0.0.0"
    port: int = 3000


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return value.lower()


class DatabaseSettings(BaseModel):
    """DuckDB file backing the message store (":memory:" for tests)."""
    path: str = "pharmalink_chat.duckdb"


class ChatSettings(BaseModel):
    """Realtime chat limits.

    idle_timeout_seconds: connections with no traffic in either direction for
        this long are closed and unregistered.
    max_connections_per_user: simultaneous sockets per user (0 = no limit).
    """
    idle_timeout_seconds:     float = Field(default=300.0, gt=0)
    max_message_length:       int   = Field(default=500, ge=1)
    max_connections_per_user: int   = Field(default=10, ge=0)
    default_page_size:        int   = Field(default=50, ge=1)
    max_page_size:            int   = Field(default=100, ge=1)


class AppSettings(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    chat:     ChatSettings     = Field(default_factory=ChatSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_path = settings_path or Path(
        os.environ.get("PHARMALINK_SETTINGS_FILE", SETTINGS_FILE)
    )
    secrets_path = secrets_path or Path(
        os.environ.get("PHARMALINK_SECRETS_FILE", SECRETS_FILE)
    )

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, database=%s, idle_timeout=%ss)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.database.path,
        app_settings.chat.idle_timeout_seconds,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def set_config(config: AppSettings) -> None:
    """Set (or replace) the process-wide settings."""
    global _config
    _config = config


def reset_config() -> None:
    """Forget cached settings so the next get_config() reloads from disk."""
    global _config
    _config = None
