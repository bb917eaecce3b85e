"""Chatline application configuration.

Loads settings from two YAML files:
  * chatline.settings.yaml: non-secret configuration
  * chatline.secrets.yaml: secrets (never committed)

Either path can be overridden with the CHATLINE_SETTINGS / CHATLINE_SECRETS
environment variables. Relative storage paths are resolved against the
directory that holds the settings file.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chatline.settings.yaml")
SECRETS_FILE  = Path("chatline.secrets.yaml")

# Hard ceiling for uploaded attachments: 10 MiB
DEFAULT_MAX_FILE_SIZE_BYTES = 10 * 1024 * 1024


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


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str = "0.0.0.0"
    port:            int = 5000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class StorageSettings(BaseModel):
    """Where messages, blob metadata and blob bytes live on disk."""
    data_dir:    str = "./data"
    messages_db: str = "messages.duckdb"
    blobs_db:    str = "blobs.duckdb"
    upload_dir:  str = "uploads"

    def messages_db_path(self) -> str:
        return _under(self.data_dir, self.messages_db)

    def blobs_db_path(self) -> str:
        return _under(self.data_dir, self.blobs_db)

    def upload_path(self) -> str:
        return _under(self.data_dir, self.upload_dir)


class AuthSettings(BaseModel):
    algorithm:            str = "HS256"
    header_name:          str = "x-auth"
    query_param:          str = "token"
    token_expire_minutes: int = 60 * 24


class HistorySettings(BaseModel):
    default_limit: int = 50
    max_limit:     int = 100

    @field_validator("default_limit", "max_limit")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("history limits must be >= 1")
        return value


class UploadSettings(BaseModel):
    max_file_size_bytes: int = DEFAULT_MAX_FILE_SIZE_BYTES


class AppConfig(BaseModel):
    server:   ServerSettings  = Field(default_factory=ServerSettings)
    logging:  LoggingSettings = Field(default_factory=LoggingSettings)
    storage:  StorageSettings = Field(default_factory=StorageSettings)
    auth:     AuthSettings    = Field(default_factory=AuthSettings)
    history:  HistorySettings = Field(default_factory=HistorySettings)
    uploads:  UploadSettings  = Field(default_factory=UploadSettings)
    secrets:  Secrets         = Field(default_factory=Secrets)


def _under(base: str, name: str) -> str:
    path = Path(name)
    if path.is_absolute() or name == ":memory:":
        return name
    return str(Path(base) / path)


def _resolve_data_dir(config: AppConfig, settings_path: Path) -> None:
    """Anchor a relative data_dir at the settings file's directory."""
    data_dir = Path(config.storage.data_dir)
    if not data_dir.is_absolute():
        config.storage.data_dir = str(settings_path.resolve().parent / data_dir)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path or os.environ.get("CHATLINE_SETTINGS", SETTINGS_FILE))
    secrets_path  = Path(secrets_path or os.environ.get("CHATLINE_SECRETS", SECRETS_FILE))

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    _resolve_data_dir(config, settings_path)
    logger.info(
        "Settings loaded (server=%s:%s, data_dir=%s)",
        config.server.host,
        config.server.port,
        config.storage.data_dir,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace (or clear) the cached configuration."""
    global _config
    _config = config
