"""roomsync configuration.

Loads settings from a single YAML file (``roomsync.settings.yaml``) into
pydantic models. A missing file is not an error: every field has a default.

Sections:
  * server      - bind address for the local API
  * logging     - root log level
  * client      - identity of the signed-in user on this device
  * realtime    - backfill size, typing TTL, dedup cache size
  * watermarks  - location of the DuckDB watermark database
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("roomsync.settings.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000


class LoggingSettings(BaseModel):
    level: str = "info"


class ClientSettings(BaseModel):
    """The authenticated user this engine runs for."""
    user_id:      str = "local-user"
    display_name: str = "Me"


class RealtimeSettings(BaseModel):
    backfill_limit:     int   = Field(default=100, ge=1)
    typing_ttl_seconds: float = Field(default=3.0, gt=0)
    dedup_cache_size:   int   = Field(default=10000, ge=1)


class WatermarkSettings(BaseModel):
    db_path: str = "watermarks.duckdb"

    @field_validator("db_path")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("db_path must not be empty")
        return value


class AppConfig(BaseModel):
    server:     ServerSettings    = Field(default_factory=ServerSettings)
    logging:    LoggingSettings   = Field(default_factory=LoggingSettings)
    client:     ClientSettings    = Field(default_factory=ClientSettings)
    realtime:   RealtimeSettings  = Field(default_factory=RealtimeSettings)
    watermarks: WatermarkSettings = Field(default_factory=WatermarkSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def _resolve_db_path(db_path: str, settings_path: Path) -> str:
    """Resolve a relative database path against the settings file directory."""
    if db_path == ":memory:":
        return db_path
    path = Path(db_path)
    if path.is_absolute():
        return db_path
    return str(settings_path.resolve().parent / path)


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Load the YAML settings file into an *AppConfig* object."""
    path = Path(settings_path) if settings_path else SETTINGS_FILE
    data = _load_yaml(path)

    config = AppConfig(**data)
    config.watermarks.db_path = _resolve_db_path(config.watermarks.db_path, path)
    logger.info(
        "Settings loaded (user=%s, backfill_limit=%s, watermarks=%s)",
        config.client.user_id,
        config.realtime.backfill_limit,
        config.watermarks.db_path,
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
    """Replace (or clear) the process-wide configuration."""
    global _config
    _config = config
