"""
Configuration for MusicMark.

Settings come from environment variables (``Settings.from_env()``); every
field has a default so a bare checkout runs against ``./data/db.json``.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Mapping, Optional

from loguru import logger
from pydantic import BaseModel, Field, field_validator

from .analytics import resolve_timezone
from .errors import ValidationError

DB_FILENAME = "db.json"


class Settings(BaseModel):
    data_dir: Path = Field(Path("data"), validate_default=True, description="Directory holding db.json")
    admin_username: str = Field("admin", min_length=1, description="Bootstrap admin login")
    admin_password: str = Field("admin123", min_length=1, description="Bootstrap admin password")
    stats_timezone: str = Field("UTC", description="IANA zone used for daily buckets")
    bcrypt_rounds: int = Field(10, ge=4, le=31)
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = Field(3000, ge=1, le=65535)
    site_name: str = "MusicMark"

    @field_validator("data_dir", mode="before")
    @classmethod
    def _expand_data_dir(cls, value: str | Path) -> Path:
        return Path(value).expanduser().resolve()

    @field_validator("stats_timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            resolve_timezone(value)
        except ValidationError as exc:
            raise ValueError(str(exc)) from None
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @property
    def db_path(self) -> Path:
        return self.data_dir / DB_FILENAME

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``environ`` (defaults to ``os.environ``)."""
        env = os.environ if environ is None else environ
        mapping = {
            "data_dir": "DATA_DIR",
            "admin_username": "ADMIN_USERNAME",
            "admin_password": "ADMIN_PASSWORD",
            "stats_timezone": "MUSICMARK_STATS_TZ",
            "bcrypt_rounds": "MUSICMARK_BCRYPT_ROUNDS",
            "log_level": "LOG_LEVEL",
            "host": "MUSICMARK_HOST",
            "port": "MUSICMARK_PORT",
            "site_name": "SITE_NAME",
        }
        raw = {field: env[var] for field, var in mapping.items() if env.get(var)}
        return cls.model_validate(raw)


def configure_logging(level: str = "INFO") -> None:
    """Route loguru output to stderr at ``level``."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
