"""forge.core.config

Two config surfaces only:
1) `config/default.yaml` (+ optional `config/user.yaml` overlay)
2) Environment variables (`SOLARFORGE_` prefix, `__` for nesting)

Everything else is derived.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from forge.core.exceptions import ConfigError


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = dict(base)
    for k, v in overlay.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


class DatabaseConfig(BaseModel):
    filename: str = "forge.db"


class ReconcilerConfig(BaseModel):
    """Pending donations older than the window expire. Completion always wins."""

    expiry_window_seconds: int = 86400
    sweep_interval_seconds: int = 300

    @field_validator("expiry_window_seconds", "sweep_interval_seconds")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("interval must be >= 1 second")
        return v


class NotificationsConfig(BaseModel):
    enabled: bool = False
    webhook_urls: list[str] = Field(default_factory=list)
    timeout_seconds: float = 3.0
    max_attempts: int = 3
    batch_size: int = 100


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_output: bool = False


class ApiConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 5060
    auth_token: str = ""
    cors_origins: list[str] = Field(default_factory=list)


class Config(BaseSettings):
    """Root configuration. Single source of truth."""

    data_dir: Path = Path("data")
    config_dir: Path = Path("config")

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    model_config = {"env_prefix": "SOLARFORGE_", "env_nested_delimiter": "__"}

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / self.database.filename

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")

        raw = yaml.safe_load(path.read_text()) or {}

        # Operator overlay sits next to the defaults.
        user_path = path.parent / "user.yaml"
        if user_path != path and user_path.exists():
            user_data = yaml.safe_load(user_path.read_text()) or {}
            raw = _deep_merge(raw, user_data)

        try:
            return cls(**raw)
        except ValueError as e:
            raise ConfigError(str(e)) from e

    @classmethod
    def from_repo_defaults(cls, repo_root: Path | None = None) -> Config:
        root = repo_root or Path.cwd()
        return cls.from_yaml(root / "config" / "default.yaml")
