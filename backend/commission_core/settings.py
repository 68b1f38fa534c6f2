"""
CONFIGURATION

Settings come from the process environment, optionally seeded from a .env
file (python-dotenv), and are validated by a pydantic model.

Environment variables:
- MONGO_URL, DB_NAME                      local store connection
- REMOTE_BASE_URL, REMOTE_API_KEY,
  REMOTE_ACCESS_TOKEN, REMOTE_TIMEOUT_SECONDS   remote backend
- SYNC_AUTO, SYNC_INTERVAL_SECONDS, SYNC_BATCH_SIZE, SYNC_MAX_RETRIES,
  SYNC_RETRY_DELAY_SECONDS, SYNC_DEBOUNCE_SECONDS, SYNC_RETENTION_DAYS,
  SYNC_CONFLICT_STRATEGY                  coordinator behaviour
"""

from pydantic import BaseModel, Field, field_validator, ValidationError as PydanticValidationError
from dotenv import load_dotenv
from pathlib import Path
from typing import Optional, Mapping, Union
import os

from .conflict_resolver import STRATEGIES, LAST_WRITE_WINS
from .errors import ValidationError

ENV_VARS = {
    "mongo_url": "MONGO_URL",
    "db_name": "DB_NAME",
    "remote_base_url": "REMOTE_BASE_URL",
    "remote_api_key": "REMOTE_API_KEY",
    "remote_access_token": "REMOTE_ACCESS_TOKEN",
    "remote_timeout_seconds": "REMOTE_TIMEOUT_SECONDS",
    "sync_auto": "SYNC_AUTO",
    "sync_interval_seconds": "SYNC_INTERVAL_SECONDS",
    "sync_batch_size": "SYNC_BATCH_SIZE",
    "sync_max_retries": "SYNC_MAX_RETRIES",
    "sync_retry_delay_seconds": "SYNC_RETRY_DELAY_SECONDS",
    "sync_debounce_seconds": "SYNC_DEBOUNCE_SECONDS",
    "sync_retention_days": "SYNC_RETENTION_DAYS",
    "sync_conflict_strategy": "SYNC_CONFLICT_STRATEGY",
}


class SyncConfig(BaseModel):
    """Coordinator knobs; persisted to app_config by update_config()"""
    auto_sync: bool = True
    sync_interval_seconds: float = Field(default=30.0, gt=0)
    batch_size: int = Field(default=50, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_seconds: float = Field(default=5.0, ge=0)
    debounce_seconds: float = Field(default=1.0, ge=0)
    retention_days: float = Field(default=7.0, ge=0)
    conflict_strategy: str = LAST_WRITE_WINS

    @field_validator("conflict_strategy")
    @classmethod
    def check_strategy(cls, v: str) -> str:
        if v not in STRATEGIES:
            raise ValueError(f"conflict strategy must be one of {', '.join(STRATEGIES)}")
        return v


class Settings(BaseModel):
    mongo_url: str = "mongodb://localhost:27017"
    db_name: str = "commission_manager"
    remote_base_url: Optional[str] = None
    remote_api_key: Optional[str] = None
    remote_access_token: Optional[str] = None
    remote_timeout_seconds: float = Field(default=30.0, gt=0)
    sync_auto: bool = True
    sync_interval_seconds: float = Field(default=30.0, gt=0)
    sync_batch_size: int = Field(default=50, gt=0)
    sync_max_retries: int = Field(default=3, ge=0)
    sync_retry_delay_seconds: float = Field(default=5.0, ge=0)
    sync_debounce_seconds: float = Field(default=1.0, ge=0)
    sync_retention_days: float = Field(default=7.0, ge=0)
    sync_conflict_strategy: str = LAST_WRITE_WINS

    @field_validator("sync_conflict_strategy")
    @classmethod
    def check_strategy(cls, v: str) -> str:
        if v not in STRATEGIES:
            raise ValueError(f"conflict strategy must be one of {', '.join(STRATEGIES)}")
        return v

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        env_file: Union[str, Path, None] = None
    ) -> "Settings":
        """
        Build settings from environment variables.

        When `env` is None the process environment is used, after loading
        `env_file` (or a .env found from the working directory) with
        python-dotenv. Unset variables keep their defaults.
        """
        if env is None:
            if env_file is not None:
                load_dotenv(env_file)
            else:
                load_dotenv()
            env = os.environ

        values = {}
        for field_name, var in ENV_VARS.items():
            raw = env.get(var)
            if raw is not None and raw != "":
                values[field_name] = raw

        try:
            return cls(**values)
        except PydanticValidationError as e:
            first = e.errors()[0]
            field = first["loc"][0] if first.get("loc") else "settings"
            raise ValidationError(
                f"Invalid configuration {ENV_VARS.get(field, field)}: {first.get('msg')}"
            )

    def sync_config(self) -> SyncConfig:
        return SyncConfig(
            auto_sync=self.sync_auto,
            sync_interval_seconds=self.sync_interval_seconds,
            batch_size=self.sync_batch_size,
            max_retries=self.sync_max_retries,
            retry_delay_seconds=self.sync_retry_delay_seconds,
            debounce_seconds=self.sync_debounce_seconds,
            retention_days=self.sync_retention_days,
            conflict_strategy=self.sync_conflict_strategy,
        )
