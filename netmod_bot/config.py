from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BackendSettings(BaseModel):
    base_url: str = "http://localhost:3000/api"
    token: Optional[str] = None
    timeout_seconds: float = 10.0


class QueueSettings(BaseModel):
    executor_concurrency: int = Field(default=3, ge=1)
    attempts: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(default=1.0, ge=0)
    max_backoff_seconds: float = Field(default=30.0, gt=0)
    poll_interval_seconds: float = Field(default=0.5, gt=0)
    keep_completed_seconds: float = Field(default=60 * 60, ge=0)
    keep_completed_count: int = Field(default=1000, ge=0)
    keep_failed_seconds: float = Field(default=24 * 60 * 60, ge=0)
    keep_failed_count: int = Field(default=1000, ge=0)
    prune_interval_seconds: float = Field(default=60.0, gt=0)


class ProgressSettings(BaseModel):
    throttle_seconds: float = Field(default=5.0, ge=0)


class VotingSettings(BaseModel):
    pending_ttl_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Deny BanAll votes still waiting after this many seconds. Unset: wait forever.",
    )
    expiry_check_seconds: float = Field(default=60.0, gt=0)


class LogChatSettings(BaseModel):
    chat_id: int = Field(..., description="Group where BanAll status messages are posted.")
    thread_id: Optional[int] = Field(default=None, description="Forum topic for BanAll messages.")


class StorageSettings(BaseModel):
    sqlite_path: str = "ban_all_queue.db"


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Logging level: DEBUG, INFO, WARNING, ERROR")
    use_json: bool = Field(default=False, description="Use JSON format instead of colored output")


class BotSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="NETMOD_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    telegram_token: str = Field(..., description="Telegram bot token.")
    log_chat: LogChatSettings
    backend: BackendSettings = BackendSettings()
    queue: QueueSettings = QueueSettings()
    progress: ProgressSettings = ProgressSettings()
    voting: VotingSettings = VotingSettings()
    storage: StorageSettings = StorageSettings()
    logging: LoggingSettings = LoggingSettings()
