from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    debug: bool = False
    app_name: str = "Estate Chat"
    api_v1_prefix: str = "/v1"
    database_url: str = "sqlite:///./estate_chat.db"

    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:5173", "http://localhost:3000"])

    message_max_length: int = 2000
    preview_max_length: int = 280
    storage_public_url: str = "http://localhost:54321/storage/v1/object/public"
    default_avatar_path: str = "/images/default-avatar.svg"

    realtime_dispatcher_enabled: bool = True
    realtime_dispatcher_poll_ms: int = 250
    realtime_dispatcher_batch_size: int = 100

    ws_heartbeat_sec: int = 25
    ws_idle_timeout_sec: int = 90
    ws_rate_limit_window_sec: int = 10
    ws_rate_limit_max_commands: int = 30
    ws_max_command_bytes: int = 4096
    ws_max_subscriptions_per_connection: int = 50
    changes_max_limit: int = 200

    remote_base_url: str = "http://localhost:8000/v1"
    remote_timeout_sec: float = 15.0
    remote_change_poll_sec: float = 1.0

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, list):
            return value
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return []


@lru_cache
def get_settings() -> Settings:
    return Settings()
