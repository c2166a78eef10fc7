from typing import Annotated, List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Database
    database_url: str = "sqlite:///./lanwatch.db"

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    debug: bool = False

    # CORS (CORS_ORIGINS is a comma-separated string)
    cors_origins: Annotated[List[str], NoDecode] = [
        "http://localhost:3000",
        "http://localhost:8000",
    ]

    # Staleness: a device is offline once it has not been seen for
    # offline_threshold_checks * heartbeat_interval_ms.
    heartbeat_interval_ms: int = 60_000
    offline_threshold_checks: int = 3

    # How often the whole devices table is re-audited (0 disables the sweep).
    audit_sweep_interval_sec: int = 60

    # Push notifications. Without a gateway URL notifications are only logged.
    push_gateway_url: Optional[str] = None
    notify_timeout_sec: float = 5.0

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_origins(cls, value):
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @property
    def offline_threshold_ms(self) -> int:
        return self.offline_threshold_checks * self.heartbeat_interval_ms
