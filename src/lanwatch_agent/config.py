from __future__ import annotations

import re
import socket
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_agent_id() -> str:
    # Hostname with anything outside [a-zA-Z0-9] replaced, so it is safe in URLs.
    return re.sub(r"[^a-zA-Z0-9]", "-", socket.gethostname())


class AgentSettings(BaseSettings):
    """
    Configuration for the Edge Agent.
    """

    # Tell pydantic-settings to load environment variables from .env if present.
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",  # ignore unknown env vars
    )

    # --- Identity ---
    agent_id: str = Field(default_factory=_default_agent_id)

    # --- Central server output (Edge Agent -> backend store) ---
    server_base_url: str = "http://127.0.0.1:8000"
    store_timeout_sec: float = 5.0
    store_write_attempts: int = 3
    store_retry_backoff_sec: float = 0.5

    # --- Heartbeat / debounce ---
    heartbeat_interval_sec: int = 60  # one probe cycle per interval
    offline_threshold_checks: int = 3  # consecutive failures before "offline"
    online_debounce: int = 1  # consecutive successes before "online" again

    # --- Probing ---
    probe_timeout_sec: float = 1.0
    probe_concurrency: int = 32

    # --- Discovery ---
    # None means: detect the local /24 at startup.
    discovery_subnet: Optional[str] = None
    discovery_interval_sec: int = 0  # 0 = discover only once, at startup
    discovery_timeout_sec: float = 120.0

    # --- Logging ---
    log_level: str = "INFO"

    # --- Edge HTTP API (local status checks) ---
    edge_http_host: str = "127.0.0.1"
    edge_http_port: int = 8128
