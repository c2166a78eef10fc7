from __future__ import annotations

import time
from collections import Counter
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from pydantic import BaseModel

from .config import AgentSettings
from .models import Device, DeviceStatus
from .registry import DeviceRegistry


class HealthOut(BaseModel):
    status: str
    time_utc: datetime

    model_config = {"json_schema_extra": {"examples": [{"status": "ok", "time_utc": "2026-02-18T12:00:00Z"}]}}


class HeartbeatOut(BaseModel):
    agent_id: str
    status: str
    time_utc: datetime
    uptime_seconds: int
    device_counts: dict[str, int]

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "agent_id": "office-pi",
                    "status": "online",
                    "time_utc": "2026-02-18T12:00:00Z",
                    "uptime_seconds": 42,
                    "device_counts": {"unknown": 0, "online": 11, "offline": 2},
                }
            ]
        }
    }


def create_app(cfg: AgentSettings, registry: Optional[DeviceRegistry] = None) -> FastAPI:
    """
    Create the Edge Agent HTTP API app.

    `registry` is the monitor's live registry; without one the device views are empty.
    """
    registry = registry or DeviceRegistry()
    app = FastAPI(
        title="lanwatch - Edge Agent API",
        version="0.1.0",
        description="Edge-side health endpoints and a read-only view of the device registry.",
    )

    @app.get("/")
    def root():
        return {"status": "edge agent running"}

    # Store start time for uptime calculation
    started_monotonic = time.monotonic()

    @app.get("/health", response_model=HealthOut, tags=["health"])
    def health() -> HealthOut:
        """Liveness check: returns OK if the edge agent process is running."""
        return HealthOut(status="ok", time_utc=datetime.now(timezone.utc))

    @app.get("/heartbeat", response_model=HeartbeatOut, tags=["health"])
    async def heartbeat() -> HeartbeatOut:
        """Returns agent identity + device counts per status + uptime."""
        uptime = int(time.monotonic() - started_monotonic)
        counts = Counter(d.status.value for d in await registry.all())
        return HeartbeatOut(
            agent_id=cfg.agent_id,
            status="online",
            time_utc=datetime.now(timezone.utc),
            uptime_seconds=uptime,
            device_counts={s.value: counts.get(s.value, 0) for s in DeviceStatus},
        )

    @app.get("/devices", response_model=list[Device], tags=["devices"])
    async def devices() -> list[Device]:
        """Snapshot of the edge's registry, as the prober currently sees it."""
        return sorted(await registry.all(), key=lambda d: d.device_id)

    return app
