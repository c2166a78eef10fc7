from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class DeviceStatus(str, Enum):
    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"


class Observation(BaseModel):
    """
    One host reported by a discovery pass.

    Only `address` is guaranteed; scanners fill the rest when they can.
    """
    address: str
    hardware_address: Optional[str] = None
    display_name: Optional[str] = None
    latency_ms: Optional[float] = None


class ProbeOutcome(BaseModel):
    alive: bool
    latency_ms: Optional[float] = None


class Device(BaseModel):
    """
    Edge-side view of one device.

    `device_id` is assigned at creation and never changes, even when the record
    is later enriched with a hardware address.
    """
    device_id: str
    address: str

    hardware_address: Optional[str] = None
    display_name: Optional[str] = None

    status: DeviceStatus = DeviceStatus.UNKNOWN
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    latency_ms: Optional[float] = None

    # Edge-local counters; the backend never uses them for decisions.
    consecutive_failures: int = Field(default=0, ge=0)
    consecutive_successes: int = Field(default=0, ge=0)
    observation_count: int = Field(default=0, ge=0)

    @property
    def label(self) -> str:
        return self.display_name or self.address
