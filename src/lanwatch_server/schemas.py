from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from datetime import datetime
from enum import Enum


class DeviceStatus(str, Enum):
    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"


class AlertKind(str, Enum):
    WENT_OFFLINE = "went-offline"
    CAME_ONLINE = "came-online"


# Device schemas
class DeviceMergeIn(BaseModel):
    """Partial device document written by an edge agent. Omitted fields are left alone."""
    model_config = ConfigDict(extra="forbid")

    agent_id: Optional[str] = None
    address: Optional[str] = None
    hardware_address: Optional[str] = None
    display_name: Optional[str] = None
    status: Optional[DeviceStatus] = None
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    latency_ms: Optional[float] = None
    consecutive_failures: Optional[int] = Field(default=None, ge=0)
    observation_count: Optional[int] = Field(default=None, ge=0)


class DeviceCreate(BaseModel):
    """Device inserted directly by an administrator rather than discovered by an agent."""
    model_config = ConfigDict(extra="forbid")

    device_id: str
    address: Optional[str] = None
    hardware_address: Optional[str] = None
    display_name: Optional[str] = None
    agent_id: Optional[str] = None
    last_seen_at: Optional[datetime] = None


class DeviceOut(BaseModel):
    device_id: str
    agent_id: Optional[str] = None
    address: Optional[str] = None
    hardware_address: Optional[str] = None
    display_name: Optional[str] = None
    status: DeviceStatus
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    latency_ms: Optional[float] = None
    consecutive_failures: int
    observation_count: int
    version: int
    updated_at: Optional[datetime] = None


class SimulateDownOut(BaseModel):
    status: str
    message: str
    device: DeviceOut


# Alert schemas
class AlertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    device_id: str
    agent_id: Optional[str] = None
    kind: AlertKind
    message: str
    created_at: datetime
    acknowledged: bool


# Heartbeat schemas
class HeartbeatIn(BaseModel):
    agent_id: str
    host: str
    timestamp: datetime


class HeartbeatOut(BaseModel):
    agent_id: str
    host: str
    last_active_at: datetime
    message: str


# Subscriber schemas
class SubscriberIn(BaseModel):
    name: str
    tokens: List[str] = Field(default_factory=list)


class SubscriberOut(SubscriberIn):
    model_config = ConfigDict(from_attributes=True)

    id: str
