from __future__ import annotations

import socket
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol
from urllib.parse import quote

import httpx


class DeviceStore(Protocol):
    """What the edge needs from the persisted device store."""

    async def merge_set(self, device_id: str, fields: dict[str, Any]) -> None:
        ...

    async def get(self, device_id: str) -> Optional[dict[str, Any]]:
        ...

    async def heartbeat(self, agent_id: str) -> None:
        ...


def _jsonable(fields: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, datetime):
            out[key] = value.isoformat()
        elif isinstance(value, Enum):
            out[key] = value.value
        else:
            out[key] = value
    return out


class HttpDeviceStore:
    """
    Device store backed by the lanwatch server's HTTP API.

    Every call carries the client timeout; errors surface as httpx.HTTPError
    so the caller decides whether to retry.
    """

    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def merge_set(self, device_id: str, fields: dict[str, Any]) -> None:
        response = await self._client.patch(f"/api/devices/{quote(device_id, safe='')}", json=_jsonable(fields))
        response.raise_for_status()

    async def get(self, device_id: str) -> Optional[dict[str, Any]]:
        response = await self._client.get(f"/api/devices/{quote(device_id, safe='')}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    async def heartbeat(self, agent_id: str) -> None:
        payload = {
            "agent_id": agent_id,
            "host": socket.gethostname(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        response = await self._client.post("/api/heartbeat", json=payload)
        response.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()
