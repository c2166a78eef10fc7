from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
from typing import Optional

from .models import Device, Observation

logger = logging.getLogger(__name__)

_MAC_HEX = re.compile(r"^[0-9a-f]{12}$")

# Placeholders some scanners emit instead of leaving the field empty.
_NO_MAC = {"", "unknown", "000000000000", "ffffffffffff"}


def normalize_mac(mac: Optional[str]) -> Optional[str]:
    """
    Normalize a MAC address to lowercase, colon separated ("aa:bb:cc:dd:ee:ff").

    Returns None for missing, placeholder or malformed addresses.
    """
    if not mac:
        return None
    digits = re.sub(r"[^0-9a-fA-F]", "", mac).lower()
    if digits in _NO_MAC or not _MAC_HEX.match(digits):
        return None
    return ":".join(digits[i:i + 2] for i in range(0, 12, 2))


def normalize_address(address: str) -> str:
    """Canonical text form of an IPv4/IPv6 address. Raises ValueError if invalid."""
    return str(ipaddress.ip_address(address.strip()))


class DeviceRegistry:
    """
    In-memory table of known devices, keyed by stable device identity.

    All mutations take a short lock so the discovery pass and the reconcile
    step can never interleave inside a single update. Readers get copies.
    """

    def __init__(self) -> None:
        self._devices: dict[str, Device] = {}
        self._by_address: dict[str, str] = {}
        self._by_mac: dict[str, str] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._devices)

    async def upsert(self, observation: Observation) -> tuple[Device, bool]:
        """
        Resolve an observation to a device, creating it if needed.

        Returns (device snapshot, is_new). Never touches the persisted store.
        """
        address = normalize_address(observation.address)
        mac = normalize_mac(observation.hardware_address)
        name = (observation.display_name or "").strip() or None

        async with self._lock:
            device = self._resolve(address, mac)
            if device is None:
                if (mac or address) in self._devices:
                    # The id belongs to an address-keyed record that has moved on.
                    raise ValueError(
                        f"{address} is the identity of device now at {self._devices[mac or address].address}"
                    )
                device = Device(
                    device_id=mac or address,
                    address=address,
                    hardware_address=mac,
                    display_name=name,
                )
                self._devices[device.device_id] = device
                self._by_address[address] = device.device_id
                if mac:
                    self._by_mac[mac] = device.device_id
                logger.info("New device %s at %s", device.device_id, address)
                return device.model_copy(), True

            self._move_address(device, address)
            if mac and not device.hardware_address:
                logger.info("Device %s enriched with hardware address %s", device.device_id, mac)
                device.hardware_address = mac
                self._by_mac[mac] = device.device_id
            if name:
                device.display_name = name
            return device.model_copy(), False

    async def get(self, device_id: str) -> Optional[Device]:
        async with self._lock:
            device = self._devices.get(device_id)
            return device.model_copy() if device else None

    async def all(self) -> list[Device]:
        """Snapshot of every device; later mutations do not affect it."""
        async with self._lock:
            return [d.model_copy() for d in self._devices.values()]

    async def replace(self, device: Device) -> None:
        """
        Store the reconciled state of an existing device.

        Identity fields (id, address, enrichment) stay as the registry has them;
        only the liveness state is taken from `device`.
        """
        async with self._lock:
            current = self._devices.get(device.device_id)
            if current is None:
                raise KeyError(device.device_id)
            self._devices[device.device_id] = current.model_copy(
                update={
                    "status": device.status,
                    "first_seen_at": device.first_seen_at,
                    "last_seen_at": device.last_seen_at,
                    "latency_ms": device.latency_ms,
                    "consecutive_failures": device.consecutive_failures,
                    "consecutive_successes": device.consecutive_successes,
                    "observation_count": device.observation_count,
                }
            )

    def _resolve(self, address: str, mac: Optional[str]) -> Optional[Device]:
        # An enriched address-keyed record is found by its MAC after it moves.
        if mac and mac in self._by_mac:
            return self._devices[self._by_mac[mac]]

        device_id = self._by_address.get(address)
        if device_id is None:
            return None
        device = self._devices[device_id]
        # Another physical device took over this address.
        if mac and device.hardware_address and device.hardware_address != mac:
            return None
        return device

    def _move_address(self, device: Device, address: str) -> None:
        if device.address == address:
            return
        logger.info("Device %s moved from %s to %s", device.device_id, device.address, address)
        if self._by_address.get(device.address) == device.device_id:
            del self._by_address[device.address]
        device.address = address
        self._by_address[address] = device.device_id
