from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

import httpx

from .models import Device, DeviceStatus, ProbeOutcome
from .registry import DeviceRegistry
from .store import DeviceStore

logger = logging.getLogger(__name__)


class Signal(str, Enum):
    WENT_OFFLINE = "went-offline"
    CAME_ONLINE = "came-online"


@dataclass(frozen=True)
class DebouncePolicy:
    """
    How many consistent probe results are needed before a status flips.

    The default is asymmetric: three failures to go offline, a single success
    to come back.
    """
    offline_debounce: int = 3
    online_debounce: int = 1

    def __post_init__(self) -> None:
        if self.offline_debounce < 1 or self.online_debounce < 1:
            raise ValueError("debounce counts must be >= 1")


@dataclass
class Transition:
    device: Device
    signal: Optional[Signal] = None


def transition(device: Device, outcome: ProbeOutcome, policy: DebouncePolicy, now: datetime) -> Transition:
    """
    Apply one probe outcome to a device and return the new state.

    PURE: no I/O, the input device is not modified.
    """
    d = device.model_copy()
    signal = None

    if outcome.alive:
        d.consecutive_failures = 0
        d.consecutive_successes += 1
        d.observation_count += 1
        d.last_seen_at = now
        if d.first_seen_at is None:
            d.first_seen_at = now
        if outcome.latency_ms is not None:
            d.latency_ms = outcome.latency_ms

        if d.status == DeviceStatus.UNKNOWN:
            d.status = DeviceStatus.ONLINE
        elif d.status == DeviceStatus.OFFLINE and d.consecutive_successes >= policy.online_debounce:
            d.status = DeviceStatus.ONLINE
            signal = Signal.CAME_ONLINE
    else:
        d.consecutive_successes = 0
        d.consecutive_failures += 1
        if d.status == DeviceStatus.ONLINE and d.consecutive_failures >= policy.offline_debounce:
            d.status = DeviceStatus.OFFLINE
            signal = Signal.WENT_OFFLINE

    return Transition(device=d, signal=signal)


def store_fields(device: Device, agent_id: str) -> dict[str, Any]:
    """The complete field set the edge owns, minus anything still unset."""
    fields = {
        "agent_id": agent_id,
        "address": device.address,
        "hardware_address": device.hardware_address,
        "display_name": device.display_name,
        "status": device.status,
        "first_seen_at": device.first_seen_at,
        "last_seen_at": device.last_seen_at,
        "latency_ms": device.latency_ms,
        "consecutive_failures": device.consecutive_failures,
        "observation_count": device.observation_count,
    }
    return {k: v for k, v in fields.items() if v is not None}


# Liveness state a restarted agent takes over from the stored record.
_RESTORED_FIELDS = ("status", "first_seen_at", "last_seen_at", "latency_ms", "observation_count")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EdgeReconciler:
    """
    Runs the debounce state machine for the edge and merge-writes each result.

    The registry stays authoritative for the next cycle even if a write is
    finally given up on.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        store: DeviceStore,
        agent_id: str,
        policy: Optional[DebouncePolicy] = None,
        write_attempts: int = 3,
        retry_backoff_sec: float = 0.5,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.registry = registry
        self.store = store
        self.agent_id = agent_id
        self.policy = policy or DebouncePolicy()
        self.write_attempts = max(1, write_attempts)
        self.retry_backoff_sec = retry_backoff_sec
        self._clock = clock

    async def restore(self, device_id: str) -> Optional[Device]:
        """Pick up a device new to this process where the stored record left off."""
        try:
            doc = await self.store.get(device_id)
        except (httpx.HTTPError, OSError) as e:
            logger.warning("Could not load stored state for %s: %s", device_id, e)
            return None
        current = await self.registry.get(device_id)
        if not doc or current is None:
            return None

        state = {k: doc.get(k) for k in _RESTORED_FIELDS if doc.get(k) is not None}
        restored = Device.model_validate({**current.model_dump(), **state})
        await self.registry.replace(restored)
        logger.info(
            "Restored device %s: status=%s observations=%d",
            device_id, restored.status.value, restored.observation_count,
        )
        return restored

    async def observe(self, device_id: str, outcome: ProbeOutcome) -> Transition:
        current = await self.registry.get(device_id)
        if current is None:
            raise KeyError(device_id)

        result = transition(current, outcome, self.policy, self._clock())
        await self.registry.replace(result.device)

        if result.signal == Signal.WENT_OFFLINE:
            logger.warning(
                "Device %s (%s) is now offline after %d failed probes",
                result.device.device_id, result.device.address, result.device.consecutive_failures,
            )
        elif result.signal == Signal.CAME_ONLINE:
            logger.info("Device %s (%s) is back online", result.device.device_id, result.device.address)
        elif not outcome.alive:
            logger.debug(
                "Device %s failed probe, consecutive failures: %d",
                result.device.device_id, result.device.consecutive_failures,
            )

        await self.write_with_retry(result.device)
        return result

    async def reconcile(self, results: list[tuple[Device, ProbeOutcome]]) -> list[Transition]:
        """Apply a settled probe cycle, device by device."""
        transitions = []
        for device, outcome in results:
            try:
                transitions.append(await self.observe(device.device_id, outcome))
            except KeyError:
                logger.warning("Device %s vanished from the registry before reconcile", device.device_id)
        return transitions

    async def write_with_retry(self, device: Device) -> bool:
        fields = store_fields(device, self.agent_id)
        for attempt in range(1, self.write_attempts + 1):
            try:
                await self.store.merge_set(device.device_id, fields)
                return True
            except (httpx.HTTPError, OSError) as e:
                if attempt == self.write_attempts:
                    logger.error(
                        "Giving up writing device %s after %d attempts: %s",
                        device.device_id, attempt, e,
                    )
                    return False
                delay = self.retry_backoff_sec * (2 ** (attempt - 1))
                logger.warning(
                    "Store write for %s failed (attempt %d/%d): %s; retrying in %.1fs",
                    device.device_id, attempt, self.write_attempts, e, delay,
                )
                await asyncio.sleep(delay)
        return False
