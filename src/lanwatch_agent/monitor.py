"""
Edge monitoring loop.

Discovery seeds the registry, then one probe cycle runs per heartbeat
interval. Each cycle settles completely before its results are reconciled.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

import httpx

from .config import AgentSettings
from .discovery import Discovery
from .models import ProbeOutcome
from .prober import LivenessProber, PingProbe, Probe
from .reconciler import DebouncePolicy, EdgeReconciler, Transition
from .registry import DeviceRegistry
from .store import DeviceStore

logger = logging.getLogger(__name__)


class Monitor:
    """
    Owns the registry and drives discovery, probing and reconciliation.

    It is the only task that mutates the registry.
    """

    def __init__(
        self,
        cfg: AgentSettings,
        discovery: Discovery,
        store: DeviceStore,
        probe: Optional[Probe] = None,
        registry: Optional[DeviceRegistry] = None,
    ):
        self.cfg = cfg
        self.discovery = discovery
        self.store = store
        self.registry = registry or DeviceRegistry()
        self.prober = LivenessProber(
            probe or PingProbe(),
            timeout_sec=cfg.probe_timeout_sec,
            concurrency=cfg.probe_concurrency,
        )
        self.reconciler = EdgeReconciler(
            self.registry,
            store,
            agent_id=cfg.agent_id,
            policy=DebouncePolicy(
                offline_debounce=cfg.offline_threshold_checks,
                online_debounce=cfg.online_debounce,
            ),
            write_attempts=cfg.store_write_attempts,
            retry_backoff_sec=cfg.store_retry_backoff_sec,
        )
        self._shutdown_event = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._shutdown_event.is_set()

    def stop(self) -> None:
        """Request shutdown; the current cycle is allowed to finish."""
        logger.info("Monitor shutdown requested")
        self._shutdown_event.set()

    async def discovery_pass(self) -> int:
        """
        Seed the registry from discovery. Returns the number of new devices.

        A sighting by the scanner is a successful observation of that device.
        """
        try:
            observations = await self.discovery.discover()
        except Exception:
            # Try again on the next pass; the agent keeps running with what it knows.
            logger.exception("Discovery failed; no devices seeded this pass")
            observations = []

        new_devices = 0
        for obs in observations:
            try:
                device, is_new = await self.registry.upsert(obs)
            except ValueError as e:
                logger.warning("Skipping observation for %r: %s", obs.address, e)
                continue
            if is_new:
                new_devices += 1
                await self.reconciler.restore(device.device_id)
            await self.reconciler.observe(device.device_id, ProbeOutcome(alive=True, latency_ms=obs.latency_ms))

        logger.info(
            "Discovery pass complete: %d observed, %d new, %d known",
            len(observations), new_devices, len(self.registry),
        )
        await self._send_heartbeat()
        return new_devices

    async def heartbeat_cycle(self) -> list[Transition]:
        """Probe every known device, then reconcile the settled batch."""
        devices = await self.registry.all()
        transitions: list[Transition] = []
        if devices:
            results = await self.prober.run_cycle(devices)
            transitions = await self.reconciler.reconcile(results)
        await self._send_heartbeat()
        return transitions

    async def run(self) -> None:
        logger.info(
            "Monitor starting: agent=%s interval=%ss offline_after=%d online_after=%d",
            self.cfg.agent_id, self.cfg.heartbeat_interval_sec,
            self.cfg.offline_threshold_checks, self.cfg.online_debounce,
        )
        await self.discovery_pass()
        last_discovery = time.monotonic()

        while not self.stopping:
            if await self._sleep(self.cfg.heartbeat_interval_sec):
                break
            try:
                interval = self.cfg.discovery_interval_sec
                if interval and time.monotonic() - last_discovery >= interval:
                    await self.discovery_pass()
                    last_discovery = time.monotonic()
                await self.heartbeat_cycle()
            except Exception:
                logger.exception("Error in monitor loop")

        logger.info("Monitor stopped")

    async def _sleep(self, seconds: float) -> bool:
        """Wait for the next cycle. Returns True if shutdown was requested."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _send_heartbeat(self) -> None:
        try:
            await self.store.heartbeat(self.cfg.agent_id)
        except (httpx.HTTPError, OSError) as e:
            logger.warning("Agent heartbeat failed: %s", e)
