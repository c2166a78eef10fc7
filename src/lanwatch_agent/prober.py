from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import sys
import time
from typing import Optional, Protocol

from .models import Device, ProbeOutcome

logger = logging.getLogger(__name__)

_PING_TIME = re.compile(r"time[=<]\s*([0-9.]+)\s*ms", re.IGNORECASE)


class Probe(Protocol):
    async def probe(self, address: str, timeout: float) -> ProbeOutcome:
        ...


def parse_ping_latency(output: str) -> Optional[float]:
    """Pull the round-trip time out of `ping` output, if it printed one."""
    match = _PING_TIME.search(output)
    return float(match.group(1)) if match else None


class PingProbe:
    """
    Reachability check using the system `ping` binary (one echo request).
    """

    def __init__(self, ping_binary: str = "ping"):
        self.ping_binary = ping_binary

    def _command(self, address: str, timeout: float) -> list[str]:
        if sys.platform.startswith("win"):
            return [self.ping_binary, "-n", "1", "-w", str(int(timeout * 1000)), address]
        cmd = [self.ping_binary, "-c", "1", "-W", str(max(1, int(round(timeout)))), address]
        if ipaddress.ip_address(address).version == 6:
            cmd.insert(1, "-6")
        return cmd

    async def probe(self, address: str, timeout: float) -> ProbeOutcome:
        started = time.monotonic()
        proc = await asyncio.create_subprocess_exec(
            *self._command(address, timeout),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            stdout, _ = await proc.communicate()
        finally:
            # Cancelled by the caller's timeout: don't leave ping running.
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

        if proc.returncode != 0:
            return ProbeOutcome(alive=False)

        latency = parse_ping_latency(stdout.decode("utf-8", errors="replace"))
        if latency is None:
            latency = round((time.monotonic() - started) * 1000, 3)
        return ProbeOutcome(alive=True, latency_ms=latency)


class LivenessProber:
    """
    Runs one probe per known device, with a fixed concurrency cap and a fixed
    per-device timeout.

    Anything other than a positive answer (timeout, probe error) counts as
    "not alive".
    """

    def __init__(self, probe: Probe, timeout_sec: float = 1.0, concurrency: int = 32):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._probe = probe
        self.timeout_sec = timeout_sec
        self.concurrency = concurrency

    async def probe(self, device: Device) -> ProbeOutcome:
        try:
            return await asyncio.wait_for(
                self._probe.probe(device.address, self.timeout_sec),
                timeout=self.timeout_sec,
            )
        except asyncio.TimeoutError:
            logger.debug("Probe timed out for %s (%s)", device.device_id, device.address)
        except Exception as e:
            # Fail closed: an erroring probe never keeps a device "online".
            logger.warning("Probe error for %s (%s): %s", device.device_id, device.address, e)
        return ProbeOutcome(alive=False)

    async def run_cycle(self, devices: list[Device]) -> list[tuple[Device, ProbeOutcome]]:
        """
        Probe every device and wait until all of them settled.

        Results come back in the same order as `devices`.
        """
        semaphore = asyncio.Semaphore(self.concurrency)

        async def probe_one(device: Device) -> ProbeOutcome:
            async with semaphore:
                return await self.probe(device)

        outcomes = await asyncio.gather(*(probe_one(d) for d in devices))
        alive = sum(1 for o in outcomes if o.alive)
        logger.info("Probe cycle finished: %d/%d devices alive", alive, len(devices))
        return list(zip(devices, outcomes))
