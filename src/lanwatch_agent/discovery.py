"""
Discovery adapters: produce the initial device inventory for the registry.

The monitor only relies on `Discovery.discover() -> list[Observation]`; how the
list is produced (nmap, ping sweep, a fixture in tests) does not matter.
"""
from __future__ import annotations

import asyncio
import ipaddress
import logging
import shutil
import socket
from typing import Optional, Protocol
from xml.etree import ElementTree as ET

from .config import AgentSettings
from .models import Observation
from .prober import PingProbe, Probe

logger = logging.getLogger(__name__)

MAX_SWEEP_HOSTS = 1024


class DiscoveryError(RuntimeError):
    pass


class Discovery(Protocol):
    async def discover(self) -> list[Observation]:
        ...


def parse_nmap_xml(xml_text: str) -> list[Observation]:
    """
    Parse `nmap -sn -oX -` output into observations for hosts that are up.

    This function is PURE (no subprocess, no logging) so it's easy to unit test.
    Raises ValueError on malformed input.
    """
    try:
        root = ET.fromstring(xml_text.strip())
    except ET.ParseError as e:
        raise ValueError(f"Invalid nmap XML: {e}") from e

    if root.tag != "nmaprun":
        raise ValueError(f"Unexpected root tag '{root.tag}' (expected 'nmaprun')")

    observations: list[Observation] = []
    for host in root.findall("host"):
        status = host.find("status")
        if status is None or status.get("state") != "up":
            continue

        address = None
        mac = None
        for addr in host.findall("address"):
            kind = addr.get("addrtype")
            if kind in ("ipv4", "ipv6") and address is None:
                address = addr.get("addr")
            elif kind == "mac":
                mac = addr.get("addr")
        if not address:
            continue

        name_el = host.find("hostnames/hostname")
        name = name_el.get("name") if name_el is not None else None

        # srtt is reported in microseconds.
        times = host.find("times")
        latency = None
        if times is not None and times.get("srtt"):
            latency = int(times.get("srtt")) / 1000.0

        observations.append(
            Observation(address=address, hardware_address=mac, display_name=name or None, latency_ms=latency)
        )
    return observations


class NmapDiscovery:
    """Ping scan (`-sn`) of a subnet with the nmap binary."""

    def __init__(self, subnet: str, timeout_sec: float = 120.0, nmap_binary: str = "nmap"):
        self.subnet = subnet
        self.timeout_sec = timeout_sec
        self.nmap_binary = nmap_binary

    async def discover(self) -> list[Observation]:
        logger.info("Performing nmap scan on %s", self.subnet)
        proc = await asyncio.create_subprocess_exec(
            self.nmap_binary, "-sn", "-T4", "-oX", "-", self.subnet,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_sec)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise DiscoveryError(f"nmap timed out after {self.timeout_sec}s") from e

        if proc.returncode != 0:
            raise DiscoveryError(f"nmap exited with {proc.returncode}: {stderr.decode(errors='replace').strip()}")

        observations = parse_nmap_xml(stdout.decode("utf-8", errors="replace"))
        logger.info("nmap discovered %d devices", len(observations))
        return observations


class PingSweepDiscovery:
    """ICMP sweep of every host address in a subnet."""

    def __init__(self, subnet: str, probe: Probe, timeout_sec: float = 1.0, concurrency: int = 64):
        self.subnet = subnet
        self.probe = probe
        self.timeout_sec = timeout_sec
        self.concurrency = concurrency

    def _hosts(self) -> list[str]:
        network = ipaddress.ip_network(self.subnet, strict=False)
        hosts = []
        for ip in network.hosts():
            if len(hosts) >= MAX_SWEEP_HOSTS:
                logger.warning("Subnet %s is larger than %d hosts; sweeping the first ones only", self.subnet, MAX_SWEEP_HOSTS)
                break
            hosts.append(str(ip))
        return hosts

    async def discover(self) -> list[Observation]:
        hosts = self._hosts()
        logger.info("Performing ICMP ping sweep on %s (%d hosts)", self.subnet, len(hosts))
        semaphore = asyncio.Semaphore(self.concurrency)

        async def sweep_one(address: str) -> Optional[Observation]:
            async with semaphore:
                try:
                    outcome = await asyncio.wait_for(self.probe.probe(address, self.timeout_sec), timeout=self.timeout_sec)
                except Exception as e:
                    logger.debug("Sweep probe of %s failed: %s", address, e)
                    return None
            if not outcome.alive:
                return None
            logger.debug("Found device: %s (RTT: %sms)", address, outcome.latency_ms)
            return Observation(address=address, latency_ms=outcome.latency_ms)

        results = await asyncio.gather(*(sweep_one(h) for h in hosts))
        found = [r for r in results if r is not None]
        logger.info("Ping sweep discovered %d devices", len(found))
        return found


def local_subnet() -> str:
    """
    Best-effort /24 of the interface that holds the default route.

    Connecting a UDP socket sends no packet; it only selects the local address.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.connect(("192.0.2.1", 9))
        local_ip = sock.getsockname()[0]
    return str(ipaddress.ip_network(f"{local_ip}/24", strict=False))


def build_discovery(cfg: AgentSettings, probe: Optional[Probe] = None) -> Discovery:
    """
    Pick the discovery method: nmap when installed, ping sweep otherwise.
    """
    subnet = cfg.discovery_subnet or local_subnet()
    if shutil.which("nmap"):
        logger.info("nmap found. Will use it for discovery of %s", subnet)
        return NmapDiscovery(subnet, timeout_sec=cfg.discovery_timeout_sec)

    logger.info("nmap not found. Falling back to ICMP ping sweep of %s", subnet)
    return PingSweepDiscovery(
        subnet,
        probe=probe or PingProbe(),
        timeout_sec=cfg.probe_timeout_sec,
        concurrency=cfg.probe_concurrency,
    )
