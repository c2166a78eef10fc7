import asyncio

import pytest

from lanwatch_agent.config import AgentSettings
from lanwatch_agent.discovery import (
    MAX_SWEEP_HOSTS,
    DiscoveryError,
    NmapDiscovery,
    PingSweepDiscovery,
    build_discovery,
    parse_nmap_xml,
)
from lanwatch_agent.models import ProbeOutcome

from fakes import FakeProbe

NMAP_XML = """<?xml version="1.0" encoding="UTF-8"?>
<nmaprun scanner="nmap" args="nmap -sn -oX - 192.168.1.0/24">
  <host>
    <status state="up" reason="arp-response"/>
    <address addr="192.168.1.1" addrtype="ipv4"/>
    <address addr="AA:BB:CC:DD:EE:FF" addrtype="mac" vendor="Acme"/>
    <hostnames><hostname name="router.lan" type="PTR"/></hostnames>
    <times srtt="1500" rttvar="500" to="100000"/>
  </host>
  <host>
    <status state="up" reason="echo-reply"/>
    <address addr="192.168.1.20" addrtype="ipv4"/>
    <hostnames/>
  </host>
  <host>
    <status state="down" reason="no-response"/>
    <address addr="192.168.1.30" addrtype="ipv4"/>
  </host>
  <runstats><finished time="1700000000"/></runstats>
</nmaprun>
"""


class FakeProcess:
    def __init__(self, returncode, stdout=b"", stderr=b""):
        self.returncode = returncode
        self._out = (stdout, stderr)

    async def communicate(self):
        return self._out


def test_parse_nmap_xml_keeps_hosts_that_are_up():
    observations = parse_nmap_xml(NMAP_XML)

    assert [o.address for o in observations] == ["192.168.1.1", "192.168.1.20"]
    router = observations[0]
    assert router.hardware_address == "AA:BB:CC:DD:EE:FF"
    assert router.display_name == "router.lan"
    assert router.latency_ms == 1.5
    assert observations[1].hardware_address is None
    assert observations[1].display_name is None


def test_parse_nmap_xml_rejects_garbage():
    with pytest.raises(ValueError):
        parse_nmap_xml("<nmaprun><host>")
    with pytest.raises(ValueError):
        parse_nmap_xml("<scan/>")


@pytest.mark.asyncio
async def test_nmap_discovery_runs_ping_scan(monkeypatch):
    seen = {}

    async def fake_exec(*cmd, **kwargs):
        seen["cmd"] = cmd
        return FakeProcess(0, NMAP_XML.encode())

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
    observations = await NmapDiscovery("192.168.1.0/24").discover()

    assert seen["cmd"] == ("nmap", "-sn", "-T4", "-oX", "-", "192.168.1.0/24")
    assert len(observations) == 2


@pytest.mark.asyncio
async def test_nmap_failure_raises_discovery_error(monkeypatch):
    async def fake_exec(*cmd, **kwargs):
        return FakeProcess(1, b"", b"You requested a scan type which requires root privileges.")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
    with pytest.raises(DiscoveryError, match="root privileges"):
        await NmapDiscovery("192.168.1.0/24").discover()


@pytest.mark.asyncio
async def test_ping_sweep_reports_answering_hosts():
    probe = FakeProbe(
        results={
            "192.168.1.1": ProbeOutcome(alive=True, latency_ms=0.4),
            "192.168.1.5": ProbeOutcome(alive=True, latency_ms=2.0),
            "192.168.1.6": OSError("network unreachable"),
        }
    )
    sweep = PingSweepDiscovery("192.168.1.0/29", probe, timeout_sec=0.5)

    observations = await sweep.discover()

    assert sorted(probe.calls) == [f"192.168.1.{i}" for i in range(1, 7)]
    assert [(o.address, o.latency_ms) for o in observations] == [("192.168.1.1", 0.4), ("192.168.1.5", 2.0)]


def test_ping_sweep_is_capped():
    sweep = PingSweepDiscovery("10.0.0.0/20", FakeProbe())
    hosts = sweep._hosts()
    assert len(hosts) == MAX_SWEEP_HOSTS
    assert hosts[0] == "10.0.0.1"


def test_build_discovery_prefers_nmap(monkeypatch):
    cfg = AgentSettings(discovery_subnet="192.168.1.0/24")

    monkeypatch.setattr("lanwatch_agent.discovery.shutil.which", lambda name: "/usr/bin/nmap")
    assert isinstance(build_discovery(cfg), NmapDiscovery)

    monkeypatch.setattr("lanwatch_agent.discovery.shutil.which", lambda name: None)
    discovery = build_discovery(cfg, probe=FakeProbe())
    assert isinstance(discovery, PingSweepDiscovery)
    assert discovery.subnet == "192.168.1.0/24"
