import pytest

from lanwatch_agent.config import AgentSettings
from lanwatch_agent.discovery import DiscoveryError
from lanwatch_agent.models import DeviceStatus
from lanwatch_agent.monitor import Monitor

from fakes import DOWN, UP, FakeDiscovery, FakeProbe, FakeStore


@pytest.fixture
def cfg():
    return AgentSettings(
        agent_id="edge-test",
        heartbeat_interval_sec=0,
        probe_timeout_sec=0.5,
        store_retry_backoff_sec=0,
        discovery_subnet="192.168.1.0/24",
    )


@pytest.mark.asyncio
async def test_discovery_pass_seeds_registry_as_online(cfg):
    store = FakeStore()
    discovery = FakeDiscovery(
        [
            {"address": "192.168.1.1", "hardware_address": "aa:bb:cc:dd:ee:ff", "latency_ms": 0.8},
            {"address": "192.168.1.20"},
        ]
    )
    monitor = Monitor(cfg, discovery, store, probe=FakeProbe())

    new_devices = await monitor.discovery_pass()

    assert new_devices == 2
    devices = await monitor.registry.all()
    assert {d.status for d in devices} == {DeviceStatus.ONLINE}
    assert {w[0] for w in store.writes} == {"aa:bb:cc:dd:ee:ff", "192.168.1.20"}
    assert store.docs["aa:bb:cc:dd:ee:ff"]["latency_ms"] == 0.8
    assert store.docs["aa:bb:cc:dd:ee:ff"]["first_seen_at"] is not None
    assert store.heartbeats == ["edge-test"]


@pytest.mark.asyncio
async def test_failed_discovery_seeds_nothing(cfg):
    store = FakeStore()
    monitor = Monitor(cfg, FakeDiscovery(error=DiscoveryError("nmap timed out")), store, probe=FakeProbe())

    assert await monitor.discovery_pass() == 0
    assert len(monitor.registry) == 0
    assert store.writes == []
    assert store.heartbeats == ["edge-test"]


@pytest.mark.asyncio
async def test_invalid_addresses_are_skipped(cfg):
    store = FakeStore()
    monitor = Monitor(cfg, FakeDiscovery([{"address": "bogus"}, {"address": "192.168.1.5"}]), store, probe=FakeProbe())

    assert await monitor.discovery_pass() == 1
    assert len(monitor.registry) == 1


@pytest.mark.asyncio
async def test_device_goes_offline_after_three_failed_cycles(cfg):
    store = FakeStore()
    probe = FakeProbe(results={"192.168.1.5": [DOWN, DOWN, DOWN, UP]})
    monitor = Monitor(cfg, FakeDiscovery([{"address": "192.168.1.5"}]), store, probe=probe)
    await monitor.discovery_pass()

    statuses = []
    for _ in range(4):
        await monitor.heartbeat_cycle()
        statuses.append(store.docs["192.168.1.5"]["status"])

    assert statuses == [DeviceStatus.ONLINE, DeviceStatus.ONLINE, DeviceStatus.OFFLINE, DeviceStatus.ONLINE]
    assert store.docs["192.168.1.5"]["consecutive_failures"] == 0
    assert len(store.heartbeats) == 5


@pytest.mark.asyncio
async def test_heartbeat_cycle_without_devices_only_sends_heartbeat(cfg):
    store = FakeStore()
    probe = FakeProbe()
    monitor = Monitor(cfg, FakeDiscovery(), store, probe=probe)

    assert await monitor.heartbeat_cycle() == []
    assert probe.calls == []
    assert store.heartbeats == ["edge-test"]


@pytest.mark.asyncio
async def test_run_stops_after_current_cycle(cfg):
    store = FakeStore()
    probe = FakeProbe(default=True)
    monitor = Monitor(cfg, FakeDiscovery([{"address": "192.168.1.5"}]), store, probe=probe)

    original = probe.probe

    async def probe_then_stop(address, timeout):
        if len(probe.calls) >= 2:
            monitor.stop()
        return await original(address, timeout)

    probe.probe = probe_then_stop
    await monitor.run()

    assert monitor.stopping
    assert len(probe.calls) == 3
    # discovery + three complete probe cycles, each fully written
    assert len(store.writes) == 4


@pytest.mark.asyncio
async def test_run_returns_immediately_when_already_stopped(cfg):
    store = FakeStore()
    probe = FakeProbe(default=True)
    monitor = Monitor(cfg, FakeDiscovery([{"address": "192.168.1.5"}]), store, probe=probe)
    monitor.stop()

    await monitor.run()

    assert probe.calls == []
    assert len(store.writes) == 1


@pytest.mark.asyncio
async def test_restarted_agent_continues_from_stored_record(cfg):
    store = FakeStore()
    store.docs["192.168.1.20"] = {
        "status": "offline",
        "first_seen_at": "2026-03-01T12:00:00+00:00",
        "last_seen_at": "2026-03-01T12:00:00+00:00",
        "observation_count": 41,
    }
    monitor = Monitor(cfg, FakeDiscovery([{"address": "192.168.1.20"}]), store, probe=FakeProbe())

    await monitor.discovery_pass()

    [device] = await monitor.registry.all()
    assert device.status == DeviceStatus.ONLINE
    assert device.observation_count == 42
    _, fields = store.writes[-1]
    assert fields["status"] == DeviceStatus.ONLINE
    assert fields["first_seen_at"].isoformat() == "2026-03-01T12:00:00+00:00"
