from datetime import datetime, timedelta, timezone


def _iso(dt: datetime) -> str:
    return dt.isoformat()


def _parse(ts: str) -> datetime:
    return datetime.fromisoformat(ts.replace("Z", "+00:00"))


def _edge_payload(**overrides):
    now = datetime.now(timezone.utc)
    payload = {
        "agent_id": "edge-001",
        "address": "192.168.1.10",
        "status": "online",
        "first_seen_at": _iso(now - timedelta(hours=1)),
        "last_seen_at": _iso(now),
        "consecutive_failures": 0,
        "observation_count": 12,
        "latency_ms": 0.7,
    }
    payload.update(overrides)
    return payload


def test_health_check(client):
    response = client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert "service" in data


def test_edge_patch_creates_and_merges(client):
    response = client.patch("/api/devices/aa:bb:cc:dd:ee:ff", json=_edge_payload())
    assert response.status_code == 200
    data = response.json()
    assert data["device_id"] == "aa:bb:cc:dd:ee:ff"
    assert data["status"] == "online"
    assert data["version"] == 1

    response = client.patch("/api/devices/aa:bb:cc:dd:ee:ff", json={"display_name": "printer", "consecutive_failures": 1})
    assert response.status_code == 200
    data = response.json()
    assert data["display_name"] == "printer"
    assert data["consecutive_failures"] == 1
    assert data["observation_count"] == 12
    assert data["version"] == 2

    response = client.get("/api/devices/aa:bb:cc:dd:ee:ff")
    assert response.status_code == 200
    assert response.json()["display_name"] == "printer"


def test_patch_rejects_unknown_fields(client):
    response = client.patch("/api/devices/192.168.1.10", json={"version": 7})
    assert response.status_code == 422


def test_patch_rejects_first_seen_after_last_seen(client):
    now = datetime.now(timezone.utc)
    payload = _edge_payload(first_seen_at=_iso(now), last_seen_at=_iso(now - timedelta(minutes=1)))
    response = client.patch("/api/devices/192.168.1.10", json=payload)
    assert response.status_code == 422
    assert client.get("/api/devices/192.168.1.10").status_code == 404


def test_stale_edge_write_is_flipped_offline(client):
    old = datetime.now(timezone.utc) - timedelta(minutes=10)
    payload = _edge_payload(first_seen_at=_iso(old - timedelta(hours=1)), last_seen_at=_iso(old))
    client.patch("/api/devices/192.168.1.10", json=payload)

    response = client.patch("/api/devices/192.168.1.10", json={"consecutive_failures": 2})
    assert response.json()["status"] == "offline"

    alerts = client.get("/api/alerts", params={"device_id": "192.168.1.10"}).json()["alerts"]
    assert [a["kind"] for a in alerts] == ["went-offline"]


def test_list_devices_filters_by_status(client):
    client.patch("/api/devices/192.168.1.10", json=_edge_payload())
    client.patch("/api/devices/192.168.1.11", json=_edge_payload(address="192.168.1.11"))
    client.patch("/api/devices/192.168.1.11", json={"status": "offline", "consecutive_failures": 3})

    all_devices = client.get("/api/devices").json()
    assert [d["device_id"] for d in all_devices] == ["192.168.1.10", "192.168.1.11"]

    offline = client.get("/api/devices", params={"status": "offline"}).json()
    assert [d["device_id"] for d in offline] == ["192.168.1.11"]

    assert client.get("/api/devices", params={"status": "sleeping"}).status_code == 422


def test_get_unknown_device_is_404(client):
    assert client.get("/api/devices/10.9.9.9").status_code == 404


def test_admin_insert_is_stamped_online(client):
    response = client.post("/api/devices", json={"device_id": "10.0.0.5", "address": "10.0.0.5", "display_name": "camera"})
    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "online"
    assert data["first_seen_at"] is not None
    assert data["first_seen_at"] == data["last_seen_at"]
    assert data["observation_count"] == 1

    duplicate = client.post("/api/devices", json={"device_id": "10.0.0.5"})
    assert duplicate.status_code == 409


def test_simulate_down_flips_device_and_alerts(client):
    client.patch("/api/devices/192.168.1.10", json=_edge_payload(display_name="nas"))

    response = client.post("/api/devices/192.168.1.10/simulate-down")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "success"
    assert data["device"]["status"] == "offline"
    assert _parse(data["device"]["last_seen_at"]) <= datetime.now(timezone.utc) - timedelta(minutes=8)

    alerts = client.get("/api/alerts").json()["alerts"]
    assert [(a["device_id"], a["kind"], a["message"]) for a in alerts] == [
        ("192.168.1.10", "went-offline", "Device nas went offline."),
    ]


def test_simulate_down_unknown_device(client):
    assert client.post("/api/devices/10.9.9.9/simulate-down").status_code == 404


def test_simulate_down_on_brand_new_device_conflicts(client):
    client.post("/api/devices", json={"device_id": "10.0.0.5", "address": "10.0.0.5"})

    response = client.post("/api/devices/10.0.0.5/simulate-down")

    assert response.status_code == 409
    assert client.get("/api/devices/10.0.0.5").json()["status"] == "online"
