"""Shared helpers for the server tests."""
from datetime import datetime, timedelta, timezone

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
HEARTBEAT_MS = 60_000
THRESHOLD_MS = 3 * HEARTBEAT_MS


class FakeClock:
    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += timedelta(milliseconds=ms)


class RecordingNotifier:
    """Delivers everything except tokens listed in `reject` (False) or `broken` (raises)."""

    def __init__(self, reject=(), broken=()):
        self.reject = set(reject)
        self.broken = set(broken)
        self.sent = []

    def notify(self, token, title, body, metadata):
        if token in self.broken:
            raise ConnectionError(f"gateway unreachable for {token}")
        if token in self.reject:
            return False
        self.sent.append((token, title, body, metadata))
        return True


def edge_fields(**overrides):
    fields = {
        "agent_id": "edge-001",
        "address": "192.168.1.10",
        "status": "online",
        "first_seen_at": T0,
        "last_seen_at": T0,
        "consecutive_failures": 0,
        "observation_count": 1,
    }
    fields.update(overrides)
    return fields
