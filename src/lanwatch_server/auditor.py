"""
Backend staleness auditor.

Recomputes a device's status from `now - last_seen_at` alone, so a device
cannot stay "online" just because the edge agent that owns it died or lost
its network while still believing the device is up.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .alerting import AlertDispatcher
from .schemas import AlertKind, AlertOut, DeviceStatus
from .store import AUDITOR, EDGE, ChangeEvent, DeviceNotFound, DeviceStore, VersionConflict

logger = logging.getLogger(__name__)

_EDGES = {
    (DeviceStatus.ONLINE.value, DeviceStatus.OFFLINE.value): AlertKind.WENT_OFFLINE,
    (DeviceStatus.OFFLINE.value, DeviceStatus.ONLINE.value): AlertKind.CAME_ONLINE,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StalenessAuditor:
    def __init__(
        self,
        store: DeviceStore,
        dispatcher: AlertDispatcher,
        heartbeat_interval_ms: int = 60_000,
        offline_threshold_checks: int = 3,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.offline_threshold_ms = offline_threshold_checks * heartbeat_interval_ms
        self._clock = clock

    def age_ms(self, last_seen_at: datetime, now: datetime) -> float:
        return (now - last_seen_at).total_seconds() * 1000.0

    def is_stale(self, doc: dict[str, Any], now: datetime) -> bool:
        last_seen = doc.get("last_seen_at")
        return last_seen is not None and self.age_ms(last_seen, now) > self.offline_threshold_ms

    def on_change(self, event: ChangeEvent) -> Optional[AlertOut]:
        """
        Change-feed handler. Safe to run more than once for the same change.
        """
        after = event.after
        if after is None:
            logger.debug("Device %s deleted, no action needed", event.device_id)
            return None

        now = self._clock()
        if after.get("first_seen_at") is None:
            # An edge record without first_seen_at has simply never answered a probe.
            if event.writer != EDGE:
                self._stamp_first_seen(after, now)
            return None

        # The edge already saw this edge itself; alert once, nothing to flip.
        if event.writer == EDGE and event.before is not None:
            kind = _EDGES.get((event.before.get("status"), after.get("status")))
            if kind == AlertKind.CAME_ONLINE and self.is_stale(after, now):
                # An edge reconnecting after a partition still believes the
                # device is up; its evidence is older than our offline flip.
                return self._flip(after, DeviceStatus.OFFLINE, None)
            if kind is not None:
                return self.dispatcher.on_transition(after, kind, authority=EDGE)

        if event.writer == EDGE and after.get("status") == DeviceStatus.OFFLINE.value:
            # A sighting the edge has not yet debounced into a recovery. Its own
            # online write will carry the came-online edge.
            return None

        return self.recompute(after, event.before, now)

    def recompute(
        self,
        doc: dict[str, Any],
        before: Optional[dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> Optional[AlertOut]:
        """
        Status from timestamps only. Never looks at consecutive_failures.

        Flipping back online needs fresh evidence: last_seen_at must have moved
        forward in this change. Otherwise an edge that declared the device
        offline right at the threshold would be overruled.
        """
        last_seen = doc.get("last_seen_at")
        if last_seen is None:
            return None

        now = now or self._clock()
        stale = self.is_stale(doc, now)
        status = doc.get("status")

        if stale and status == DeviceStatus.ONLINE.value:
            logger.info(
                "Device %s (%s) not seen for %.0fs, marking offline",
                doc["device_id"], doc.get("address"), self.age_ms(last_seen, now) / 1000,
            )
            return self._flip(doc, DeviceStatus.OFFLINE, AlertKind.WENT_OFFLINE)

        if not stale and status == DeviceStatus.OFFLINE.value and self._seen_since(before, last_seen):
            logger.info("Device %s (%s) seen again, marking online", doc["device_id"], doc.get("address"))
            return self._flip(doc, DeviceStatus.ONLINE, AlertKind.CAME_ONLINE)

        return None

    def audit_all(self, now: Optional[datetime] = None) -> list[AlertOut]:
        """
        Re-audit every device. Catches devices nobody writes to any more,
        which is exactly what happens when their edge agent is gone.
        """
        now = now or self._clock()
        alerts = []
        for doc in self.store.all():
            alert = self.recompute(doc, doc, now)
            if alert is not None:
                alerts.append(alert)
        if alerts:
            logger.info("Audit sweep flipped %d devices", len(alerts))
        return alerts

    def _seen_since(self, before: Optional[dict[str, Any]], last_seen: datetime) -> bool:
        if before is None or before.get("last_seen_at") is None:
            return True
        return last_seen > before["last_seen_at"]

    def _flip(
        self, doc: dict[str, Any], status: DeviceStatus, kind: Optional[AlertKind]
    ) -> Optional[AlertOut]:
        try:
            updated = self.store.conditional_update(
                doc["device_id"], doc["version"], {"status": status.value}, writer=AUDITOR
            )
        except (VersionConflict, DeviceNotFound) as e:
            # Someone else wrote first; their write gets its own audit.
            logger.debug("Dropping status flip for %s: %s", doc["device_id"], e)
            return None
        if kind is None:
            return None
        return self.dispatcher.on_transition(updated, kind, authority=AUDITOR)

    def _stamp_first_seen(self, doc: dict[str, Any], now: datetime) -> None:
        """Devices inserted directly (not through an edge agent) start out online."""
        fields = {
            "first_seen_at": doc.get("last_seen_at") or now,
            "last_seen_at": doc.get("last_seen_at") or now,
            "status": DeviceStatus.ONLINE.value,
            "observation_count": 1,
        }
        logger.info("Setting first_seen_at for new device: %s", doc["device_id"])
        try:
            self.store.conditional_update(doc["device_id"], doc["version"], fields, writer=AUDITOR)
        except (VersionConflict, DeviceNotFound) as e:
            logger.debug("Dropping first-seen stamp for %s: %s", doc["device_id"], e)
