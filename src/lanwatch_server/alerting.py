from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.orm import sessionmaker

from .models.alert import Alert
from .models.subscriber import Subscriber
from .notifier import Notifier
from .schemas import AlertKind, AlertOut

logger = logging.getLogger(__name__)

_TITLES = {
    AlertKind.WENT_OFFLINE: "Device Offline",
    AlertKind.CAME_ONLINE: "Device Online",
}


def alert_message(device: dict[str, Any], kind: AlertKind) -> str:
    name = device.get("display_name") or device.get("address") or device["device_id"]
    if kind == AlertKind.WENT_OFFLINE:
        return f"Device {name} went offline."
    return f"Device {name} is back online."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertDispatcher:
    """
    Records one alert per status transition and fans it out to subscribers.

    Delivery is at-least-once: a retried transition may produce a second
    alert, and consumers must tolerate that.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        notifier: Notifier,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self.notifier = notifier
        self._clock = clock

    def on_transition(self, device: dict[str, Any], kind: AlertKind, authority: str) -> AlertOut:
        message = alert_message(device, kind)
        with self._session_factory() as db:
            alert = Alert(
                device_id=device["device_id"],
                agent_id=device.get("agent_id"),
                kind=kind.value,
                message=message,
                created_at=self._clock().astimezone(timezone.utc).replace(tzinfo=None),
                acknowledged=False,
            )
            db.add(alert)
            db.commit()
            out = AlertOut.model_validate(alert)
            tokens = [token for sub in db.query(Subscriber).all() for token in (sub.tokens or [])]

        logger.info("Alert %s for device %s (%s, detected by %s)", kind.value, out.device_id, message, authority)
        delivered = self._notify_all(tokens, _TITLES[kind], message, {"device_id": out.device_id, "type": kind.value})
        logger.info("Alert %s delivered to %d/%d tokens", out.id, delivered, len(tokens))
        return out

    def _notify_all(self, tokens: list[str], title: str, body: str, metadata: dict[str, str]) -> int:
        delivered = 0
        for token in tokens:
            try:
                ok = self.notifier.notify(token, title, body, metadata)
            except Exception as e:
                # One broken token or gateway hiccup must not starve the others.
                logger.error("Error sending notification to %s: %s", token, e)
                continue
            if ok:
                delivered += 1
            else:
                logger.warning("Notification to %s was not delivered", token)
        return delivered
