from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, token: str, title: str, body: str, metadata: dict[str, str]) -> bool:
        """Deliver one push notification. False (or an exception) means it was not delivered."""
        ...


class LoggingNotifier:
    """Fallback transport: writes the notification to the log."""

    def notify(self, token: str, title: str, body: str, metadata: dict[str, str]) -> bool:
        logger.info("Notification to %s: %s - %s %s", token, title, body, metadata)
        return True


class HttpPushNotifier:
    """
    Posts notifications to a push gateway as JSON:
    {"token": ..., "notification": {"title": ..., "body": ...}, "data": {...}}
    """

    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)

    def notify(self, token: str, title: str, body: str, metadata: dict[str, str]) -> bool:
        payload = {
            "token": token,
            "notification": {"title": title, "body": body},
            "data": metadata,
        }
        response = self._client.post(self.url, json=payload)
        if response.is_success:
            logger.debug("Push notification sent to %s", token)
            return True
        logger.warning("Push gateway rejected notification to %s: HTTP %s", token, response.status_code)
        return False

    def close(self) -> None:
        self._client.close()
