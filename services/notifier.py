"""
Notifiers

notify(kind, payload) is called by the outbox worker after commit.
Delivery content is the receiver's concern; these only transport the event.
"""

import logging
from typing import Any, Dict

import httpx

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 5.0


class LogNotifier:
    """Default notifier: one INFO line per event."""

    def notify(self, kind: str, payload: Dict[str, Any]):
        logger.info(f"[Notify] {kind}: {payload}")


class WebhookNotifier:
    """POST {kind, payload} as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: float = WEBHOOK_TIMEOUT):
        self.url = url
        self.timeout = timeout

    def notify(self, kind: str, payload: Dict[str, Any]):
        with httpx.Client(timeout=self.timeout) as client:
            response = client.post(self.url, json={"kind": kind, "payload": payload})
            response.raise_for_status()
        logger.debug(f"[Notify] {kind} delivered to webhook ({response.status_code})")
