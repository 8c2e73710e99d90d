"""
Event Outbox

Audit entries and notifications queued on a unit of work are published here
after COMMIT. A daemon worker thread delivers them to the audit sink and the
notifier; a failing delivery is logged and dropped, and never reaches the
operation that produced it.
"""

import logging
import queue
import threading
from typing import Iterable, Optional

from database import OutboxEvent

logger = logging.getLogger(__name__)

_STOP = object()


class EventDispatcher:
    """Single-worker post-commit dispatcher."""

    def __init__(self, audit_sink=None, notifier=None):
        self.audit_sink = audit_sink
        self.notifier = notifier
        self._queue: "queue.Queue" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self.delivered = 0
        self.dropped = 0

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._worker, name="exchange-outbox", daemon=True)
        self._thread.start()
        logger.info("Event dispatcher started")

    def stop(self, timeout: float = 5.0):
        if not self._thread:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None
        logger.info(f"Event dispatcher stopped (delivered={self.delivered}, dropped={self.dropped})")

    def publish(self, events: Iterable[OutboxEvent]):
        """Enqueue committed events. Never raises into the caller."""
        for event in events:
            self._queue.put(event)

    def drain(self):
        """Block until every published event has been handled."""
        self._queue.join()

    def _worker(self):
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                self.deliver(event)
            finally:
                self._queue.task_done()

    def deliver(self, event: OutboxEvent):
        try:
            if event.channel == "audit":
                if self.audit_sink is not None:
                    self.audit_sink.record(
                        event.entity, event.entity_id, event.kind, event.payload, event.actor_id
                    )
            elif self.notifier is not None:
                self.notifier.notify(event.kind, event.payload)
            self.delivered += 1
        except Exception as e:
            self.dropped += 1
            logger.error(f"[Outbox] Dropped {event.channel} event {event.kind}: {e}", exc_info=True)
