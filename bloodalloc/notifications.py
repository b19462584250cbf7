"""
Blood Allocation Engine - Notification/Audit Emitter
=====================================================
Hands allocation outcomes to the external notification subsystem.

Delivery never runs on the allocation path: `QueuedEmitter.emit` puts
the event on a bounded queue and returns, and a daemon worker drains the
queue into a sink. A full queue drops the event (logged); a failing
sink is logged and the worker carries on.

Event kinds follow the host application's notification types:
    response   a request received units
    decline    reserved units were returned (withdrawal / facility decline)
    emergency  Critical shortage broadcast
    info       non-critical shortage
    cycle      full cycle report, for the audit store
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol

import requests

from bloodalloc.config import NOTIFICATION_QUEUE_SIZE, WEBHOOK_TIMEOUT
from bloodalloc.models import EscalationSignal, utcnow

logger = logging.getLogger(__name__)

_STOP = object()


@dataclass(frozen=True)
class Notification:
    kind: str
    payload: dict
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "type": self.kind,
            "payload": self.payload,
            "date": self.created_at.isoformat(),
        }


class AuditSink(Protocol):
    """Receiver of emitted events (persistence, messaging, ...)."""

    def publish(self, notification: Notification) -> None:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# SINKS
# ═══════════════════════════════════════════════════════════════════════════

class MemorySink:
    """Keeps every event in memory. Used by the demo, dashboard and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self._events: list[Notification] = []

    def publish(self, notification: Notification) -> None:
        with self._lock:
            self._events.append(notification)

    @property
    def events(self) -> list[Notification]:
        with self._lock:
            return list(self._events)

    def of_kind(self, kind: str) -> list[Notification]:
        return [e for e in self.events if e.kind == kind]


class WebhookSink:
    """POSTs each event as JSON to the host application's notification endpoint."""

    def __init__(self, url: str, timeout: float = WEBHOOK_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": "BloodAllocationEngine/1.0"})

    def publish(self, notification: Notification) -> None:
        response = self.session.post(self.url, json=notification.to_dict(), timeout=self.timeout)
        response.raise_for_status()


# ═══════════════════════════════════════════════════════════════════════════
# EMITTER
# ═══════════════════════════════════════════════════════════════════════════

class QueuedEmitter:
    """
    Fire-and-forget front for a sink.

    Also satisfies the shortage tracker's Broadcaster protocol, so the
    same emitter carries emergency broadcasts.
    """

    def __init__(self, sink: AuditSink, maxsize: int = NOTIFICATION_QUEUE_SIZE):
        self.sink = sink
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._worker: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()
        self.dropped = 0

    def _ensure_worker(self) -> None:
        with self._start_lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(
                    target=self._drain, name="bloodalloc-emitter", daemon=True,
                )
                self._worker.start()

    def emit(self, notification: Notification) -> bool:
        """Queue `notification`. Returns False if it was dropped."""
        self._ensure_worker()
        try:
            self._queue.put_nowait(notification)
            return True
        except queue.Full:
            self.dropped += 1
            logger.warning("Notification queue full; dropped %s event", notification.kind)
            return False

    def broadcast(self, signal: EscalationSignal) -> None:
        self.emit(Notification("emergency", signal.to_dict(), created_at=signal.raised_at))

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until every queued event has been handed to the sink."""
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def close(self, timeout: float = 5.0) -> None:
        if self._worker is None:
            return
        self.flush(timeout)
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.warning("Emitter did not drain before close")
            return
        self._worker.join(timeout)

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self.sink.publish(item)
            except Exception:
                logger.exception("Failed to deliver %s event", getattr(item, "kind", "?"))
            finally:
                self._queue.task_done()


def default_emitter() -> QueuedEmitter:
    """Webhook delivery when BLOODALLOC_WEBHOOK_URL is set, in-memory otherwise."""
    from bloodalloc.config import NOTIFICATION_WEBHOOK_URL

    if NOTIFICATION_WEBHOOK_URL:
        return QueuedEmitter(WebhookSink(NOTIFICATION_WEBHOOK_URL))
    return QueuedEmitter(MemorySink())
