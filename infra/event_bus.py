"""
Audit Emitter
-------------
Fire-and-forget delivery of denial events to audit publishers.

Design:
- A decision is final before its audit event is emitted
- Publishing runs on a small thread pool; the caller never waits
- In-flight futures are bounded; events beyond the bound are dropped
  with a warning rather than blocking a permission check
- flush(timeout) drains in-flight events on process exit

Event shape:
    {"type": "scope" | "bash" | "tool", "agentId": str,
     "denied": "<objectType>:<objectId>", "reason": str, "command": str?}
"""

import concurrent.futures
import threading
from typing import Any, Dict, List, Optional, Protocol, Set

import httpx

from infra.audit import AuditLog
from infra.logging import get_logger

DEFAULT_MAX_IN_FLIGHT = 256
DEFAULT_FLUSH_TIMEOUT = 5.0


class AuditPublisher(Protocol):
    """Anything that can take a denial event."""

    def publish(self, event: Dict[str, Any]) -> None:
        ...


class AuditLogPublisher:
    """Persists events to the HMAC-chained audit log."""

    def __init__(self, audit_log: AuditLog):
        self._audit_log = audit_log

    def publish(self, event: Dict[str, Any]) -> None:
        self._audit_log.record_denial(event)


class HttpEventPublisher:
    """
    POSTs events as JSON to an event bus endpoint.

    Non-2xx responses raise, so the emitter logs them as failed deliveries.
    """

    def __init__(self, url: str, timeout_seconds: float = 5.0, topic: str = "gatekeeper.audit.denied"):
        self._url = url
        self._topic = topic
        self._client = httpx.Client(
            timeout=timeout_seconds,
            headers={"Content-Type": "application/json", "User-Agent": "gatekeeper/1.0"},
        )

    def publish(self, event: Dict[str, Any]) -> None:
        response = self._client.post(self._url, json={"topic": self._topic, "data": event})
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()


class AuditEmitter:
    """
    Bounded, fire-and-forget audit emission.

    Usage:
        emitter = AuditEmitter([AuditLogPublisher(audit_log)])
        emitter.emit({"type": "scope", "agentId": "dev", ...})
        ...
        emitter.flush(timeout=5.0)
    """

    def __init__(
        self,
        publishers: Optional[List[AuditPublisher]] = None,
        max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
        max_workers: int = 2,
    ):
        self._publishers: List[AuditPublisher] = list(publishers or [])
        self._max_in_flight = max_in_flight
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="audit"
        )
        self._in_flight: Set[concurrent.futures.Future] = set()
        self._lock = threading.Lock()
        self._dropped = 0
        self._failed = 0
        self._closed = False
        self._logger = get_logger("infra.event_bus")

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def failed(self) -> int:
        return self._failed

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def add_publisher(self, publisher: AuditPublisher) -> None:
        self._publishers.append(publisher)

    def emit(self, event: Dict[str, Any]) -> bool:
        """
        Schedule an event for publication. Never blocks, never raises.

        Returns False when the event was dropped.
        """
        if not self._publishers:
            return False

        with self._lock:
            if self._closed:
                self._dropped += 1
                self._logger.warning(f"Audit emitter closed, dropping {event.get('type')} event")
                return False
            if len(self._in_flight) >= self._max_in_flight:
                self._dropped += 1
                self._logger.warning(
                    f"Audit backlog full ({self._max_in_flight} in flight), "
                    f"dropping {event.get('type')} event for {event.get('denied')}"
                )
                return False

            future = self._executor.submit(self._publish, dict(event))
            self._in_flight.add(future)

        future.add_done_callback(self._on_done)
        return True

    def _publish(self, event: Dict[str, Any]) -> None:
        for publisher in self._publishers:
            try:
                publisher.publish(event)
            except Exception as e:
                # A failing sink must not starve the others
                with self._lock:
                    self._failed += 1
                self._logger.error(f"Audit publish failed via {type(publisher).__name__}: {e}")

    def _on_done(self, future: concurrent.futures.Future) -> None:
        with self._lock:
            self._in_flight.discard(future)

    def flush(self, timeout: float = DEFAULT_FLUSH_TIMEOUT) -> bool:
        """
        Wait for in-flight events. Returns True if all completed in time.
        """
        with self._lock:
            pending = list(self._in_flight)
        if not pending:
            return True

        done, not_done = concurrent.futures.wait(pending, timeout=timeout)
        if not_done:
            self._logger.warning(f"Audit flush timed out with {len(not_done)} events pending")
            return False
        self._logger.debug(f"Flushed {len(done)} audit events")
        return True

    def close(self, timeout: float = DEFAULT_FLUSH_TIMEOUT) -> bool:
        """Flush, then stop accepting events and release publishers."""
        flushed = self.flush(timeout)
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=False)
        for publisher in self._publishers:
            close = getattr(publisher, "close", None)
            if close is not None:
                close()
        return flushed


def build_emitter(
    audit_log: Optional[AuditLog] = None,
    event_bus_url: Optional[str] = None,
    max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
) -> AuditEmitter:
    """Assemble an emitter from the configured sinks."""
    publishers: List[AuditPublisher] = []
    if audit_log is not None:
        publishers.append(AuditLogPublisher(audit_log))
    if event_bus_url:
        publishers.append(HttpEventPublisher(event_bus_url))
    return AuditEmitter(publishers, max_in_flight=max_in_flight)
