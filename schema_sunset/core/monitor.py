"""
Access monitoring for deprecated elements.

Observers call record() from any thread; events are queued and written to the
metadata store in batches by a background flusher. Recording never raises and
never blocks the observed operation.
"""

import queue
import re
import threading
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Union

from .config import (
    MONITOR_BATCH_SIZE,
    MONITOR_FLUSH_INTERVAL_SEC,
    MONITOR_QUEUE_MAX,
    MONITOR_RETENTION_DAYS,
)
from .dao import DeprecationStore
from .schema import AccessEvent, AccessOperation, AccessSource, AccessStats, Element

from util.logging import logger

_IDENTIFIER_RE = re.compile(r'"((?:[^"]|"")+)"|\b([A-Za-z_][A-Za-z0-9_]*)\b')
READ_VERBS = ("SELECT", "WITH", "EXPLAIN", "PRAGMA", "VALUES")


def query_operation(sql: str) -> AccessOperation:
    """Classify a statement by its leading verb; anything that is not a read is a write."""
    stripped = (sql or "").lstrip(" \t\r\n(").upper()
    return AccessOperation.READ if stripped.startswith(READ_VERBS) else AccessOperation.WRITE


class AccessMonitor:
    """Records and aggregates access to deprecated elements."""

    def __init__(self, store: DeprecationStore,
                 flush_interval: float = MONITOR_FLUSH_INTERVAL_SEC,
                 batch_size: int = MONITOR_BATCH_SIZE,
                 queue_max: int = MONITOR_QUEUE_MAX,
                 retention_days: int = MONITOR_RETENTION_DAYS,
                 clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.flush_interval = flush_interval
        self.batch_size = batch_size
        self.retention_days = retention_days
        self.clock = clock

        self._queue: "queue.Queue[AccessEvent]" = queue.Queue(maxsize=queue_max)
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._flush_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

        # visible name -> element, maintained by the orchestrator
        self._watched: Dict[str, Element] = {}
        self._watch_lock = threading.Lock()

        self.recorded = 0
        self.dropped = 0

    # Recording

    def record(self, event: AccessEvent) -> None:
        """Queue an access event. Never raises."""
        try:
            self._queue.put_nowait(event)
            self.recorded += 1
            if self._queue.qsize() >= self.batch_size:
                self._wake.set()
        except queue.Full:
            self.dropped += 1
            logger.warning(f"Access monitor queue full; dropped event for {event.element.key}")
        except Exception as e:
            self.dropped += 1
            logger.error(f"Access monitor failed to record event: {e}")

    def record_access(self, element: Element, operation: Union[AccessOperation, str],
                      source: Union[AccessSource, str] = AccessSource.UNKNOWN,
                      latency_ms: Optional[float] = None, source_identifier: Optional[str] = None,
                      timestamp: Optional[datetime] = None) -> None:
        """Build and queue an access event. Never raises."""
        try:
            event = AccessEvent(
                element=element,
                operation=AccessOperation(operation),
                source=AccessSource(source),
                timestamp=timestamp or self.clock(),
                latency_ms=latency_ms,
                source_identifier=source_identifier,
            )
        except Exception as e:
            self.dropped += 1
            logger.error(f"Access monitor rejected event for {element.key}: {e}")
            return
        self.record(event)

    def record_name_access(self, name: str, operation: Union[AccessOperation, str],
                           source: Union[AccessSource, str] = AccessSource.UNKNOWN,
                           latency_ms: Optional[float] = None, source_identifier: Optional[str] = None,
                           owner: Optional[str] = None) -> bool:
        """
        Record access by visible name, as seen by a query observer.

        Returns:
            True if the name belongs to a watched element
        """
        key = f"{owner}.{name}".lower() if owner else name.lower()
        with self._watch_lock:
            element = self._watched.get(key)
        if element is None:
            return False
        self.record_access(element, operation, source, latency_ms, source_identifier)
        return True

    def intercept_query(self, sql: str, source: Union[AccessSource, str] = AccessSource.UNKNOWN,
                        latency_ms: Optional[float] = None,
                        source_identifier: Optional[str] = "query-interceptor") -> List[str]:
        """
        Record access for every watched element a SQL statement names.

        Columns match only when their table is named in the same statement.
        The operation comes from the leading verb.

        Returns:
            Keys of the elements recorded
        """
        identifiers = {
            (quoted.replace('""', '"') or bare).lower() for quoted, bare in _IDENTIFIER_RE.findall(sql or "")
        }
        if not identifiers:
            return []

        with self._watch_lock:
            watched = list(self._watched.items())

        hits: Dict[str, Element] = {}
        for key, element in watched:
            owner, _, name = key.rpartition(".")
            if name in identifiers and (not owner or owner in identifiers):
                hits.setdefault(element.key, element)

        operation = query_operation(sql)
        for element in hits.values():
            self.record_access(element, operation, source, latency_ms, source_identifier)
        return list(hits)

    def watch(self, element: Element, visible_name: str):
        key = f"{element.owner}.{visible_name}".lower() if element.owner and element.kind.value == "column" \
            else visible_name.lower()
        with self._watch_lock:
            self._watched[key] = element
        logger.info(f"Monitoring access to {element.key} as '{visible_name}'")

    def unwatch(self, element: Element):
        with self._watch_lock:
            for key in [k for k, v in self._watched.items() if v == element]:
                del self._watched[key]

    def watched(self) -> List[Element]:
        with self._watch_lock:
            return list(self._watched.values())

    # Flushing

    def flush(self) -> int:
        """Write queued events to the store. Storage failures are logged and the batch dropped."""
        with self._flush_lock:
            batch: List[AccessEvent] = []
            while True:
                try:
                    batch.append(self._queue.get_nowait())
                except queue.Empty:
                    break

            if not batch:
                return 0

            try:
                self.store.insert_access_events(batch)
            except Exception as e:
                self.dropped += len(batch)
                logger.error(f"Access monitor flush failed; dropped {len(batch)} event(s): {e}")
                return 0

            per_element = Counter(event.element.key for event in batch)
            for element_key, count in per_element.items():
                sources = Counter(e.source.value for e in batch if e.element.key == element_key)
                logger.log_access_alert(element_key, count, dict(sources))
            return len(batch)

    def start(self):
        """Start the background flusher."""
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="access-monitor", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        """Stop the flusher and write whatever is still queued."""
        self._stop.set()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        self.flush()

    def _run(self):
        while not self._stop.is_set():
            self._wake.wait(self.flush_interval)
            self._wake.clear()
            self.flush()

    # Aggregation

    def get_stats(self, element: Element, window: timedelta, now: Optional[datetime] = None) -> AccessStats:
        """Usage of an element within a trailing window, from a consistent snapshot."""
        now = now or self.clock()
        rows = self.store.access_breakdown(element.key, now - window)

        stats = AccessStats(element_key=element.key, window_days=window.total_seconds() / 86400)
        by_source: Counter = Counter()
        by_operation: Counter = Counter()
        for source, operation, count, last_seen in rows:
            by_source[source] += count
            by_operation[operation] += count
            seen = datetime.fromisoformat(last_seen)
            if stats.last_seen is None or seen > stats.last_seen:
                stats.last_seen = seen

        stats.total_events = sum(by_source.values())
        stats.by_source = dict(by_source)
        stats.by_operation = dict(by_operation)
        if stats.total_events:
            stats.average_latency_ms = self.store.average_latency(element.key, now - window)
        return stats

    def removal_candidates(self, days: int = 30, now: Optional[datetime] = None) -> List[Element]:
        """Watched elements with no recorded access in the last `days` days."""
        now = now or self.clock()
        with self._watch_lock:
            elements = list(dict.fromkeys(self._watched.values()))
        return [
            element for element in elements
            if self.get_stats(element, timedelta(days=days), now).total_events == 0
        ]

    def events_since(self, element: Element, since: datetime) -> int:
        """Count stored events for an element strictly after a point in time."""
        return self.store.count_access_since(element.key, since)

    def roll_up(self, now: Optional[datetime] = None) -> int:
        """Aggregate and discard raw events older than the retention window."""
        now = now or self.clock()
        rolled = self.store.roll_up_access_events(now - timedelta(days=self.retention_days))
        if rolled:
            logger.log_operation("monitor.roll_up", "success", {"events": rolled})
        return rolled
