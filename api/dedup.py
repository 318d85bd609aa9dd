"""
In-process deduplication and the fast-path event buffer.

- dedupe_batch: collapse duplicate identities inside one submission
- EventBuffer: accumulates records for the fast path, skipping identities
  seen within a short window, with an atomic drain
- BufferFlusher: timer thread that drains the buffer into the store

The buffer is a volume reducer, not a correctness boundary. Uniqueness is
enforced by the store's unique indexes. Records sitting in the buffer are
lost if the process dies before the next flush; the durable queue path
still persists them, so this trade is accepted for the lower latency.
"""

import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

from api.core.best_effort import BestEffort, best_effort
from api.core.metrics import events_buffer_flushed_total, events_buffer_size
from api.core.metrics_store import log_json
from api.normalize.events import EventRecord, format_timestamp


def identity_key(record: EventRecord) -> str:
    """eventId, else eventHash, else userId|eventName|timestamp."""
    if record.event_id:
        return record.event_id
    if record.event_hash:
        return record.event_hash
    return f"{record.user_id}|{record.event_name}|{format_timestamp(record.timestamp)}"


def scoped_identity_key(record: EventRecord) -> str:
    # Identities are unique per (org, project)
    return f"{record.org_id or ''}|{record.project_id or ''}|{identity_key(record)}"


def dedupe_batch(records: Iterable[EventRecord]) -> List[EventRecord]:
    """Keep the first occurrence of each scoped identity, preserving order."""
    seen = set()
    out = []
    for record in records:
        key = scoped_identity_key(record)
        if key in seen:
            continue
        seen.add(key)
        out.append(record)
    return out


class EventBuffer:
    """
    Thread-safe accumulator for the fast path.

    `add` and `drain` share one lock; `drain` swaps the pending list for a
    fresh one inside the critical section so that concurrent appenders land
    either in the drained copy or in the next one, never both or neither.
    No I/O happens under the lock.
    """

    def __init__(self, window_sec: float = 5.0, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            window_sec: skip identities already buffered within this many
                seconds; 0 disables the cross-request window
            clock: monotonic time source (injectable for tests)
        """
        self.window_sec = window_sec
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: List[EventRecord] = []
        self._seen: Dict[str, float] = {}  # identity key -> first buffered at

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def _is_duplicate(self, key: str, now: float) -> bool:
        stored = self._seen.get(key)
        if stored is None:
            return False
        return (now - stored) < self.window_sec

    def add(self, records: Iterable[EventRecord]) -> int:
        """Append records not seen within the window. Returns the count appended."""
        now = self._clock()
        added = 0
        with self._lock:
            for record in records:
                if self.window_sec > 0:
                    key = scoped_identity_key(record)
                    if self._is_duplicate(key, now):
                        continue
                    self._seen[key] = now
                self._pending.append(record)
                added += 1
        return added

    def drain(self) -> List[EventRecord]:
        """Atomically take everything buffered so far."""
        with self._lock:
            drained, self._pending = self._pending, []
        return drained

    def prune(self) -> int:
        """Remove expired window entries. Returns the number pruned."""
        now = self._clock()
        with self._lock:
            expired = [k for k, ts in self._seen.items() if (now - ts) >= self.window_sec]
            for key in expired:
                del self._seen[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._pending = []
            self._seen.clear()


class BufferFlusher:
    """
    Fixed-interval flush of an EventBuffer.

    `persist` receives the drained records and returns how many were newly
    inserted. Its failures are logged and the records are dropped; the
    durable queue path covers them.
    """

    def __init__(
        self,
        buffer: EventBuffer,
        persist: Callable[[List[EventRecord]], int],
        interval_sec: float = 1.0,
    ):
        self.buffer = buffer
        self.persist = persist
        self.interval_sec = interval_sec
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def flush_once(self) -> BestEffort[int]:
        batch = self.buffer.drain()
        events_buffer_size.set(float(len(batch)))
        self.buffer.prune()
        if not batch:
            return BestEffort(stage="buffer.flush", ok=True, value=0)

        result = best_effort("buffer.flush", self.persist, batch)
        if result.ok:
            events_buffer_flushed_total.inc(labels={"result": "ok"}, value=len(batch))
            log_json(
                stage="buffer.flush",
                drained=len(batch),
                inserted=result.value,
            )
        else:
            events_buffer_flushed_total.inc(labels={"result": "dropped"}, value=len(batch))
            log_json(
                stage="buffer.flush.dropped",
                level="warn",
                drained=len(batch),
                message="fast-path flush failed; durable queue path still owns these records",
            )
        return result

    def _run(self) -> None:
        log_json(stage="buffer.flusher.start", interval_sec=self.interval_sec)
        while not self._stop.wait(self.interval_sec):
            self.flush_once()
        log_json(stage="buffer.flusher.stop")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="event-buffer-flusher", daemon=True
        )
        self._thread.start()

    def stop(self, drain: bool = True, timeout: Optional[float] = 5.0) -> None:
        """Stop the timer; with `drain`, flush whatever is still buffered."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        if drain:
            self.flush_once()
