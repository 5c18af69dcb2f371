"""
Counter storage for the payment throttles (rate limiter and error boundary).

The throttles only talk to the CounterStore interface. The in-memory store is
per process: with several workers or instances each one counts on its own, so
a shared implementation (cache or database) must be plugged in for global
limits.
"""
import threading
from dataclasses import dataclass
from typing import Protocol


@dataclass
class CounterRecord:
    count: int
    # Meaning is owned by the caller: window reset time for the rate limiter,
    # time of the last error for the error boundary.
    timestamp: float


class CounterStore(Protocol):
    def get(self, key: str) -> CounterRecord | None: ...

    def set(self, key: str, record: CounterRecord) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryCounterStore:
    def __init__(self):
        self._records: dict[str, CounterRecord] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> CounterRecord | None:
        with self._lock:
            record = self._records.get(key)
            # Hand out copies so callers cannot mutate shared state in place
            return CounterRecord(record.count, record.timestamp) if record else None

    def set(self, key: str, record: CounterRecord) -> None:
        with self._lock:
            self._records[key] = CounterRecord(record.count, record.timestamp)

    def delete(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
