"""
Run-wide counters and breakpoint latches shared by all virtual users.

One RunAggregator is built per run and handed to every worker; nothing in
here is module-level state.
"""

import threading
import time
from typing import List, Optional


class AtomicCounter:
    """Monotonic counter safe for concurrent increments."""

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()

    def increment(self, amount: int = 1) -> int:
        with self._lock:
            self._value += amount
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class BreakpointLatch:
    """
    Write-once cell holding the first iteration at which a condition was seen.

    try_set is a compare-and-set: only the first caller stores its iteration,
    every later call leaves the stored value untouched and returns False.
    """

    def __init__(self, name: str):
        self.name = name
        self._iteration: Optional[int] = None
        self._lock = threading.Lock()

    def try_set(self, iteration: int) -> bool:
        with self._lock:
            if self._iteration is not None:
                return False
            self._iteration = iteration
            return True

    @property
    def value(self) -> Optional[int]:
        with self._lock:
            return self._iteration

    @property
    def is_set(self) -> bool:
        return self.value is not None


class RunAggregator:
    """Counters, latches and samples for one load test run."""

    def __init__(self, iterations: Optional[int] = None, duration: Optional[float] = None):
        self.iterations = iterations if iterations and iterations > 0 else None
        self.duration = duration if duration and duration > 0 else None

        self.total_requests = AtomicCounter()
        self.successes = AtomicCounter()
        self.total_errors = AtomicCounter()
        self.timeout_errors = AtomicCounter()
        self.rate_limit_errors = AtomicCounter()
        self.storage_errors = AtomicCounter()

        self.timeout_latch = BreakpointLatch("timeout")
        self.error_latch = BreakpointLatch("error")
        self.rate_limit_latch = BreakpointLatch("rate_limit")

        self._next_iteration = AtomicCounter()
        self._samples_lock = threading.Lock()
        self._durations_ms: List[float] = []
        self._records: List[dict] = []

        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self.stop_event = threading.Event()

    @property
    def latches(self):
        return (self.timeout_latch, self.error_latch, self.rate_limit_latch)

    def start(self):
        self.started_at = time.monotonic()

    def finish(self):
        self.finished_at = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return end - self.started_at

    def claim_iteration(self) -> Optional[int]:
        """
        Hand out the next global iteration index, or None when the run budget
        (iteration count, duration, or stop request) is exhausted.
        """
        if self.stop_event.is_set():
            return None
        if self.duration is not None and self.started_at is not None:
            if time.monotonic() - self.started_at >= self.duration:
                return None
        iteration = self._next_iteration.increment() - 1
        if self.iterations is not None and iteration >= self.iterations:
            return None
        return iteration

    def add_sample(self, duration_ms: float, record: Optional[dict] = None):
        with self._samples_lock:
            if duration_ms is not None and duration_ms >= 0:
                self._durations_ms.append(duration_ms)
            if record is not None:
                self._records.append(record)

    @property
    def durations_ms(self) -> List[float]:
        with self._samples_lock:
            return list(self._durations_ms)

    @property
    def records(self) -> List[dict]:
        with self._samples_lock:
            return list(self._records)

    def _ratio(self, numerator: int) -> float:
        total = self.total_requests.value
        if total == 0:
            return 0.0
        return numerator / total

    @property
    def success_rate(self) -> float:
        return self._ratio(self.successes.value)

    @property
    def error_rate(self) -> float:
        return self._ratio(self.total_errors.value)

    @property
    def timeout_rate(self) -> float:
        return self._ratio(self.timeout_errors.value)
