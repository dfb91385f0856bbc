"""In-process metrics: counters, gauges and histograms with label vectors."""

from __future__ import annotations

import math
import threading
from bisect import bisect_left
from datetime import timedelta
from itertools import accumulate

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


def exponential_buckets(start: float, factor: float, count: int) -> list[float]:
    """Return ``count`` bucket bounds starting at ``start``, each ``factor`` times the last."""
    if count < 1:
        raise ValueError(f"exponential_buckets needs a positive count, got {count}")
    if start <= 0:
        raise ValueError(f"exponential_buckets needs a positive start value, got {start}")
    if factor <= 1:
        raise ValueError(f"exponential_buckets needs a factor greater than 1, got {factor}")
    bounds = []
    bound = float(start)
    for _ in range(count):
        bounds.append(bound)
        bound *= factor
    return bounds


class Histogram:
    """Thread-safe histogram of observed values."""

    def __init__(self, buckets=None):
        bounds = [float(b) for b in (DEFAULT_BUCKETS if buckets is None else buckets)]
        if any(lo >= hi for lo, hi in zip(bounds, bounds[1:])):
            raise ValueError("histogram buckets must be in strictly increasing order")
        if bounds and bounds[-1] == math.inf:
            bounds.pop()
        self._bounds = tuple(bounds)
        self._counts = [0] * (len(bounds) + 1)
        self._sum = 0.0
        self._count = 0
        self._lock = threading.Lock()

    @property
    def upper_bounds(self) -> tuple[float, ...]:
        return self._bounds

    def observe(self, value: float) -> None:
        """Record one value."""
        index = bisect_left(self._bounds, value)
        with self._lock:
            self._counts[index] += 1
            self._sum += value
            self._count += 1

    def _merge(self, counts, total, count) -> None:
        with self._lock:
            for index, n in enumerate(counts):
                self._counts[index] += n
            self._sum += total
            self._count += count

    @property
    def sample_count(self) -> int:
        with self._lock:
            return self._count

    @property
    def sample_sum(self) -> float:
        with self._lock:
            return self._sum

    @property
    def buckets(self) -> list[tuple[float, int]]:
        """Cumulative counts per upper bound, ending with +Inf."""
        with self._lock:
            cumulative = list(accumulate(self._counts))
        return list(zip((*self._bounds, math.inf), cumulative))


class _LocalHistogram:
    """Unsynchronised buffer of observations for one histogram."""

    def __init__(self, parent: Histogram):
        self._parent = parent
        self._counts = [0] * (len(parent.upper_bounds) + 1)
        self._sum = 0.0
        self._count = 0

    def observe(self, value: float) -> None:
        self._counts[bisect_left(self._parent.upper_bounds, value)] += 1
        self._sum += value
        self._count += 1

    @property
    def sample_count(self) -> int:
        return self._count

    def flush(self) -> None:
        if self._count == 0:
            return
        self._parent._merge(self._counts, self._sum, self._count)
        self._counts = [0] * len(self._counts)
        self._sum = 0.0
        self._count = 0


class _MetricVec:
    """A family of metrics keyed by label values."""

    def __init__(self, name: str, help_text: str, label_names):
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names)
        self._children = {}
        self._lock = threading.Lock()

    def _make_child(self):
        raise NotImplementedError

    def _key(self, values) -> tuple[str, ...]:
        if len(values) != len(self.label_names):
            raise ValueError(
                f"{self.name}: expected {len(self.label_names)} label values, got {len(values)}"
            )
        return tuple(str(v) for v in values)

    def with_label_values(self, *args):
        key = self._key(args)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = self._children[key] = self._make_child()
            return child


class HistogramVec(_MetricVec):
    """Histograms partitioned by label values."""

    def __init__(self, name: str, help_text: str, label_names, buckets=None):
        super().__init__(name, help_text, label_names)
        Histogram(buckets)  # validate eagerly
        self._buckets = buckets

    def _make_child(self) -> Histogram:
        return Histogram(self._buckets)

    def with_label_values(self, *args) -> Histogram:
        return super().with_label_values(*args)

    def local(self) -> LocalHistogramVec:
        """Return a buffer that records without locking until flushed."""
        return LocalHistogramVec(self)


class LocalHistogramVec:
    """Per-thread buffer over a HistogramVec."""

    def __init__(self, vec: HistogramVec):
        self._vec = vec
        self._children = {}

    def with_label_values(self, *args) -> _LocalHistogram:
        key = self._vec._key(args)
        child = self._children.get(key)
        if child is None:
            child = self._children[key] = _LocalHistogram(self._vec.with_label_values(*key))
        return child

    def flush(self) -> None:
        """Push buffered observations into the shared histograms."""
        for child in self._children.values():
            child.flush()


class IntCounter:
    """Monotonically increasing integer counter."""

    def __init__(self):
        self._value = 0
        self._lock = threading.Lock()

    def inc_by(self, value: int) -> None:
        if value < 0:
            raise ValueError("counter can only be increased")
        with self._lock:
            self._value += value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class IntCounterVec(_MetricVec):
    """Counters partitioned by label values."""

    def _make_child(self) -> IntCounter:
        return IntCounter()

    def with_label_values(self, *args) -> IntCounter:
        return super().with_label_values(*args)


class IntGauge:
    """Integer value that may go up or down."""

    def __init__(self):
        self._value = 0
        self._lock = threading.Lock()

    def set(self, value: int) -> None:
        with self._lock:
            self._value = int(value)

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class IntGaugeVec(_MetricVec):
    """Gauges partitioned by label values."""

    def _make_child(self) -> IntGauge:
        return IntGauge()

    def with_label_values(self, *args) -> IntGauge:
        return super().with_label_values(*args)


IO_BYTES_VEC = IntCounterVec("diskflow_io_bytes", "Bytes of disk io", ["type", "op"])

IO_LATENCY_MICROS_VEC = HistogramVec(
    "diskflow_io_latency_micros",
    "Duration of disk io.",
    ["type", "op"],
    exponential_buckets(1.0, 2.0, 22),  # max 4s
)

RATE_LIMITER_REQUEST_WAIT_DURATION = HistogramVec(
    "diskflow_rate_limiter_request_wait_duration_seconds",
    "Bucketed histogram of IO rate limiter request wait duration",
    ["type"],
    exponential_buckets(0.001, 1.8, 20),
)

RATE_LIMITER_MAX_BYTES_PER_SEC = IntGaugeVec(
    "diskflow_rate_limiter_max_bytes_per_sec",
    "Maximum IO bytes per second",
    ["type"],
)

_tls = threading.local()


def _local_wait_duration() -> LocalHistogramVec:
    local = getattr(_tls, "wait_duration", None)
    if local is None:
        local = _tls.wait_duration = RATE_LIMITER_REQUEST_WAIT_DURATION.local()
    return local


def tls_flush() -> None:
    """Flush this thread's buffered metrics into the shared ones."""
    _local_wait_duration().flush()


def tls_collect_rate_limiter_request_wait(priority: str, duration) -> None:
    """Buffer one rate limiter wait; duration is seconds or a timedelta."""
    seconds = duration.total_seconds() if isinstance(duration, timedelta) else float(duration)
    _local_wait_duration().with_label_values(priority).observe(seconds)