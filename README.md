# diskflow

This package throttles and counts disk IO inside one process. Each IO is
classified by kind, and lower-priority work gives way to higher-priority work
so that total throughput stays under a budget.

## Modules

- `diskflow.types`: the classification types.
  - `IoOp` is `READ` or `WRITE`.
  - `IoType` is the kind of work, such as `FOREGROUND_READ`, `COMPACTION` or
    `IMPORT`. `as_str()` returns its metric label.
  - `IoPriority` is `LOW`, `MEDIUM` or `HIGH`. `from_str` accepts only the
    exact names. `deserialize` also ignores surrounding space and case, and
    raises `ValueError` for an unknown name.
  - `IoBytes` is a read/write byte pair. Subtracting one from another never
    goes below zero, and `+=` adds both fields.
- `diskflow.limiter_core`: the throttling core.
  - `IoRateLimitMode` is `WRITE_ONLY`, `READ_ONLY` or `ALL_IO`, with
    `contains(op)`, `from_str` and `deserialize`.
  - `IoRateLimiterStatistics` counts bytes per `IoType` and `IoOp`.
  - `IoBudgetAdjustor` is an abstract class for scaling the budget left to
    lower priorities.
  - `PriorityBasedIoRateLimiter` refills per-priority budgets every 50 ms.
- `diskflow.rate_limiter`: the limiter to use in your code.
  - `IoRateLimiter` maps each `IoType` to a priority. It starts every type at
    `HIGH`.
  - `set_io_rate_limiter` and `get_io_rate_limiter` hold one limiter for the
    whole process.
- `diskflow.metrics`: thread-safe in-process metrics.
  - The metric classes are `IntCounter`, `IntGauge` and `Histogram`, with the
    label vectors `IntCounterVec`, `IntGaugeVec` and `HistogramVec`.
  - `HistogramVec.local()` returns a per-thread buffer that is merged into the
    vector on `flush()`.
  - `exponential_buckets` builds bucket bounds.
  - The module also defines the metrics that the limiter updates. They are
    listed under "Metrics" below.

## Install

```
pip install diskflow
```

To also install the test dependencies:

```
pip install "diskflow[test]"
```

## Rate limiting

```python
from diskflow.limiter_core import IoRateLimitMode
from diskflow.rate_limiter import IoRateLimiter, set_io_rate_limiter
from diskflow.types import IoOp, IoPriority, IoType

limiter = IoRateLimiter(IoRateLimitMode.ALL_IO, True, True)  # mode, strict, statistics
limiter.set_io_rate_limit(1_000_000)          # bytes per second; 0 disables
limiter.set_io_priority(IoType.COMPACTION, IoPriority.LOW)
set_io_rate_limiter(limiter)

remaining = 4096
while remaining:
    granted = limiter.request(IoType.COMPACTION, IoOp.WRITE, remaining)
    # ... perform `granted` bytes of IO here ...
    remaining -= granted

print(limiter.statistics().fetch(IoType.COMPACTION, IoOp.WRITE))
```

`request` blocks the calling thread until it is granted a budget. It may grant
fewer bytes than were asked for, but never zero. The requested amount must be
positive.

`async_request` takes the same arguments. It waits with `asyncio.sleep`, so it
does not block the event loop:

```python
granted = await limiter.async_request(IoType.IMPORT, IoOp.READ, 65536)
```

### How the limit applies

- Only operations that the mode contains are throttled. Statistics, when
  enabled, record every request.
- With `strict=False`, `HIGH` priority IO is never throttled.
- A single request never waits more than 0.5 s. When the queue is longer than
  that, the request returns early with part of the bytes it asked for.
- In modes other than `ALL_IO`, you can pass an `IoBudgetAdjustor` to
  `set_low_priority_io_adjustor_if_needed`. It scales the budget left to low
  priority IO. In `ALL_IO` mode the call does nothing.

## Metrics

The limiter updates these metrics in `diskflow.metrics`:

- `RATE_LIMITER_MAX_BYTES_PER_SEC` holds the current per-priority budget, with
  the labels `"high"`, `"medium"` and `"low"`.
- `RATE_LIMITER_REQUEST_WAIT_DURATION` records how long requests waited. It
  fills a per-thread buffer; call `tls_flush()` to merge that buffer.

`IO_BYTES_VEC` and `IO_LATENCY_MICROS_VEC` are defined in the same module for
callers to fill.

```python
from diskflow.metrics import RATE_LIMITER_MAX_BYTES_PER_SEC, tls_flush

tls_flush()
print(RATE_LIMITER_MAX_BYTES_PER_SEC.with_label_values("high").value)
```

## What this package does not do

- It does not wrap file handles. Nothing here reads or writes files. Your code
  calls `request` itself before each IO.
- It does not read operating-system counters to attribute real disk IO to an
  `IoType`.
- It does not include file-system helpers such as checksums, copying or space
  reservation.
- It has no component that exports or periodically flushes byte counts.
- It has no command-line interface.