import threading
import time

import pytest

from diskflow.limiter_core import IoBudgetAdjustor, IoRateLimitMode
from diskflow.rate_limiter import IoRateLimiter, get_io_rate_limiter, set_io_rate_limiter
from diskflow.types import IoOp, IoPriority, IoType


def approximate_eq(left, right):
    assert left >= right * 0.75
    assert right >= left * 0.75


class BackgroundJobs:
    def __init__(self, limiter, job_count, request, interval=None):
        io_type, op, length = request
        self._stop = threading.Event()

        def run():
            while not self._stop.is_set():
                limiter.request_with_skewed_clock(io_type, op, length)
                if interval is not None:
                    time.sleep(interval)

        self._threads = [threading.Thread(target=run, daemon=True) for _ in range(job_count)]
        for t in self._threads:
            t.start()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.stop()

    def stop(self):
        self._stop.set()
        for t in self._threads:
            t.join()


def test_rate_limit_toggle():
    bytes_per_sec = 2000
    limiter = IoRateLimiter.new_for_test()
    limiter.set_io_priority(IoType.COMPACTION, IoPriority.LOW)
    stats = limiter.statistics()
    limiter.set_io_rate_limit(bytes_per_sec)
    t0 = time.monotonic()
    with BackgroundJobs(limiter, 1, (IoType.FOREGROUND_WRITE, IoOp.WRITE, 10)), BackgroundJobs(
        limiter, 1, (IoType.COMPACTION, IoOp.WRITE, 10)
    ):
        time.sleep(1)
        t1 = time.monotonic()
        approximate_eq(
            stats.fetch(IoType.FOREGROUND_WRITE, IoOp.WRITE), bytes_per_sec * (t1 - t0)
        )
        limiter.set_io_rate_limit(0)
        stats.reset()
        time.sleep(1)
        t2 = time.monotonic()
        assert stats.fetch(IoType.FOREGROUND_WRITE, IoOp.WRITE) > bytes_per_sec * (t2 - t1) * 4
        assert stats.fetch(IoType.COMPACTION, IoOp.WRITE) > bytes_per_sec * (t2 - t1) * 4
        limiter.set_io_rate_limit(bytes_per_sec)
        stats.reset()
        time.sleep(1)
        t3 = time.monotonic()
        approximate_eq(
            stats.fetch(IoType.FOREGROUND_WRITE, IoOp.WRITE), bytes_per_sec * (t3 - t2)
        )


def measure_rate_limit(limiter, bytes_per_sec, duration):
    """Run two writer jobs under the given limit; return (recorded bytes, expected bytes)."""
    stats = limiter.statistics()
    limiter.set_io_rate_limit(bytes_per_sec)
    stats.reset()
    limiter.throughput_limiter.reset()
    begin = time.monotonic()
    with BackgroundJobs(limiter, 2, (IoType.FOREGROUND_WRITE, IoOp.WRITE, 10)):
        time.sleep(duration)
    actual = time.monotonic() - begin
    return stats.fetch(IoType.FOREGROUND_WRITE, IoOp.WRITE), bytes_per_sec * actual


def test_rate_limit_dynamic_priority():
    bytes_per_sec = 2000
    limiter = IoRateLimiter(IoRateLimitMode.ALL_IO, False, True)
    limiter.set_io_priority(IoType.FOREGROUND_WRITE, IoPriority.MEDIUM)
    recorded, expected = measure_rate_limit(limiter, bytes_per_sec, 2)
    assert recorded >= expected * 0.75
    assert expected >= recorded * 0.75
    limiter.set_io_priority(IoType.FOREGROUND_WRITE, IoPriority.HIGH)
    stats = limiter.statistics()
    stats.reset()
    begin = time.monotonic()
    with BackgroundJobs(limiter, 2, (IoType.FOREGROUND_WRITE, IoOp.WRITE, 10)):
        time.sleep(2)
    duration = time.monotonic() - begin
    assert stats.fetch(IoType.FOREGROUND_WRITE, IoOp.WRITE) > bytes_per_sec * duration * 1.5


def test_rate_limited_heavy_flow():
    limiter = IoRateLimiter.new_for_test()
    for bytes_per_sec in (2000, 10000, 2000):
        recorded, expected = measure_rate_limit(limiter, bytes_per_sec, 2)
        assert recorded >= expected * 0.75
        assert expected >= recorded * 0.75


def test_unlimited_request_returns_everything():
    limiter = IoRateLimiter.new_for_test()
    assert limiter.request(IoType.FLUSH, IoOp.WRITE, 4096) == 4096
    assert limiter.statistics().fetch(IoType.FLUSH, IoOp.WRITE) == 4096
    assert limiter.statistics().fetch(IoType.FLUSH, IoOp.READ) == 0


def test_request_is_capped_by_epoch_budget():
    limiter = IoRateLimiter.new_for_test()
    limiter.set_io_rate_limit(20)  # one byte per refill period
    assert limiter.request(IoType.FOREGROUND_WRITE, IoOp.WRITE, 5) == 1
    assert limiter.statistics().fetch(IoType.FOREGROUND_WRITE, IoOp.WRITE) == 1


def test_mode_excludes_other_operations():
    limiter = IoRateLimiter(IoRateLimitMode.WRITE_ONLY, True, True)
    limiter.set_io_rate_limit(20)
    assert limiter.request(IoType.EXPORT, IoOp.READ, 100) == 100
    assert limiter.request(IoType.EXPORT, IoOp.WRITE, 100) == 1
    stats = limiter.statistics()
    assert stats.fetch(IoType.EXPORT, IoOp.READ) == 100
    assert stats.fetch(IoType.EXPORT, IoOp.WRITE) == 1


def test_statistics_disabled():
    limiter = IoRateLimiter(IoRateLimitMode.ALL_IO, True, False)
    assert limiter.statistics() is None
    assert limiter.request(IoType.GC, IoOp.READ, 10) == 10


@pytest.mark.asyncio
async def test_async_request():
    limiter = IoRateLimiter.new_for_test()
    assert await limiter.async_request(IoType.IMPORT, IoOp.WRITE, 7) == 7
    limiter.set_io_rate_limit(20)
    assert await limiter.async_request(IoType.IMPORT, IoOp.WRITE, 7) == 1
    assert limiter.statistics().fetch(IoType.IMPORT, IoOp.WRITE) == 8


class RecordingAdjustor(IoBudgetAdjustor):
    def __init__(self):
        self.calls = []

    def adjust(self, threshold):
        self.calls.append(threshold)
        return threshold


@pytest.mark.parametrize(
    "mode, expected_calls",
    [(IoRateLimitMode.WRITE_ONLY, 1), (IoRateLimitMode.READ_ONLY, 1), (IoRateLimitMode.ALL_IO, 0)],
)
def test_adjustor_installed_only_when_partially_limited(mode, expected_calls):
    limiter = IoRateLimiter(mode, True, True)
    adjustor = RecordingAdjustor()
    limiter.set_low_priority_io_adjustor_if_needed(adjustor)
    limiter.set_io_rate_limit(2000)
    limiter.throughput_limiter.critical_section(time.monotonic())
    assert len(adjustor.calls) == expected_calls


def test_global_limiter_roundtrip():
    previous = get_io_rate_limiter()
    try:
        limiter = IoRateLimiter.new_for_test()
        set_io_rate_limiter(limiter)
        assert get_io_rate_limiter() is limiter
        set_io_rate_limiter(None)
        assert get_io_rate_limiter() is None
    finally:
        set_io_rate_limiter(previous)