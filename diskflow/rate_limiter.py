"""Prioritised IO rate limiter shared between threads, plus the process-wide instance."""

from __future__ import annotations

import threading
from typing import Optional

from diskflow.limiter_core import (
    IoBudgetAdjustor,
    IoRateLimitMode,
    IoRateLimiterStatistics,
    PriorityBasedIoRateLimiter,
)
from diskflow.types import IoOp, IoPriority, IoType


class IoRateLimiter:
    """Flow control for IO, prioritised by IO type.

    An instance can be shared safely between threads.
    """

    def __init__(self, mode: IoRateLimitMode, strict: bool, enable_statistics: bool):
        self.mode = IoRateLimitMode(mode)
        self._priority_map = [IoPriority.HIGH for _ in IoType]
        self.throughput_limiter = PriorityBasedIoRateLimiter(strict)
        self._stats: Optional[IoRateLimiterStatistics] = (
            IoRateLimiterStatistics() if enable_statistics else None
        )

    @classmethod
    def new_for_test(cls) -> IoRateLimiter:
        """Return a strict limiter over all IO that keeps statistics."""
        return cls(IoRateLimitMode.ALL_IO, True, True)

    def statistics(self) -> Optional[IoRateLimiterStatistics]:
        """Return the shared statistics, or None when they are disabled."""
        return self._stats

    def set_io_rate_limit(self, rate: int) -> None:
        """Set the total bytes per second; zero disables limiting."""
        self.throughput_limiter.set_bytes_per_sec(rate)

    def set_io_priority(self, io_type: IoType, io_priority: IoPriority) -> None:
        self._priority_map[int(io_type)] = IoPriority(io_priority)

    def set_low_priority_io_adjustor_if_needed(
        self, adjustor: Optional[IoBudgetAdjustor]
    ) -> None:
        """Install the adjustor unless every IO is already rate limited."""
        if self.mode != IoRateLimitMode.ALL_IO:
            self.throughput_limiter.set_low_priority_io_adjustor(adjustor)

    def _priority(self, io_type: IoType) -> IoPriority:
        return self._priority_map[int(io_type)]

    def _record(self, io_type: IoType, io_op: IoOp, nbytes: int) -> int:
        if self._stats is not None:
            self._stats.record(io_type, io_op, nbytes)
        return nbytes

    def request(self, io_type: IoType, io_op: IoOp, nbytes: int) -> int:
        """Block until bytes are granted; the grant is positive but may be smaller."""
        if self.mode.contains(io_op):
            nbytes = self.throughput_limiter.request(self._priority(io_type), nbytes)
        return self._record(io_type, io_op, nbytes)

    async def async_request(self, io_type: IoType, io_op: IoOp, nbytes: int) -> int:
        """Wait asynchronously until bytes are granted; return the grant."""
        if self.mode.contains(io_op):
            nbytes = await self.throughput_limiter.async_request(self._priority(io_type), nbytes)
        return self._record(io_type, io_op, nbytes)

    def request_with_skewed_clock(self, io_type: IoType, io_op: IoOp, nbytes: int) -> int:
        """Like request, with the waiting time randomly skewed a little."""
        if self.mode.contains(io_op):
            nbytes = self.throughput_limiter.request_with_skewed_clock(
                self._priority(io_type), nbytes
            )
        return self._record(io_type, io_op, nbytes)


_global_lock = threading.Lock()
_global_limiter: Optional[IoRateLimiter] = None


def set_io_rate_limiter(limiter: Optional[IoRateLimiter]) -> None:
    """Install the process-wide limiter, or remove it with None."""
    global _global_limiter
    with _global_lock:
        _global_limiter = limiter


def get_io_rate_limiter() -> Optional[IoRateLimiter]:
    """Return the process-wide limiter, if any."""
    with _global_lock:
        return _global_limiter