"""Priority-based IO flow control: limit modes, byte statistics and the throttling core."""

from __future__ import annotations

import abc
import asyncio
import enum
import random
import threading
import time
from typing import Optional

from diskflow.metrics import (
    RATE_LIMITER_MAX_BYTES_PER_SEC,
    tls_collect_rate_limiter_request_wait,
)
from diskflow.types import IoOp, IoPriority, IoType

REFILL_PERIOD = 0.05
REFILLS_PER_SEC = int(1.0 / REFILL_PERIOD)
MAX_WAIT_PER_REQUEST = 0.5
_RECENT_REFILL_SLACK = 0.001


class IoRateLimitMode(enum.Enum):
    """Which IO operations are subject to rate limiting."""

    WRITE_ONLY = "write-only"
    READ_ONLY = "read-only"
    ALL_IO = "all-io"

    def as_str(self) -> str:
        """Return the configuration name of this mode."""
        return self.value

    def contains(self, op: IoOp) -> bool:
        """Return whether operations of kind ``op`` are limited in this mode."""
        if self is IoRateLimitMode.WRITE_ONLY:
            return op == IoOp.WRITE
        if self is IoRateLimitMode.READ_ONLY:
            return op == IoOp.READ
        return True

    @classmethod
    def from_str(cls, text: str) -> IoRateLimitMode:
        """Parse an exact mode name; raise ValueError otherwise."""
        for mode in cls:
            if mode.value == text:
                return mode
        raise ValueError(f'expect: write-only, read-only or all-io, got: "{text}"')

    @classmethod
    def deserialize(cls, value: str) -> IoRateLimitMode:
        """Parse a configured mode, ignoring surrounding space and case."""
        if not isinstance(value, str):
            raise TypeError("a IO rate limit mode must be a string")
        try:
            return cls.from_str(value.strip().lower())
        except ValueError:
            raise ValueError(f"invalid IO rate limit mode: {value!r}") from None


class IoRateLimiterStatistics:
    """Accumulated bytes passed through, per IO type and operation."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts = {op: [0] * len(IoType) for op in IoOp}

    def fetch(self, io_type: IoType, io_op: IoOp) -> int:
        with self._lock:
            return self._counts[io_op][int(io_type)]

    def record(self, io_type: IoType, io_op: IoOp, nbytes: int) -> None:
        with self._lock:
            self._counts[io_op][int(io_type)] += nbytes

    def reset(self) -> None:
        with self._lock:
            for counts in self._counts.values():
                counts[:] = [0] * len(counts)


class IoBudgetAdjustor(abc.ABC):
    """Adjusts the share of the total budget given to rate-limited low-priority IO."""

    @abc.abstractmethod
    def adjust(self, threshold: int) -> int:
        """Return the adjusted total budget for the given threshold."""


class PriorityBasedIoRateLimiter:
    """Keeps total IO flow below a threshold by throttling lower-priority IO.

    Rate limiting is disabled while the threshold is zero.
    """

    def __init__(self, strict: bool):
        # High-priority IO is only limited when strict.
        self._strict = bool(strict)
        self._counters_lock = threading.Lock()
        self._bytes_through = [0] * len(IoPriority)
        self._bytes_per_epoch = [0] * len(IoPriority)
        self._lock = threading.Lock()
        self._next_refill_time = time.monotonic() + REFILL_PERIOD
        self._pending_bytes = [0] * len(IoPriority)
        self._adjustor: Optional[IoBudgetAdjustor] = None

    def _add_through(self, index: int, amount: int) -> int:
        with self._counters_lock:
            self._bytes_through[index] += amount
            return self._bytes_through[index]

    def _swap_through(self, index: int, value: int) -> int:
        with self._counters_lock:
            before = self._bytes_through[index]
            self._bytes_through[index] = value
            return before

    def set_bytes_per_sec(self, bytes_per_sec: int) -> None:
        """Change the total IO flow threshold; zero turns limiting off."""
        per_epoch = int(bytes_per_sec * REFILL_PERIOD)
        high = int(IoPriority.HIGH)
        with self._counters_lock:
            before = self._bytes_per_epoch[high]
            self._bytes_per_epoch[high] = per_epoch
        RATE_LIMITER_MAX_BYTES_PER_SEC.with_label_values("high").set(bytes_per_sec)
        if per_epoch == 0 or before == 0:
            # Toggling limiting on or off.
            with self._lock:
                self._bytes_per_epoch[int(IoPriority.MEDIUM)] = per_epoch
                RATE_LIMITER_MAX_BYTES_PER_SEC.with_label_values("medium").set(bytes_per_sec)
                self._bytes_per_epoch[int(IoPriority.LOW)] = per_epoch
                RATE_LIMITER_MAX_BYTES_PER_SEC.with_label_values("low").set(bytes_per_sec)

    def set_low_priority_io_adjustor(self, adjustor: Optional[IoBudgetAdjustor]) -> None:
        with self._lock:
            self._adjustor = adjustor

    def _grant(self, priority: IoPriority, amount: int) -> tuple[int, Optional[float]]:
        """Account a request; return the granted bytes and how long to wait, if at all."""
        if amount <= 0:
            raise ValueError(f"requested amount must be positive, got {amount}")
        priority = IoPriority(priority)
        index = int(priority)
        cached = self._bytes_per_epoch[index]
        if cached == 0:
            return amount, None
        amount = min(amount, cached)
        through = self._add_through(index, amount)
        # Prefer not to return only a portion of the requested bytes.
        if through <= cached or (not self._strict and priority == IoPriority.HIGH):
            return amount, None
        now = time.monotonic()
        with self._lock:
            # Part of the request may already be served in the current epoch.
            remains = min(through - cached, amount)
            # After a recent refill, check again whether consumption was reset.
            if (
                now + REFILL_PERIOD < self._next_refill_time + _RECENT_REFILL_SLACK
                and self._add_through(index, remains) <= cached
            ):
                return amount, None
            # Queue up: pending bytes mark a position in a logical queue.
            self._pending_bytes[index] += remains
            if self._next_refill_time <= now:
                self._refill(now)
                wait = REFILL_PERIOD * ((self._pending_bytes[index] + cached - 1) // cached)
            else:
                wait = (self._next_refill_time - now) + REFILL_PERIOD * (
                    (self._pending_bytes[index] - 1) // cached
                )
            if wait > MAX_WAIT_PER_REQUEST:
                # Return a partial quota early so callers react to budget changes.
                amount = max(int(MAX_WAIT_PER_REQUEST * amount / wait), 1)
                self._pending_bytes[index] = max(
                    self._pending_bytes[index] - max(remains - amount, 0), 0
                )
                wait = MAX_WAIT_PER_REQUEST
        tls_collect_rate_limiter_request_wait(priority.as_str(), wait)
        return amount, wait

    def request(self, priority: IoPriority, amount: int) -> int:
        """Block until some bytes are granted; return the granted amount (at least one)."""
        granted, wait = self._grant(priority, amount)
        if wait is not None:
            time.sleep(wait)
        return granted

    async def async_request(self, priority: IoPriority, amount: int) -> int:
        """Wait asynchronously until some bytes are granted; return the granted amount."""
        granted, wait = self._grant(priority, amount)
        if wait is not None:
            await asyncio.sleep(wait)
        return granted

    def request_with_skewed_clock(self, priority: IoPriority, amount: int) -> int:
        """Like request, but the sleep is randomly a little shorter or longer."""
        granted, wait = self._grant(priority, amount)
        if wait is not None:
            offset = min(0.001, wait / 100)
            time.sleep(wait - offset if random.random() < 0.5 else wait + offset)
        return granted

    def _refill(self, now: float) -> None:
        """Refill budgets for the next epoch; caller holds the lock.

        Lower priorities get what higher priorities left unused recently; the
        highest priority alone never exceeds the threshold in strict mode.
        """
        total_budgets = self._bytes_per_epoch[int(IoPriority.HIGH)]
        if total_budgets == 0:
            # Limiting may have been switched off meanwhile.
            return
        skipped_epochs = (now - self._next_refill_time) / REFILL_PERIOD
        self._next_refill_time = now + REFILL_PERIOD

        remaining_budgets = total_budgets
        used_budgets = 0
        for priority in (IoPriority.HIGH, IoPriority.MEDIUM):
            p = int(priority)
            # Skipped epochs only serve pending requests.
            served_by_skipped = min(
                int(remaining_budgets * skipped_epochs), self._pending_bytes[p]
            )
            self._pending_bytes[p] -= served_by_skipped
            to_serve_pending = min(self._pending_bytes[p], remaining_budgets)
            self._pending_bytes[p] -= to_serve_pending
            served_by_first = min(self._swap_through(p, to_serve_pending), remaining_budgets)
            used_budgets += int((served_by_first + served_by_skipped) / (skipped_epochs + 1.0))
            if priority == IoPriority.MEDIUM and self._adjustor is not None:
                total_budgets = self._adjustor.adjust(total_budgets)
            # Keep a small positive budget so flow control stays on.
            remaining_budgets = total_budgets - used_budgets if total_budgets > used_budgets else 1
            label = "medium" if priority == IoPriority.HIGH else "low"
            RATE_LIMITER_MAX_BYTES_PER_SEC.with_label_values(label).set(
                remaining_budgets * REFILLS_PER_SEC
            )
            with self._counters_lock:
                self._bytes_per_epoch[p - 1] = remaining_budgets
        low = int(IoPriority.LOW)
        to_serve_pending = min(self._pending_bytes[low], remaining_budgets)
        self._pending_bytes[low] -= to_serve_pending
        with self._counters_lock:
            self._bytes_through[low] = to_serve_pending

    def critical_section(self, now: float) -> None:
        """Force a refill at monotonic time ``now``."""
        with self._lock:
            self._next_refill_time = now
            self._refill(now)

    def reset(self) -> None:
        """Drop pending bytes of high and medium priority."""
        with self._lock:
            for priority in (IoPriority.HIGH, IoPriority.MEDIUM):
                self._pending_bytes[int(priority)] = 0