"""Core I/O classification types: operations, types, priorities and byte counts."""

from __future__ import annotations

import enum
from dataclasses import dataclass


class IoOp(enum.Enum):
    """Direction of an I/O operation."""

    READ = "read"
    WRITE = "write"


class IoType(enum.IntEnum):
    """Category of work an I/O is performed on behalf of."""

    OTHER = 0
    # Including coprocessor and storage read.
    FOREGROUND_READ = 1
    # Including scheduler worker, raftstore and apply.
    FOREGROUND_WRITE = 2
    FLUSH = 3
    LEVEL_ZERO_COMPACTION = 4
    COMPACTION = 5
    REPLICATION = 6
    LOAD_BALANCE = 7
    GC = 8
    IMPORT = 9
    EXPORT = 10
    REWRITE_LOG = 11

    def as_str(self) -> str:
        """Return the metric label for this I/O type."""
        return _IO_TYPE_NAMES[self]


_IO_TYPE_NAMES = {
    IoType.OTHER: "other",
    IoType.FOREGROUND_READ: "foreground_read",
    IoType.FOREGROUND_WRITE: "foreground_write",
    IoType.FLUSH: "flush",
    IoType.LEVEL_ZERO_COMPACTION: "level_zero_compaction",
    IoType.COMPACTION: "compaction",
    IoType.REPLICATION: "replication",
    IoType.LOAD_BALANCE: "load_balance",
    IoType.GC: "gc",
    IoType.IMPORT: "import",
    IoType.EXPORT: "export",
    IoType.REWRITE_LOG: "log_rewrite",
}


@dataclass
class IoBytes:
    """Bytes read and written."""

    read: int = 0
    write: int = 0

    def __sub__(self, other: IoBytes) -> IoBytes:
        """Saturating difference: never goes below zero."""
        if not isinstance(other, IoBytes):
            return NotImplemented
        return IoBytes(
            read=max(self.read - other.read, 0),
            write=max(self.write - other.write, 0),
        )

    def __iadd__(self, other: IoBytes) -> IoBytes:
        if not isinstance(other, IoBytes):
            return NotImplemented
        self.read += other.read
        self.write += other.write
        return self


class IoPriority(enum.IntEnum):
    """Priority used by the rate limiter."""

    LOW = 0
    MEDIUM = 1
    HIGH = 2

    def as_str(self) -> str:
        """Return the lowercase name of this priority."""
        return self.name.lower()

    @classmethod
    def from_str(cls, text: str) -> IoPriority:
        """Parse an exact priority name; raise ValueError otherwise."""
        for priority in cls:
            if priority.as_str() == text:
                return priority
        raise ValueError(f'expect: low, medium or high, got: "{text}"')

    @classmethod
    def deserialize(cls, value: str) -> IoPriority:
        """Parse a configured priority, ignoring surrounding space and case."""
        if not isinstance(value, str):
            raise TypeError("a IO priority must be a string")
        try:
            return cls.from_str(value.strip().lower())
        except ValueError:
            raise ValueError(f"invalid IO priority: {value!r}") from None