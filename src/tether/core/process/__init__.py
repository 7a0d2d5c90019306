"""Managed background processes."""

from tether.core.process.buffer import LineBuffer
from tether.core.process.registry import (
    CommandFailedError,
    KillResult,
    ManagedProcess,
    ProcessLimitError,
    ProcessRegistry,
    ProcessStats,
    StreamingTimeoutError,
)

__all__ = [
    "CommandFailedError",
    "KillResult",
    "LineBuffer",
    "ManagedProcess",
    "ProcessLimitError",
    "ProcessRegistry",
    "ProcessStats",
    "StreamingTimeoutError",
]
