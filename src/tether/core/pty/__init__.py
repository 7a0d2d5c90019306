"""Terminal backends.

Each backend owns exactly one external process and reports what it does
through an event channel (output, error, exit).

Backends:
    - PTYBackend: Direct pseudo-terminal
    - TmuxBackend: Detached tmux session, polled
"""

from tether.core.pty.backend import (
    Backend,
    BackendConfig,
    BackendEvent,
    BackendEventType,
    BackendStartError,
    BackendType,
    get_backend,
)
from tether.core.pty.pty_backend import PTYBackend
from tether.core.pty.tmux_backend import PaneCursor, TmuxBackend

__all__ = [
    "Backend",
    "BackendConfig",
    "BackendEvent",
    "BackendEventType",
    "BackendStartError",
    "BackendType",
    "PTYBackend",
    "PaneCursor",
    "TmuxBackend",
    "get_backend",
]
