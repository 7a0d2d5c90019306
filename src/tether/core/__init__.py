"""Core - Pure business logic for bridging chats to interactive CLIs.

This module contains no knowledge of:
- Chat platforms or their UI
- How output will be rendered

Architecture:
    pty/        Backends owning one process each (PTY, tmux)
    parsers/    Output classifier
    session/    Sessions, their manager and persistence
    process/    Registry for ad-hoc background commands
    types       Pure data types
    config      Runtime configuration
"""

from tether.core.config import TetherConfig, load_config
from tether.core.parsers import OutputParser, classify
from tether.core.process import (
    CommandFailedError,
    KillResult,
    ManagedProcess,
    ProcessLimitError,
    ProcessRegistry,
    StreamingTimeoutError,
)
from tether.core.pty import (
    Backend,
    BackendConfig,
    BackendEvent,
    BackendEventType,
    BackendStartError,
    BackendType,
    PTYBackend,
    TmuxBackend,
    get_backend,
)
from tether.core.session import (
    ChannelBusyError,
    Session,
    SessionLimitError,
    SessionManager,
    SessionStore,
)
from tether.core.types import (
    ClassifiedEvent,
    Message,
    OutputType,
    ProcessStatus,
    Role,
    SessionEvent,
    SessionEventType,
    SessionStatus,
)

__all__ = [
    # Backends
    "Backend",
    "BackendConfig",
    "BackendEvent",
    "BackendEventType",
    "BackendStartError",
    "BackendType",
    "PTYBackend",
    "TmuxBackend",
    "get_backend",
    # Parsing
    "OutputParser",
    "classify",
    # Sessions
    "ChannelBusyError",
    "Session",
    "SessionLimitError",
    "SessionManager",
    "SessionStore",
    # Processes
    "CommandFailedError",
    "KillResult",
    "ManagedProcess",
    "ProcessLimitError",
    "ProcessRegistry",
    "StreamingTimeoutError",
    # Config
    "TetherConfig",
    "load_config",
    # Types
    "ClassifiedEvent",
    "Message",
    "OutputType",
    "ProcessStatus",
    "Role",
    "SessionEvent",
    "SessionEventType",
    "SessionStatus",
]
