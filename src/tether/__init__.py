"""Tether - Bridge chat conversations to long-running interactive CLIs.

Tether keeps one externally spawned CLI process alive per conversation,
feeds it text and turns its raw terminal output back into typed events.

Layers:
    core/       Pure business logic (backends, parser, sessions, processes)
    frontends/  User interfaces (CLI)

Key Concepts:
    Backend:         Owns one OS process (direct PTY or polled tmux)
    OutputParser:    Classifies raw output (error, progress, tool, status, response)
    Session:         Conversation state bound to a user/channel and a backend
    SessionManager:  Registry of sessions with persistence and restore
    ProcessRegistry: Ad-hoc background commands with bounded output

Quick Start:
    >>> from tether import SessionManager, load_config
    >>>
    >>> manager = SessionManager(load_config(session_type="pty"))
    >>> await manager.start()
    >>> session = await manager.get_or_create_session("user-1", "channel-1")
    >>> events = session.subscribe()
    >>> await session.send_message("Explain this codebase")
    >>> print(await events.get())
    >>> await manager.shutdown()
"""

from tether.__version__ import __version__
from tether.core import (
    Backend,
    BackendType,
    ClassifiedEvent,
    Message,
    OutputParser,
    OutputType,
    ProcessRegistry,
    Session,
    SessionManager,
    SessionStatus,
    TetherConfig,
    classify,
    load_config,
)

__all__ = [
    "__version__",
    # Backends
    "Backend",
    "BackendType",
    # Parsing
    "OutputParser",
    "classify",
    # Sessions
    "Session",
    "SessionManager",
    # Processes
    "ProcessRegistry",
    # Config
    "TetherConfig",
    "load_config",
    # Types
    "ClassifiedEvent",
    "Message",
    "OutputType",
    "SessionStatus",
]
