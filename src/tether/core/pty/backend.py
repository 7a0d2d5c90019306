"""Backend protocol for terminal process management.

A backend owns exactly one external process. It spawns it, forwards text
to it and pushes what happens back through a single event channel:

    OUTPUT  a raw text chunk
    ERROR   a non-fatal fault (the process may still be alive)
    EXIT    the process is gone; always the last event, emitted once

Available backends:
    - PTYBackend: Direct pseudo-terminal, output pushed as the OS flushes it
    - TmuxBackend: Detached tmux session, output recovered by polling the pane
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class BackendType(Enum):
    """Available backend types."""

    PTY = "pty"
    TMUX = "tmux"


class BackendStartError(RuntimeError):
    """The backend could not spawn its process."""


class BackendEventType(Enum):
    OUTPUT = "output"
    ERROR = "error"
    EXIT = "exit"


@dataclass(frozen=True)
class BackendEvent:
    """Event pushed by a backend.

    Attributes:
        type: The event type.
        data: Output text (OUTPUT events).
        error: The fault (ERROR events).
        exit_code: Exit status (EXIT events, None if unknown).
    """

    type: BackendEventType
    data: str = ""
    error: BaseException | None = None
    exit_code: int | None = None


@dataclass
class BackendConfig:
    """Configuration for backends.

    Attributes:
        rows: Terminal height in rows.
        cols: Terminal width in columns.
        env: Additional environment variables.
        cwd: Working directory for the process.
        line_ending: Appended to each line sent (carriage return is Enter
            for both raw and canonical terminals).
        buffer_limit: Characters of output kept in the buffer property.
    """

    rows: int = 30
    cols: int = 80
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    line_ending: str = "\r"
    buffer_limit: int = 1024 * 1024


class Backend(ABC):
    """Abstract base class for terminal backends.

    All backends provide the same interface so a Session or the process
    registry doesn't need to know which one it's driving. Runtime faults
    never raise out of send_input(); they become events instead.
    """

    def __init__(self, config: BackendConfig | None = None) -> None:
        self._config = config or BackendConfig()
        self._events: asyncio.Queue[BackendEvent] = asyncio.Queue()
        self._buffer = ""
        self._exited = False
        self._exit_code: int | None = None

    @property
    def config(self) -> BackendConfig:
        return self._config

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Whether the process is currently running."""
        ...

    @property
    def has_exited(self) -> bool:
        """Whether the EXIT event has been emitted."""
        return self._exited

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    @property
    def buffer(self) -> str:
        """Output received so far (bounded by config.buffer_limit)."""
        return self._buffer

    @abstractmethod
    async def initialize(self) -> None:
        """Spawn the process and start delivering events.

        Raises:
            BackendStartError: If the process fails to start.
        """
        ...

    @abstractmethod
    async def send_input(self, text: str) -> bool:
        """Send one line of text to the process.

        Returns:
            True if the text was delivered, False if the process is not
            running or the write failed. Never raises.
        """
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Request a graceful interrupt (best-effort, like Ctrl+C)."""
        ...

    @abstractmethod
    async def destroy(self) -> None:
        """Force-terminate the process and release resources."""
        ...

    async def events(self) -> AsyncIterator[BackendEvent]:
        """Consume the event channel until (and including) EXIT."""
        while True:
            event = await self._events.get()
            yield event
            if event.type is BackendEventType.EXIT:
                return

    def _emit_output(self, chunk: str) -> None:
        if not chunk or self._exited:
            return
        self._buffer = (self._buffer + chunk)[-self._config.buffer_limit :]
        self._events.put_nowait(BackendEvent(type=BackendEventType.OUTPUT, data=chunk))

    def _emit_error(self, error: BaseException) -> None:
        if self._exited:
            return
        self._events.put_nowait(BackendEvent(type=BackendEventType.ERROR, error=error))

    def _emit_exit(self, exit_code: int | None) -> None:
        if self._exited:
            return
        self._exited = True
        self._exit_code = exit_code
        self._events.put_nowait(BackendEvent(type=BackendEventType.EXIT, exit_code=exit_code))


def get_backend(
    backend_type: BackendType,
    command: list[str],
    config: BackendConfig | None = None,
    name: str | None = None,
    poll_interval: float = 0.5,
    startup_delay: float = 0.0,
) -> Backend:
    """Get a backend instance.

    Args:
        backend_type: Type of backend to create.
        command: Command to run.
        config: Backend configuration.
        name: tmux session name (tmux only, generated if omitted).
        poll_interval: Pane capture interval in seconds (tmux only).
        startup_delay: Seconds to wait after spawning (tmux only).

    Returns:
        A Backend instance.

    Raises:
        ValueError: If backend type is not supported.
    """
    config = config or BackendConfig()

    if backend_type == BackendType.PTY:
        from tether.core.pty.pty_backend import PTYBackend

        return PTYBackend(command, config)

    elif backend_type == BackendType.TMUX:
        from tether.core.pty.tmux_backend import TmuxBackend

        return TmuxBackend(
            command,
            config,
            session_name=name,
            poll_interval=poll_interval,
            startup_delay=startup_delay,
        )

    else:
        raise ValueError(f"Unknown backend type: {backend_type}")
