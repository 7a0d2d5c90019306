"""Registry for ad-hoc background commands.

Each command runs under its own backend (a PTY running ``bash -c``) and is
tracked as a ManagedProcess with bounded output buffers. Unlike sessions,
managed processes have no chat semantics: callers poll their output.

Commands are assumed to have passed security validation already.

Example:
    >>> registry = ProcessRegistry(max_processes=5)
    >>> process_id = await registry.start("make test", "/project", user_id="u1")
    >>> registry.get_output(process_id, lines=20)
    >>> await registry.kill(process_id)
    >>> await registry.shutdown()
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tether.core.process.buffer import LineBuffer
from tether.core.pty.backend import Backend, BackendConfig, BackendEventType
from tether.core.pty.pty_backend import PTYBackend
from tether.core.types import ProcessStatus, now_ms

logger = logging.getLogger(__name__)

DEFAULT_MAX_PROCESSES = 50
DEFAULT_MAX_OUTPUT_SIZE = 1024 * 1024
STREAMING_USER = "streaming"

BackendFactory = Callable[[str, str], Backend]


class ProcessLimitError(RuntimeError):
    """Too many managed processes are running."""


class StreamingTimeoutError(TimeoutError):
    """A streaming command exceeded its timeout and was killed."""

    def __init__(self, elapsed: float) -> None:
        super().__init__(f"Command timed out after {elapsed:.1f}s")
        self.elapsed = elapsed


class CommandFailedError(RuntimeError):
    """A streaming command exited with a non-zero status."""

    def __init__(self, exit_code: int | None, output: str = "") -> None:
        super().__init__(f"Command failed with exit code {exit_code}")
        self.exit_code = exit_code
        self.output = output


@dataclass
class ManagedProcess:
    """A tracked background command.

    Attributes:
        id: Unique process id.
        name: Display name (first word of the command by default).
        command: Shell command string.
        cwd: Working directory.
        user_id: Owner.
        status: RUNNING until the process exits or is killed.
        start_time: Start time in epoch milliseconds.
        end_time: Exit or kill time in epoch milliseconds.
        exit_code: Exit status once observed.
        output: Bounded terminal output.
        error_output: Bounded backend fault messages.
    """

    id: str
    name: str
    command: str
    cwd: str
    user_id: str
    output: LineBuffer
    error_output: LineBuffer
    backend: Backend = field(repr=False)
    status: ProcessStatus = ProcessStatus.RUNNING
    start_time: int = field(default_factory=now_ms)
    end_time: int | None = None
    exit_code: int | None = None

    @property
    def is_running(self) -> bool:
        return self.status is ProcessStatus.RUNNING

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "command": self.command,
            "cwd": self.cwd,
            "user_id": self.user_id,
            "status": self.status.value,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "exit_code": self.exit_code,
            "output_size": len(self.output),
        }


@dataclass(frozen=True)
class KillResult:
    success: bool
    error: str | None = None
    exit_code: int | None = None


@dataclass(frozen=True)
class ProcessStats:
    total: int = 0
    running: int = 0
    stopped: int = 0
    error: int = 0
    killed: int = 0
    memory_usage: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "running": self.running,
            "stopped": self.stopped,
            "error": self.error,
            "killed": self.killed,
            "memory_usage": self.memory_usage,
        }


class ProcessRegistry:
    """Spawns, tracks and reaps managed processes.

    Args:
        max_processes: Hard cap on concurrently running entries.
        max_output_size: Per-buffer bound, in characters.
        retention: Seconds a finished entry is kept before sweep() reaps it.
        sweep_interval: Seconds between periodic sweeps.
        default_timeout: Timeout for start_streaming(), in seconds.
        backend_factory: Builds a backend for (command, cwd). Defaults to a
            PTY running ``bash -c command``.
    """

    def __init__(
        self,
        max_processes: int = DEFAULT_MAX_PROCESSES,
        max_output_size: int = DEFAULT_MAX_OUTPUT_SIZE,
        retention: float = 3600.0,
        sweep_interval: float = 300.0,
        default_timeout: float = 300.0,
        backend_factory: BackendFactory | None = None,
    ) -> None:
        self.max_processes = max_processes
        self.max_output_size = max_output_size
        self.retention = retention
        self.sweep_interval = sweep_interval
        self.default_timeout = default_timeout
        self._backend_factory = backend_factory or self._pty_backend
        self._processes: dict[str, ManagedProcess] = {}
        self._watchers: dict[str, asyncio.Task[None]] = {}
        self._sweep_task: asyncio.Task[None] | None = None

    @classmethod
    def from_config(cls, config: Any, **kwargs: Any) -> ProcessRegistry:
        """Build a registry from a TetherConfig."""
        return cls(
            max_processes=config.max_processes,
            max_output_size=config.max_output_size,
            retention=config.process_retention,
            sweep_interval=config.process_sweep_interval,
            default_timeout=config.default_timeout,
            **kwargs,
        )

    def _pty_backend(self, command: str, cwd: str) -> Backend:
        return PTYBackend(
            ["bash", "-c", command],
            BackendConfig(cwd=cwd, buffer_limit=self.max_output_size),
        )

    @property
    def running_count(self) -> int:
        return sum(1 for p in self._processes.values() if p.is_running)

    async def start(
        self,
        command: str,
        cwd: str,
        user_id: str,
        name: str | None = None,
    ) -> str:
        """Spawn a background command.

        Returns:
            The new process id.

        Raises:
            ProcessLimitError: If max_processes entries are running.
            BackendStartError: If the process fails to spawn.
        """
        if self.running_count >= self.max_processes:
            raise ProcessLimitError(
                f"Maximum number of processes reached ({self.max_processes})"
            )

        backend = self._backend_factory(command, cwd)
        await backend.initialize()

        process = self._track(backend, command, cwd, user_id, name)
        self._watchers[process.id] = asyncio.create_task(self._watch(process))

        logger.info(
            "process_started: id=%s, name=%s, user=%s", process.id, process.name, user_id
        )
        return process.id

    async def start_streaming(
        self,
        command: str,
        cwd: str,
        timeout: float | None = None,
        on_data: Callable[[str], None] | None = None,
    ) -> str:
        """Run a command to completion, streaming its output.

        on_data receives the cumulative output (front-truncated to
        max_output_size) after every chunk.

        Returns:
            The final output.

        Raises:
            StreamingTimeoutError: If the command outlived the timeout; it
                is force-killed first.
            CommandFailedError: If the command exited non-zero.
            BackendStartError: If the process fails to spawn.
        """
        timeout = self.default_timeout if timeout is None else timeout

        backend = self._backend_factory(command, cwd)
        await backend.initialize()
        process = self._track(backend, command, cwd, STREAMING_USER, None)

        loop = asyncio.get_running_loop()
        started = loop.time()
        collected = ""

        async def consume() -> int | None:
            nonlocal collected
            async for event in backend.events():
                if event.type is BackendEventType.OUTPUT:
                    process.output.append(event.data)
                    collected = (collected + event.data)[-self.max_output_size :]
                    if on_data is not None:
                        on_data(collected)
                elif event.type is BackendEventType.ERROR:
                    process.error_output.append(f"{event.error}\n")
                else:
                    self._handle_exit(process, event.exit_code)
                    return event.exit_code
            return None

        try:
            exit_code = await asyncio.wait_for(consume(), timeout)
        except asyncio.TimeoutError:
            elapsed = loop.time() - started
            await self._abort(process)
            logger.warning("process_timeout: id=%s, elapsed=%.1f", process.id, elapsed)
            raise StreamingTimeoutError(elapsed) from None
        except BaseException as err:
            # on_data failed or the caller was cancelled
            await self._abort(process)
            logger.warning("process_aborted: id=%s, reason=%r", process.id, err)
            raise

        if exit_code != 0:
            raise CommandFailedError(exit_code, collected)
        return collected

    async def kill(self, process_id: str, force: bool = False) -> KillResult:
        """Interrupt (or force-kill) a running process.

        Returns:
            A KillResult; unknown or finished processes yield success=False.
        """
        process = self._processes.get(process_id)
        if process is None:
            return KillResult(success=False, error="Process not found")
        # an interrupted process may still be alive; force-kill must reach it
        if not process.backend.is_running:
            return KillResult(success=False, error="Process is not running")

        if force:
            await process.backend.destroy()
        else:
            await process.backend.stop()

        process.status = ProcessStatus.KILLED
        process.end_time = now_ms()
        logger.info("process_killed: id=%s, force=%s", process_id, force)
        return KillResult(success=True, exit_code=process.exit_code)

    async def write(self, process_id: str, text: str) -> bool:
        """Send a line to a running process (False if not running)."""
        process = self._processes.get(process_id)
        if process is None or not process.is_running:
            return False
        return await process.backend.send_input(text)

    def get(self, process_id: str) -> ManagedProcess | None:
        return self._processes.get(process_id)

    def get_output(self, process_id: str, lines: int | None = None) -> str | None:
        """Output of a process, optionally only the last N lines."""
        process = self._processes.get(process_id)
        if process is None:
            return None
        return process.output.tail(lines)

    def get_error(self, process_id: str) -> str | None:
        process = self._processes.get(process_id)
        if process is None:
            return None
        return process.error_output.text

    def list_processes(self, user_id: str | None = None) -> list[ManagedProcess]:
        """All tracked processes, or only those owned by user_id."""
        return [
            p for p in self._processes.values() if user_id is None or p.user_id == user_id
        ]

    async def save_output(self, process_id: str, path: str | Path) -> None:
        """Write a process's output to a file.

        Raises:
            KeyError: If the process is unknown.
        """
        output = self.get_output(process_id)
        if output is None:
            raise KeyError(f"Process not found: {process_id}")
        await asyncio.to_thread(Path(path).write_text, output, encoding="utf-8")

    def stats(self) -> ProcessStats:
        counts = {status: 0 for status in ProcessStatus}
        memory = 0
        for process in self._processes.values():
            counts[process.status] += 1
            memory += len(process.output) + len(process.error_output)
        return ProcessStats(
            total=len(self._processes),
            running=counts[ProcessStatus.RUNNING],
            stopped=counts[ProcessStatus.STOPPED],
            error=counts[ProcessStatus.ERROR],
            killed=counts[ProcessStatus.KILLED],
            memory_usage=memory,
        )

    async def sweep(self, now: int | None = None) -> int:
        """Remove finished entries older than the retention window.

        An entry marked killed whose process ignored the interrupt is
        force-killed before it is dropped.

        Args:
            now: Current time in epoch milliseconds (defaults to now).

        Returns:
            Number of entries removed.
        """
        now = now_ms() if now is None else now
        max_age = self.retention * 1000
        expired = [
            p
            for p in self._processes.values()
            if p.status.is_terminal and p.end_time is not None and now - p.end_time > max_age
        ]
        for process in expired:
            if process.backend.is_running:
                logger.warning("process_escalated: id=%s, still alive after kill", process.id)
                await process.backend.destroy()
            del self._processes[process.id]
            watcher = self._watchers.pop(process.id, None)
            if watcher is not None and not watcher.done():
                watcher.cancel()
            logger.info("process_reaped: id=%s", process.id)
        return len(expired)

    def start_sweeper(self) -> None:
        """Run sweep() every sweep_interval seconds until shutdown()."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def shutdown(self) -> None:
        """Force-kill every live process and stop background tasks."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            self._sweep_task = None

        for process in list(self._processes.values()):
            if process.backend.is_running:
                await process.backend.destroy()
                if process.status is ProcessStatus.RUNNING:
                    process.status = ProcessStatus.KILLED
                    process.end_time = now_ms()
                logger.info("process_killed: id=%s, force=True", process.id)

        for watcher in self._watchers.values():
            watcher.cancel()
        self._watchers.clear()
        self._processes.clear()
        logger.info("process_registry_shutdown")

    def _track(
        self,
        backend: Backend,
        command: str,
        cwd: str,
        user_id: str,
        name: str | None,
    ) -> ManagedProcess:
        process = ManagedProcess(
            id=str(uuid.uuid4()),
            name=name or command.split(" ")[0],
            command=command,
            cwd=cwd,
            user_id=user_id,
            output=LineBuffer(self.max_output_size),
            error_output=LineBuffer(self.max_output_size),
            backend=backend,
        )
        self._processes[process.id] = process
        return process

    async def _watch(self, process: ManagedProcess) -> None:
        async for event in process.backend.events():
            if event.type is BackendEventType.OUTPUT:
                process.output.append(event.data)
            elif event.type is BackendEventType.ERROR:
                process.error_output.append(f"{event.error}\n")
            else:
                self._handle_exit(process, event.exit_code)

    def _handle_exit(self, process: ManagedProcess, exit_code: int | None) -> None:
        process.exit_code = exit_code
        if process.status is ProcessStatus.KILLED:
            logger.debug("process_exit_after_kill: id=%s, exit_code=%s", process.id, exit_code)
            return
        process.status = ProcessStatus.STOPPED if exit_code == 0 else ProcessStatus.ERROR
        process.end_time = now_ms()
        logger.info("process_exited: id=%s, exit_code=%s", process.id, exit_code)

    async def _abort(self, process: ManagedProcess) -> None:
        await process.backend.destroy()
        process.status = ProcessStatus.KILLED
        process.end_time = now_ms()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("process_sweep_failed")
