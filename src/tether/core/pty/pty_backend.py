"""PTY Backend - Direct pseudo-terminal process management.

Spawns a single process attached to a pseudo-terminal and pushes its
output as the OS flushes it. The master fd is watched with the event
loop's reader callback, so no threads are involved.
"""

from __future__ import annotations

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios

from tether.core.parsers.output import strip_ansi
from tether.core.pty.backend import Backend, BackendConfig, BackendStartError

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
REAP_TIMEOUT = 2.0


class PTYBackend(Backend):
    """Direct PTY backend.

    The child runs in its own process group so stop() and destroy() reach
    everything it spawned. ANSI escape codes are stripped from output.

    Example:
        >>> backend = PTYBackend(["claude"], BackendConfig(cwd="/project"))
        >>> await backend.initialize()
        >>> await backend.send_input("hello")
        >>> async for event in backend.events():
        ...     print(event.type, event.data)
        >>> await backend.destroy()
    """

    def __init__(self, command: list[str], config: BackendConfig | None = None) -> None:
        """Initialize PTY backend.

        Args:
            command: Command and arguments to run (e.g., ["claude"]).
            config: Backend configuration options.
        """
        super().__init__(config)
        self._command = command
        self._proc: subprocess.Popen[bytes] | None = None
        self._master_fd: int | None = None
        self._pgid: int | None = None
        self._reading = False
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._finalizer: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        """Process ID of the child process."""
        return self._proc.pid if self._proc else None

    @property
    def is_running(self) -> bool:
        return self._proc is not None and not self._exited

    async def initialize(self) -> None:
        """Start the PTY process.

        Raises:
            ValueError: If no command was given.
            BackendStartError: If the process fails to start.
        """
        if not self._command:
            raise ValueError("PTY backend requires a command")

        master_fd, slave_fd = pty.openpty()

        env = os.environ.copy()
        env.update(self._config.env)
        env["TERM"] = "xterm-256color"

        try:
            self._proc = subprocess.Popen(
                self._command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                cwd=self._config.cwd,
                env=env,
            )
        except OSError as err:
            os.close(master_fd)
            raise BackendStartError(f"Failed to spawn {self._command[0]}: {err}") from err
        finally:
            os.close(slave_fd)

        self._master_fd = master_fd
        self._pgid = os.getpgid(self._proc.pid)
        self._set_winsize(self._config.rows, self._config.cols)

        flags = fcntl.fcntl(master_fd, fcntl.F_GETFL)
        fcntl.fcntl(master_fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)

        asyncio.get_running_loop().add_reader(master_fd, self._on_readable)
        self._reading = True

        logger.info(
            "pty_started: pid=%d, pgid=%d, cmd=%s",
            self._proc.pid,
            self._pgid,
            " ".join(self._command),
        )

    async def send_input(self, text: str) -> bool:
        """Write a line to the PTY.

        Returns:
            False if the process is gone or the write failed.
        """
        if not self.is_running or self._master_fd is None:
            return False

        try:
            os.write(self._master_fd, (text + self._config.line_ending).encode())
        except OSError as err:
            logger.warning("pty_write_failed: pid=%s, error=%s", self.pid, err)
            self._emit_error(err)
            return False
        return True

    async def stop(self) -> None:
        """Send SIGINT to the process group."""
        self._signal(signal.SIGINT)

    async def destroy(self) -> None:
        """SIGKILL the process group, reap it and emit EXIT."""
        if self._proc is None:
            return

        self._signal(signal.SIGKILL)
        self._stop_reading()
        exit_code = await self._reap()
        self._close_fd()
        self._emit_exit(exit_code)
        logger.info("pty_destroyed: pid=%d, exit_code=%s", self._proc.pid, exit_code)

    def _signal(self, sig: int) -> None:
        if self._pgid is None or self._exited:
            return
        try:
            os.killpg(self._pgid, sig)
        except ProcessLookupError:
            logger.debug("pty_signal_skipped: pgid=%d already gone", self._pgid)
        except PermissionError as err:
            logger.warning("pty_signal_failed: pgid=%d, error=%s", self._pgid, err)

    def _on_readable(self) -> None:
        if self._master_fd is None:
            return
        try:
            data = os.read(self._master_fd, READ_CHUNK_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO: the child closed its side of the terminal
            data = b""

        if not data:
            self._stop_reading()
            if self._finalizer is None:
                self._finalizer = asyncio.get_running_loop().create_task(self._finalize())
            return

        chunk = strip_ansi(self._decoder.decode(data))
        self._emit_output(chunk)

    async def _finalize(self) -> None:
        exit_code = await self._reap()
        self._close_fd()
        self._emit_exit(exit_code)
        logger.info("pty_exited: pid=%s, exit_code=%s", self.pid, exit_code)

    async def _reap(self) -> int | None:
        """Wait (without blocking the loop) for the child to be reaped."""
        if self._proc is None:
            return None
        loop = asyncio.get_running_loop()
        deadline = loop.time() + REAP_TIMEOUT
        while loop.time() < deadline:
            code = self._proc.poll()
            if code is not None:
                return code
            await asyncio.sleep(0.05)
        return self._proc.poll()

    def _stop_reading(self) -> None:
        if self._reading and self._master_fd is not None:
            asyncio.get_running_loop().remove_reader(self._master_fd)
        self._reading = False

    def _close_fd(self) -> None:
        if self._master_fd is not None:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = None

    def _set_winsize(self, rows: int, cols: int) -> None:
        if self._master_fd is not None:
            winsize = struct.pack("HHHH", rows, cols, 0, 0)
            fcntl.ioctl(self._master_fd, termios.TIOCSWINSZ, winsize)
