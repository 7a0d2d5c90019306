"""tmux Backend - Detached multiplexer sessions recovered by polling.

tmux has no output-streaming hook, so the backend re-captures the whole
pane on a fixed interval and emits only the text it has not seen yet.
Input goes through tmux's own command channel (send-keys), never a pipe.

Sessions survive the parent process, which makes them attachable for
debugging with `tmux attach -t <name>`.
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid

from tether.core.pty.backend import Backend, BackendConfig, BackendStartError

logger = logging.getLogger(__name__)

ANCHOR_SIZE = 64


class PaneCursor:
    """Read cursor over a growing pane capture.

    Remembers how far into the capture it has read (offset) and the text
    just before that point (anchor). A capture only yields new text when
    the anchor is still found at the recorded offset; if the pane scrolled
    and shifted, the cursor re-anchors on the last occurrence of the anchor
    and counts a discontinuity. If the anchor vanished entirely nothing is
    emitted for that capture and reading restarts from its end.
    """

    def __init__(self, anchor_size: int = ANCHOR_SIZE) -> None:
        self.anchor_size = anchor_size
        self.offset = 0
        self.anchor = ""
        self.discontinuities = 0

    def advance(self, captured: str) -> str:
        """Consume a fresh capture and return the unseen suffix."""
        if not self.anchor:
            new = captured
        elif captured[self.offset - len(self.anchor) : self.offset] == self.anchor:
            new = captured[self.offset :]
        else:
            self.discontinuities += 1
            index = captured.rfind(self.anchor)
            if index == -1:
                logger.warning(
                    "pane_discontinuity: anchor lost, offset=%d, captured=%d",
                    self.offset,
                    len(captured),
                )
                new = ""
            else:
                logger.debug(
                    "pane_reanchored: old_offset=%d, new_offset=%d",
                    self.offset,
                    index + len(self.anchor),
                )
                new = captured[index + len(self.anchor) :]

        self.offset = len(captured)
        self.anchor = captured[-self.anchor_size :]
        return new

    def reset(self) -> None:
        self.offset = 0
        self.anchor = ""


class TmuxBackend(Backend):
    """tmux-based backend.

    Example:
        >>> backend = TmuxBackend(["claude"], BackendConfig(cwd="/project"))
        >>> await backend.initialize()
        >>> await backend.send_input("hello")
        >>> async for event in backend.events():
        ...     print(event.data)
    """

    def __init__(
        self,
        command: list[str],
        config: BackendConfig | None = None,
        session_name: str | None = None,
        poll_interval: float = 0.5,
        startup_delay: float = 0.0,
    ) -> None:
        """Initialize tmux backend.

        Args:
            command: Command and arguments to run inside the pane.
            config: Backend configuration options.
            session_name: tmux session name (generated if omitted).
            poll_interval: Seconds between pane captures.
            startup_delay: Seconds to wait after new-session for the
                command to boot.
        """
        super().__init__(config)
        self._command = command
        self._session_name = session_name or f"tether_{uuid.uuid4().hex[:8]}"
        self._poll_interval = poll_interval
        self._startup_delay = startup_delay
        self._cursor = PaneCursor()
        self._poll_task: asyncio.Task[None] | None = None
        self._started = False

    @property
    def session_name(self) -> str:
        return self._session_name

    @property
    def cursor(self) -> PaneCursor:
        return self._cursor

    @property
    def is_running(self) -> bool:
        return self._started and not self._exited

    async def initialize(self) -> None:
        """Create the detached session and start polling.

        Raises:
            ValueError: If no command was given.
            BackendStartError: If tmux is missing or new-session fails.
        """
        if not self._command:
            raise ValueError("tmux backend requires a command")

        args = [
            "new-session",
            "-d",
            "-s",
            self._session_name,
            "-x",
            str(self._config.cols),
            "-y",
            str(self._config.rows),
        ]
        if self._config.cwd:
            args += ["-c", os.path.expanduser(self._config.cwd)]
        for key, value in self._config.env.items():
            args += ["-e", f"{key}={value}"]
        args += ["--", *self._command]

        try:
            returncode, _, stderr = await self._tmux(*args)
        except OSError as err:
            raise BackendStartError(f"tmux not available: {err}") from err
        if returncode != 0:
            raise BackendStartError(f"tmux new-session failed: {stderr.strip()}")

        self._started = True
        logger.info(
            "tmux_session_created: name=%s, cmd=%s", self._session_name, " ".join(self._command)
        )

        if self._startup_delay > 0:
            await asyncio.sleep(self._startup_delay)

        self._poll_task = asyncio.create_task(self._poll_loop())

    async def send_input(self, text: str) -> bool:
        """Type text into the pane literally, then press Enter.

        Returns:
            False if the session is gone or tmux rejected the keys.
        """
        if not self.is_running:
            return False

        try:
            returncode, _, stderr = await self._tmux(
                "send-keys", "-t", self._session_name, "-l", text
            )
            if returncode == 0:
                returncode, _, stderr = await self._tmux(
                    "send-keys", "-t", self._session_name, "Enter"
                )
        except OSError as err:
            logger.warning("tmux_send_failed: name=%s, error=%s", self._session_name, err)
            return False

        if returncode != 0:
            logger.warning(
                "tmux_send_failed: name=%s, error=%s", self._session_name, stderr.strip()
            )
            return False
        return True

    async def stop(self) -> None:
        """Send Ctrl+C to the pane."""
        if not self.is_running:
            return
        try:
            await self._tmux("send-keys", "-t", self._session_name, "C-c")
        except OSError as err:
            logger.warning("tmux_interrupt_failed: name=%s, error=%s", self._session_name, err)

    async def destroy(self) -> None:
        """Kill the tmux session and emit EXIT."""
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        if self._started and not self._exited:
            try:
                returncode, _, stderr = await self._tmux("kill-session", "-t", self._session_name)
                if returncode != 0:
                    logger.debug(
                        "tmux_kill_skipped: name=%s, error=%s", self._session_name, stderr.strip()
                    )
            except OSError as err:
                logger.warning("tmux_kill_failed: name=%s, error=%s", self._session_name, err)
            logger.info("tmux_session_killed: name=%s", self._session_name)

        self._emit_exit(None)

    async def capture(self) -> str | None:
        """Capture the whole pane history, or None if capture failed."""
        returncode, stdout, _ = await self._tmux(
            "capture-pane", "-p", "-t", self._session_name, "-S", "-"
        )
        if returncode != 0:
            return None
        return stdout.rstrip("\n")

    async def has_session(self) -> bool:
        returncode, _, _ = await self._tmux("has-session", "-t", self._session_name)
        return returncode == 0

    async def poll_once(self) -> None:
        """Capture the pane once and emit whatever is new."""
        try:
            captured = await self.capture()
            alive = captured is not None or await self.has_session()
        except OSError as err:
            self._emit_error(err)
            return

        if captured is None:
            if alive:
                self._emit_error(RuntimeError(f"capture-pane failed for {self._session_name}"))
            else:
                logger.info("tmux_session_gone: name=%s", self._session_name)
                self._emit_exit(None)
            return

        self._emit_output(self._cursor.advance(captured))

    async def _poll_loop(self) -> None:
        while not self._exited:
            await self.poll_once()
            if self._exited:
                break
            await asyncio.sleep(self._poll_interval)

    async def _tmux(self, *args: str) -> tuple[int, str, str]:
        proc = await asyncio.create_subprocess_exec(
            "tmux",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        return (
            proc.returncode if proc.returncode is not None else -1,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )
