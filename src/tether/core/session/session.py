"""Session - one conversation bound to one backend process.

A Session owns the message history for a (user, channel) pair and the
backend running the interactive CLI. Backend events are consumed by a
dedicated pump task, classified, recorded as assistant messages where
they are responses, and fanned out to subscriber queues.

States:
    active   initial, and after initialize() or activate()
    idle     after stop() (backend interrupted, not destroyed)
    stopped  terminal, after destroy() or when the backend exits

Example:
    >>> session = Session("s1", user_id="u1", channel_id="c1", backend_factory=factory)
    >>> await session.initialize()
    >>> events = session.subscribe()
    >>> await session.send_message("explain this repo")
    >>> event = await events.get()
    >>> print(event.output)
    >>> await session.destroy()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from tether.core.parsers.output import OutputParser
from tether.core.pty.backend import Backend, BackendEventType
from tether.core.types import (
    Message,
    OutputType,
    Role,
    SessionEvent,
    SessionEventType,
    SessionStatus,
    now_ms,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "default"
CONTINUE_PROMPT = "continue"

BackendFactory = Callable[[str], Backend]
UpdateHook = Callable[["Session"], Awaitable[None]]


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


class Session:
    """Per-conversation state machine wrapping one backend.

    Args:
        id: Unique session id.
        user_id: Owner.
        channel_id: Channel the session is bound to.
        backend_factory: Builds the backend for this session id.
        created_at: Creation time in epoch milliseconds.
        on_update: Awaited after every mutation (the manager persists here).
    """

    def __init__(
        self,
        id: str,
        user_id: str,
        channel_id: str,
        backend_factory: BackendFactory | None = None,
        created_at: int | None = None,
        on_update: UpdateHook | None = None,
    ) -> None:
        self.id = id
        self.user_id = user_id
        self.channel_id = channel_id
        self.created_at = created_at if created_at is not None else now_ms()
        self.last_activity = self.created_at
        self.status = SessionStatus.ACTIVE
        self.model = DEFAULT_MODEL
        self.messages: list[Message] = []
        self.current_message_index = 0
        self.last_error: str | None = None
        self.on_update = on_update

        self._backend_factory = backend_factory
        self._backend: Backend | None = None
        self._parser = OutputParser()
        self._lock = asyncio.Lock()
        self._pump_task: asyncio.Task[None] | None = None
        self._subscribers: list[asyncio.Queue[SessionEvent]] = []

    def __repr__(self) -> str:
        return (
            f"Session(id={self.id!r}, user={self.user_id!r}, channel={self.channel_id!r}, "
            f"status={self.status.value})"
        )

    @property
    def backend(self) -> Backend | None:
        return self._backend

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def current_message(self) -> Message | None:
        """Message under the navigation cursor (None when history is empty)."""
        if 0 <= self.current_message_index < len(self.messages):
            return self.messages[self.current_message_index]
        return None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """Spawn the backend and start consuming its events.

        Raises:
            RuntimeError: If the session is stopped or has no backend factory.
            BackendStartError: If the backend fails to spawn.
        """
        if self.status is SessionStatus.STOPPED:
            raise RuntimeError(f"Session {self.id} is stopped")
        if self._backend is not None:
            return
        if self._backend_factory is None:
            raise RuntimeError(f"Session {self.id} has no backend factory")

        backend = self._backend_factory(self.id)
        await backend.initialize()

        self._backend = backend
        self._pump_task = asyncio.create_task(self._pump(backend))
        self._set_status(SessionStatus.ACTIVE)
        logger.info("session_initialized: id=%s, backend=%s", self.id, type(backend).__name__)

    async def activate(self) -> None:
        if self.status is SessionStatus.STOPPED:
            return
        self.last_activity = now_ms()
        self._set_status(SessionStatus.ACTIVE)
        await self._notify_update()

    async def stop(self) -> None:
        """Interrupt the backend (best-effort) and go idle."""
        if self.status is SessionStatus.STOPPED:
            return
        if self._backend is not None:
            await self._backend.stop()
        self._set_status(SessionStatus.IDLE)
        await self._notify_update()
        logger.info("session_stopped: id=%s", self.id)

    async def destroy(self) -> None:
        """Kill the backend and move to the terminal state.

        The session is stopped locally whether or not the OS process has
        actually exited.
        """
        await self._release_backend()
        self._set_status(SessionStatus.STOPPED)
        await self._notify_update()
        logger.info("session_destroyed: id=%s", self.id)

    async def detach_backend(self) -> None:
        """Release the backend without changing status."""
        await self._release_backend()

    # =========================================================================
    # Input
    # =========================================================================

    async def send_message(self, content: str) -> bool:
        """Record a user message and forward it to the backend.

        A session restored without a backend starts one first.

        Returns:
            True if the backend accepted the text. False on a stopped
            session (history untouched) or a failed write.

        Raises:
            BackendStartError: If a lazily started backend fails to spawn.
        """
        async with self._lock:
            return await self._send_locked(content)

    async def continue_(self) -> bool:
        return await self.send_message(CONTINUE_PROMPT)

    async def regenerate(self) -> bool:
        """Drop the last exchange and resend the most recent user message.

        Returns:
            False (and history unchanged) when there are fewer than two
            entries or no user message to resend.

        Raises:
            BackendStartError: If a lazily started backend fails to spawn;
                history is left as it was.
        """
        async with self._lock:
            if self.status is SessionStatus.STOPPED or len(self.messages) < 2:
                return False

            last_user = next((m for m in reversed(self.messages) if m.role is Role.USER), None)
            if last_user is None:
                return False

            # spawn before touching history so a failed start leaves it intact
            if self._backend is None:
                await self.initialize()

            del self.messages[-2:]
            self._clamp_cursor()
            logger.debug("session_regenerate: id=%s, message=%s", self.id, last_user.id)
            return await self._send_locked(last_user.content)

    async def set_model(self, model: str) -> bool:
        """Switch model and forward the directive to the CLI."""
        async with self._lock:
            self.model = model
            delivered = await self._send_directive(f"/model {model}")
            await self._notify_update()
            return delivered

    async def switch_project(self, project: str) -> bool:
        async with self._lock:
            return await self._send_directive(f"/project {project}")

    async def _send_locked(self, content: str) -> bool:
        if self.status is SessionStatus.STOPPED:
            return False
        if self._backend is None:
            await self.initialize()
        assert self._backend is not None

        self.messages.append(Message(role=Role.USER, content=content))
        self.last_activity = now_ms()
        delivered = await self._backend.send_input(content)
        await self._notify_update()

        if delivered:
            logger.info("session_message_sent: id=%s, count=%d", self.id, len(self.messages))
        else:
            logger.warning("session_message_undelivered: id=%s", self.id)
        return delivered

    async def _send_directive(self, directive: str) -> bool:
        if self._backend is None or self.status is SessionStatus.STOPPED:
            return False
        return await self._backend.send_input(directive)

    # =========================================================================
    # Navigation
    # =========================================================================

    def first(self) -> Message | None:
        if self.messages:
            self.current_message_index = 0
        return self.current_message

    def previous(self) -> Message | None:
        if self.current_message_index > 0:
            self.current_message_index -= 1
        return self.current_message

    def next(self) -> Message | None:
        if self.current_message_index < len(self.messages) - 1:
            self.current_message_index += 1
        return self.current_message

    def last(self) -> Message | None:
        if self.messages:
            self.current_message_index = len(self.messages) - 1
        return self.current_message

    def jump_to(self, message_id: str) -> Message | None:
        """Move the cursor to a message by id (None if not found)."""
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                self.current_message_index = index
                return message
        return None

    def _clamp_cursor(self) -> None:
        self.current_message_index = max(0, min(self.current_message_index, len(self.messages) - 1))

    # =========================================================================
    # Events
    # =========================================================================

    def subscribe(self, maxsize: int = 0) -> asyncio.Queue[SessionEvent]:
        """Get a queue receiving every event this session emits."""
        queue: asyncio.Queue[SessionEvent] = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[SessionEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _emit(self, event: SessionEvent) -> None:
        for queue in self._subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "session_event_dropped: id=%s, type=%s", self.id, event.type.value
                )

    def _set_status(self, status: SessionStatus) -> None:
        if status is self.status:
            return
        self.status = status
        self._emit(SessionEvent(type=SessionEventType.STATUS, session_id=self.id, status=status))

    async def _pump(self, backend: Backend) -> None:
        async for event in backend.events():
            if event.type is BackendEventType.OUTPUT:
                classified = self._parser.parse(event.data)
                if classified.type is OutputType.RESPONSE and classified.content:
                    self.messages.append(Message(role=Role.ASSISTANT, content=classified.content))
                    self.last_activity = now_ms()
                    await self._notify_update()
                self._emit(
                    SessionEvent(type=SessionEventType.OUTPUT, session_id=self.id, output=classified)
                )

            elif event.type is BackendEventType.ERROR:
                self.last_error = str(event.error)
                logger.error("session_backend_error: id=%s, error=%s", self.id, event.error)
                self._emit(
                    SessionEvent(type=SessionEventType.ERROR, session_id=self.id, error=self.last_error)
                )

            else:
                self.status = SessionStatus.STOPPED
                logger.info("session_backend_exited: id=%s, exit_code=%s", self.id, event.exit_code)
                self._emit(
                    SessionEvent(
                        type=SessionEventType.EXIT,
                        session_id=self.id,
                        exit_code=event.exit_code,
                        status=SessionStatus.STOPPED,
                    )
                )
                await self._notify_update()

    async def _release_backend(self) -> None:
        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None

        if self._backend is not None:
            backend, self._backend = self._backend, None
            await backend.destroy()

    async def _notify_update(self) -> None:
        if self.on_update is not None:
            await self.on_update(self)

    # =========================================================================
    # Serialization
    # =========================================================================

    def copy_from(self, source: Session) -> None:
        """Copy history and model from another session."""
        self.messages = list(source.messages)
        self.model = source.model
        self.current_message_index = 0

    def serialize(self) -> dict[str, Any]:
        """State stored in the persisted data blob."""
        return {
            "messages": [m.to_dict() for m in self.messages],
            "messageCount": self.message_count,
            "model": self.model,
            "status": self.status.value,
            "lastActivity": self.last_activity,
        }

    def restore(self, data: dict[str, Any]) -> None:
        """Load state from a persisted data blob.

        Raises:
            KeyError, ValueError, TypeError: If the blob is malformed.
        """
        messages = [Message.from_dict(m) for m in data.get("messages") or []]
        status = SessionStatus(data.get("status") or SessionStatus.IDLE.value)

        self.messages = messages
        self.model = data.get("model") or DEFAULT_MODEL
        self.status = status
        self.last_activity = int(data.get("lastActivity") or now_ms())
        self.current_message_index = 0

    def export(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "channelId": self.channel_id,
            "createdAt": self.created_at,
            "messages": [m.to_dict() for m in self.messages],
            "model": self.model,
            "status": self.status.value,
        }

    def debug_info(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "messageCount": self.message_count,
            "created": _iso(self.created_at),
            "lastActive": _iso(self.last_activity),
            "process": "active" if self._backend is not None and self._backend.is_running else "none",
            "lastError": self.last_error,
        }
