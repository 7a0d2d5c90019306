"""SessionManager - registry of sessions keyed by id, user and channel.

The manager creates sessions (one backend each), resolves inbound messages
to a session by (user, channel), persists every mutation and restores
active rows on start. Restored sessions have no backend until their next
message.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections import Counter
from datetime import datetime, timezone
from typing import Any

from tether.core.config import TetherConfig
from tether.core.pty.backend import Backend, BackendConfig, get_backend
from tether.core.session.persistence import SessionRecord, SessionStore
from tether.core.session.session import BackendFactory, Session
from tether.core.types import SessionStatus, generate_id, now_ms

logger = logging.getLogger(__name__)

TMUX_SESSION_PREFIX = "claude_"


class SessionLimitError(RuntimeError):
    """The manager already holds max_sessions live sessions."""


class ChannelBusyError(RuntimeError):
    """The channel's current session belongs to another user."""

    def __init__(self, channel_id: str, owner_id: str) -> None:
        super().__init__(f"Channel {channel_id} has an active session owned by {owner_id}")
        self.channel_id = channel_id
        self.owner_id = owner_id


def format_uptime(ms: int) -> str:
    """Format a duration like "2d 3h", "4h 5m", "6m 7s" or "8s"."""
    seconds = max(ms, 0) // 1000
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24

    if days > 0:
        return f"{days}d {hours % 24}h"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


class SessionManager:
    """Manage chat sessions and their persistence.

    Example:
        >>> manager = SessionManager(load_config())
        >>> await manager.start()
        >>> session = await manager.get_or_create_session("u1", "c1")
        >>> await session.send_message("hello")
        >>> await manager.shutdown()

    Args:
        config: Runtime configuration.
        store: Session store (defaults to SQLite at config.database_path when
            persistence is enabled, otherwise none).
        backend_factory: Builds a backend for a session id (defaults to the
            configured CLI under the configured backend type).
    """

    def __init__(
        self,
        config: TetherConfig | None = None,
        store: SessionStore | None = None,
        backend_factory: BackendFactory | None = None,
    ) -> None:
        self.config = config or TetherConfig()
        if store is None and self.config.persistence:
            store = SessionStore(self.config.database_path)
        self.store = store
        self._backend_factory = backend_factory or self._default_backend
        self._sessions: dict[str, Session] = {}
        self._user_sessions: dict[str, set[str]] = {}
        self._channel_sessions: dict[str, str] = {}
        self._sweep_task: asyncio.Task[None] | None = None

    def _default_backend(self, session_id: str) -> Backend:
        return get_backend(
            self.config.backend_type,
            [self.config.cli_path],
            BackendConfig(
                rows=self.config.rows,
                cols=self.config.cols,
                cwd=self.config.working_directory,
                buffer_limit=self.config.max_output_size,
            ),
            name=f"{TMUX_SESSION_PREFIX}{session_id}",
            poll_interval=self.config.poll_interval,
            startup_delay=self.config.startup_delay,
        )

    @property
    def persistence_enabled(self) -> bool:
        return self.store is not None and self.store.is_open

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Open the store, restore active sessions and start the idle sweep."""
        if self.store is not None:
            try:
                self.store.open()
            except (sqlite3.Error, OSError) as err:
                logger.error("session_store_unavailable: path=%s, error=%s", self.store.path, err)

        await self.restore_sessions()

        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("session_manager_started: sessions=%d", len(self._sessions))

    async def shutdown(self) -> None:
        """Persist every session and release all backends.

        Statuses are left as they are so active sessions restore next time.
        """
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        await self.save_all_sessions()
        for session in list(self._sessions.values()):
            session.on_update = None
            await session.detach_backend()

        if self.store is not None:
            self.store.close()
        logger.info("session_manager_shutdown: sessions=%d", len(self._sessions))

    # =========================================================================
    # Registry
    # =========================================================================

    async def create_session(self, user_id: str, channel_id: str) -> Session:
        """Create, start and register a new session.

        The session is registered only once its backend is running.

        Replaces the channel's current session only when it is stopped or
        owned by the same user.

        Raises:
            ChannelBusyError: If another user's session is live in the channel.
            SessionLimitError: If max_sessions live sessions exist.
            BackendStartError: If the backend fails to spawn.
        """
        current = self.get_session_by_channel(channel_id)
        if (
            current is not None
            and current.status is not SessionStatus.STOPPED
            and current.user_id != user_id
        ):
            raise ChannelBusyError(channel_id, current.user_id)

        live = sum(1 for s in self._sessions.values() if s.status is not SessionStatus.STOPPED)
        if live >= self.config.max_sessions:
            raise SessionLimitError(f"Maximum number of sessions reached ({self.config.max_sessions})")

        session = self._new_session(generate_id("session"), user_id, channel_id)
        await session.initialize()

        self._register(session)
        await self.persist_session(session)
        logger.info("session_created: id=%s, user=%s, channel=%s", session.id, user_id, channel_id)
        return session

    async def get_or_create_session(self, user_id: str, channel_id: str) -> Session:
        """Resolve the channel's current session, creating one if needed.

        Raises:
            ChannelBusyError: If another user's session is live in the channel.
        """
        session = self.get_session_by_channel(channel_id)
        if session is not None and session.status is not SessionStatus.STOPPED:
            if session.user_id == user_id:
                return session
            raise ChannelBusyError(channel_id, session.user_id)
        return await self.create_session(user_id, channel_id)

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_session_by_channel(self, channel_id: str) -> Session | None:
        session_id = self._channel_sessions.get(channel_id)
        return self._sessions.get(session_id) if session_id else None

    def get_user_sessions(self, user_id: str) -> list[Session]:
        ids = self._user_sessions.get(user_id, set())
        sessions = [self._sessions[i] for i in ids if i in self._sessions]
        return sorted(sessions, key=lambda s: s.created_at)

    def list_sessions(self) -> list[dict[str, Any]]:
        """Summaries of every session in memory."""
        return [
            {
                "id": s.id,
                "user_id": s.user_id,
                "channel_id": s.channel_id,
                "status": s.status.value,
                "model": s.model,
                "message_count": s.message_count,
                "last_activity": s.last_activity,
                "has_backend": s.backend is not None,
            }
            for s in self._sessions.values()
        ]

    async def clear_session(self, session_id: str) -> bool:
        """Destroy a session and delete its persisted row."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False

        session.on_update = None
        await session.destroy()
        self._unregister(session)
        self._delete_row(session_id)
        logger.info("session_cleared: id=%s", session_id)
        return True

    async def clear_user_sessions(self, user_id: str) -> int:
        sessions = self.get_user_sessions(user_id)
        for session in sessions:
            await self.clear_session(session.id)
        return len(sessions)

    async def branch_session(self, session_id: str) -> Session | None:
        """Start a sibling session carrying a copy of another's history."""
        source = self._sessions.get(session_id)
        if source is None:
            return None

        branch = await self.create_session(source.user_id, source.channel_id)
        branch.copy_from(source)
        await self.persist_session(branch)
        logger.info("session_branched: source=%s, branch=%s", session_id, branch.id)
        return branch

    # =========================================================================
    # Persistence
    # =========================================================================

    async def persist_session(self, session: Session) -> None:
        """Upsert a session row; failures are logged, never raised."""
        if not self.persistence_enabled:
            return
        assert self.store is not None

        record = SessionRecord(
            id=session.id,
            user_id=session.user_id,
            channel_id=session.channel_id,
            status=session.status.value,
            model=session.model,
            created_at=session.created_at,
            updated_at=now_ms(),
            data=session.serialize(),
        )
        try:
            self.store.upsert(record)
        except (sqlite3.Error, OSError) as err:
            logger.error("session_persist_failed: id=%s, error=%s", session.id, err)

    async def save_all_sessions(self) -> None:
        for session in list(self._sessions.values()):
            await self.persist_session(session)
        logger.info("sessions_saved: count=%d", len(self._sessions))

    async def restore_sessions(self) -> int:
        """Load active rows into memory, without backends.

        Corrupt rows are logged and skipped.

        Returns:
            Number of sessions restored.
        """
        if not self.persistence_enabled:
            return 0
        assert self.store is not None

        try:
            records = list(self.store.load(status=SessionStatus.ACTIVE.value))
        except sqlite3.Error as err:
            logger.error("session_restore_failed: error=%s", err)
            return 0

        restored = 0
        for record in records:
            if record.id in self._sessions:
                continue
            session = self._new_session(
                record.id, record.user_id, record.channel_id, created_at=record.created_at
            )
            try:
                session.restore(record.data)
            except (KeyError, ValueError, TypeError) as err:
                logger.error("session_restore_skipped: id=%s, error=%s", record.id, err)
                continue
            self._register(session)
            restored += 1
            logger.debug("session_restored: id=%s, messages=%d", session.id, session.message_count)

        logger.info("sessions_restored: count=%d", restored)
        return restored

    def _delete_row(self, session_id: str) -> None:
        if not self.persistence_enabled:
            return
        assert self.store is not None
        try:
            self.store.delete(session_id)
        except (sqlite3.Error, OSError) as err:
            logger.error("session_delete_failed: id=%s, error=%s", session_id, err)

    # =========================================================================
    # Reporting
    # =========================================================================

    def export_sessions(self, user_id: str) -> dict[str, Any]:
        return {
            "exportedAt": datetime.now(timezone.utc).isoformat(),
            "userId": user_id,
            "sessions": [s.export() for s in self.get_user_sessions(user_id)],
        }

    def get_statistics(self, user_id: str) -> dict[str, Any]:
        """Usage summary for a user's sessions."""
        sessions = self.get_user_sessions(user_id)
        total_messages = sum(s.message_count for s in sessions)
        models = Counter(s.model or "default" for s in sessions)

        if sessions:
            uptime = format_uptime(now_ms() - min(s.created_at for s in sessions))
            avg_length = f"{round(total_messages / len(sessions))} messages"
            favorite_model = models.most_common(1)[0][0]
        else:
            uptime, avg_length, favorite_model = "0s", "0", None

        return {
            "total": len(sessions),
            "active": sum(1 for s in sessions if s.status is SessionStatus.ACTIVE),
            "messages": total_messages,
            "uptime": uptime,
            "avg_length": avg_length,
            "favorite_model": favorite_model,
        }

    # =========================================================================
    # Idle sweep
    # =========================================================================

    async def sweep_idle_sessions(self, now: int | None = None) -> int:
        """Clear sessions idle for longer than session_idle_timeout.

        Args:
            now: Current time in epoch milliseconds (defaults to now).

        Returns:
            Number of sessions cleared.
        """
        now = now_ms() if now is None else now
        max_idle = self.config.session_idle_timeout * 1000
        expired = [s.id for s in self._sessions.values() if now - s.last_activity > max_idle]
        for session_id in expired:
            await self.clear_session(session_id)
        if expired:
            logger.info("idle_sessions_swept: count=%d", len(expired))
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.session_sweep_interval)
            try:
                await self.sweep_idle_sessions()
            except Exception:
                logger.exception("session_sweep_failed")

    # =========================================================================
    # Internals
    # =========================================================================

    def _new_session(
        self,
        session_id: str,
        user_id: str,
        channel_id: str,
        created_at: int | None = None,
    ) -> Session:
        return Session(
            session_id,
            user_id=user_id,
            channel_id=channel_id,
            backend_factory=self._backend_factory,
            created_at=created_at,
            on_update=self.persist_session,
        )

    def _register(self, session: Session) -> None:
        self._sessions[session.id] = session
        self._user_sessions.setdefault(session.user_id, set()).add(session.id)
        self._channel_sessions[session.channel_id] = session.id

    def _unregister(self, session: Session) -> None:
        user_sessions = self._user_sessions.get(session.user_id)
        if user_sessions is not None:
            user_sessions.discard(session.id)
            if not user_sessions:
                del self._user_sessions[session.user_id]
        if self._channel_sessions.get(session.channel_id) == session.id:
            del self._channel_sessions[session.channel_id]
