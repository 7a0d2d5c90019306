"""Chat sessions, their manager and persistence."""

from tether.core.session.manager import (
    ChannelBusyError,
    SessionLimitError,
    SessionManager,
    format_uptime,
)
from tether.core.session.persistence import SessionRecord, SessionStore
from tether.core.session.session import Session

__all__ = [
    "ChannelBusyError",
    "Session",
    "SessionLimitError",
    "SessionManager",
    "SessionRecord",
    "SessionStore",
    "format_uptime",
]
