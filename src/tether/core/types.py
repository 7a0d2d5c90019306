"""Pure data types for tether.core.

These are simple dataclasses with no behavior coupling.
They can be serialized, passed around, and used anywhere.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Role(Enum):
    """Author of a conversation message."""

    USER = "user"
    ASSISTANT = "assistant"


class SessionStatus(Enum):
    """Session lifecycle states.

    STOPPED is terminal.
    """

    ACTIVE = "active"
    IDLE = "idle"
    STOPPED = "stopped"


class ProcessStatus(Enum):
    """Managed process lifecycle states.

    RUNNING is the only non-terminal state.
    """

    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self is not ProcessStatus.RUNNING


class OutputType(Enum):
    """Kinds of classified CLI output."""

    RESPONSE = "response"
    PROGRESS = "progress"
    ERROR = "error"
    TOOL = "tool"
    STATUS = "status"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def generate_id(prefix: str) -> str:
    """Generate an opaque id like ``msg_1735390200000_3f9a1c2b7``."""
    return f"{prefix}_{now_ms()}_{uuid.uuid4().hex[:9]}"


@dataclass(frozen=True)
class Message:
    """A single entry in a session's conversation history.

    Attributes:
        role: Who wrote the message.
        content: Message text.
        timestamp: Creation time in epoch milliseconds.
        id: Opaque unique message id.
    """

    role: Role
    content: str
    timestamp: int = field(default_factory=now_ms)
    id: str = field(default_factory=lambda: generate_id("msg"))

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
            "id": self.id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        """Create from JSON dict.

        Raises:
            KeyError: If role or content is missing.
            ValueError: If role is not a known value.
        """
        return cls(
            role=Role(data["role"]),
            content=data["content"],
            timestamp=int(data.get("timestamp") or now_ms()),
            id=data.get("id") or generate_id("msg"),
        )


@dataclass(frozen=True)
class ClassifiedEvent:
    """Typed output of the output classifier.

    Attributes:
        type: Output kind (response, progress, error, tool, status).
        content: Extracted or formatted text.
        tools: Tool names found, deduplicated in first-seen order.
        progress: Percentage for progress events (0 when none found).
        metadata: Additional data.
    """

    type: OutputType
    content: str
    tools: tuple[str, ...] = ()
    progress: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary with complete data (no truncation)."""
        data: dict[str, Any] = {"type": self.type.value, "content": self.content}
        if self.tools:
            data["tools"] = list(self.tools)
        if self.progress is not None:
            data["progress"] = self.progress
        if self.metadata:
            data["metadata"] = self.metadata
        return data

    def __str__(self) -> str:
        return f"[{self.type.value}] {self.content[:100]}{'...' if len(self.content) > 100 else ''}"


class SessionEventType(Enum):
    """Events a Session pushes to its subscribers."""

    OUTPUT = "output"
    ERROR = "error"
    EXIT = "exit"
    STATUS = "status"


@dataclass(frozen=True)
class SessionEvent:
    """Event emitted by a Session.

    Attributes:
        type: The event type.
        session_id: Session that produced the event.
        output: Classified output (OUTPUT events).
        error: Error description (ERROR events).
        exit_code: Process exit code (EXIT events, None if unknown).
        status: New session status (STATUS and EXIT events).
        timestamp: When the event occurred.
    """

    type: SessionEventType
    session_id: str
    output: ClassifiedEvent | None = None
    error: str | None = None
    exit_code: int | None = None
    status: SessionStatus | None = None
    timestamp: float = field(default_factory=time.time)
