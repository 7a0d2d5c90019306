"""Bounded line buffer for managed process output."""

from __future__ import annotations

from collections import deque


class LineBuffer:
    """Ordered lines whose joined text never exceeds max_size characters.

    Chunks are split on newlines; a chunk that doesn't start with a newline
    continues the last (partial) line. Whole lines are evicted from the
    front once the joined size exceeds the bound, and a single line longer
    than the bound keeps only its tail.

    Example:
        >>> buf = LineBuffer(max_size=10)
        >>> buf.append("hello\\nwor")
        >>> buf.append("ld\\n")
        >>> buf.text
        'world\\n'
    """

    def __init__(self, max_size: int) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._lines: deque[str] = deque([""])
        # joined length: sum of line lengths plus one separator per gap
        self._size = 0

    def __len__(self) -> int:
        return self._size

    @property
    def text(self) -> str:
        return "\n".join(self._lines)

    @property
    def lines(self) -> list[str]:
        return list(self._lines)

    def append(self, chunk: str) -> None:
        if not chunk:
            return

        parts = chunk.split("\n")
        self._lines[-1] += parts[0]
        self._size += len(parts[0])
        for part in parts[1:]:
            self._lines.append(part)
            self._size += len(part) + 1

        while self._size > self.max_size and len(self._lines) > 1:
            dropped = self._lines.popleft()
            self._size -= len(dropped) + 1

        if self._size > self.max_size:
            self._lines[0] = self._lines[0][-self.max_size :]
            self._size = len(self._lines[0])

    def tail(self, lines: int | None = None) -> str:
        """Last N lines (all when None)."""
        if lines is None:
            return self.text
        if lines <= 0:
            return ""
        return "\n".join(list(self._lines)[-lines:])

    def clear(self) -> None:
        self._lines = deque([""])
        self._size = 0
