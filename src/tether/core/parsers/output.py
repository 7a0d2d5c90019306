"""Heuristic classifier for interactive CLI output.

Turns a raw text chunk into exactly one ClassifiedEvent. Checks run in a
fixed priority order and the first match wins:

    1. error     "Error:", "error:", "Failed", "Exception"
    2. progress  "...", "Working", "Processing", "%"
    3. tool      "Tool:", "Using:", "Executing:", "Running:"
    4. status    "Status:", "Ready", "Complete", "Done"
    5. response  everything else, reformatted for display

The classifier knows nothing about the CLI beyond these substrings.
"""

from __future__ import annotations

import logging
import re

from tether.core.types import ClassifiedEvent, OutputType

logger = logging.getLogger(__name__)

ERROR_MARKERS = ("Error:", "error:", "Failed", "Exception")
PROGRESS_MARKERS = ("...", "Working", "Processing", "%")
TOOL_MARKERS = ("Tool:", "Using:", "Executing:", "Running:")
STATUS_MARKERS = ("Status:", "Ready", "Complete", "Done")

DEFAULT_PROGRESS_LABEL = "Processing..."
DEFAULT_CODE_LANGUAGE = "plaintext"

_ERROR_RE = re.compile(r"(?:Error|error|Failed|Exception)[:\s]*(.*)")
_PROGRESS_LABEL_RE = re.compile(r"(?:Working|Processing)[:\s]*(.*)")
_PERCENT_RE = re.compile(r"(\d+)%")
_STATUS_RE = re.compile(r"Status:\s*(.*)")
_TOOL_PATTERNS = (
    re.compile(r"Tool:\s*(\w+)"),
    re.compile(r"Using:\s*(\w+)"),
    re.compile(r"\[(\w+)\]"),
)
_CODE_BLOCK_RE = re.compile(r"```(\w*)\n([\s\S]*?)```")
_LIST_ITEM_RE = re.compile(r"^\d+\.|^[-*+]\s")
_BLANK_RUN_RE = re.compile(r"\n{3,}")
_ANSI_RE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")


def strip_ansi(text: str) -> str:
    """Strip ANSI escape codes from text."""
    return _ANSI_RE.sub("", text)


def _contains_any(text: str, markers: tuple[str, ...]) -> bool:
    return any(marker in text for marker in markers)


def extract_tools(text: str) -> tuple[str, ...]:
    """Collect tool names from "Tool: X", "Using: X" and "[X]" forms.

    Names are deduplicated, keeping first-seen order per pattern pass.
    """
    tools: list[str] = []
    for pattern in _TOOL_PATTERNS:
        for match in pattern.finditer(text):
            name = match.group(1)
            if name and name not in tools:
                tools.append(name)
    return tuple(tools)


def extract_error(text: str) -> str:
    match = _ERROR_RE.search(text)
    return match.group(1).strip() if match else text


def extract_progress_label(text: str) -> str:
    match = _PROGRESS_LABEL_RE.search(text)
    if match:
        return match.group(1).strip()
    return text.replace("...", "").strip() or DEFAULT_PROGRESS_LABEL


def extract_progress_percent(text: str) -> int:
    match = _PERCENT_RE.search(text)
    return int(match.group(1)) if match else 0


def extract_status(text: str) -> str:
    match = _STATUS_RE.search(text)
    return match.group(1).strip() if match else text.strip()


def _format_code_blocks(text: str) -> str:
    def rewrap(match: re.Match[str]) -> str:
        language = match.group(1) or DEFAULT_CODE_LANGUAGE
        return f"\n```{language}\n{match.group(2).strip()}\n```\n"

    return _CODE_BLOCK_RE.sub(rewrap, text)


def _format_lists(text: str) -> str:
    # List items pass through; the first blank line after a list ends it.
    formatted: list[str] = []
    in_list = False
    for line in text.split("\n"):
        stripped = line.strip()
        if _LIST_ITEM_RE.match(stripped):
            in_list = True
            formatted.append(line)
        elif in_list and not stripped:
            in_list = False
            formatted.append("")
        else:
            formatted.append(line)
    return "\n".join(formatted)


def format_response(text: str) -> str:
    """Normalize a response chunk for display.

    Re-wraps fenced code blocks with a language tag, keeps list lines
    intact, collapses runs of three or more newlines to two, trims
    surrounding whitespace and expands tabs to two spaces.
    """
    formatted = _format_code_blocks(text)
    formatted = _format_lists(formatted)
    formatted = _BLANK_RUN_RE.sub("\n\n", formatted)
    formatted = formatted.strip()
    return formatted.replace("\t", "  ")


def classify(chunk: str, buffer: str | None = None) -> ClassifiedEvent:
    """Classify one chunk of CLI output.

    Args:
        chunk: The new output text.
        buffer: Everything received so far (including chunk). Response
            events extract tools from it; defaults to chunk.

    Returns:
        A single ClassifiedEvent.

    Example:
        >>> classify("Error: boom").content
        'boom'
        >>> classify("Working on it... 42%").progress
        42
    """
    if _contains_any(chunk, ERROR_MARKERS):
        return ClassifiedEvent(type=OutputType.ERROR, content=extract_error(chunk))

    if _contains_any(chunk, PROGRESS_MARKERS):
        return ClassifiedEvent(
            type=OutputType.PROGRESS,
            content=extract_progress_label(chunk),
            progress=extract_progress_percent(chunk),
        )

    if _contains_any(chunk, TOOL_MARKERS):
        return ClassifiedEvent(type=OutputType.TOOL, content=chunk, tools=extract_tools(chunk))

    if _contains_any(chunk, STATUS_MARKERS):
        return ClassifiedEvent(type=OutputType.STATUS, content=extract_status(chunk))

    return ClassifiedEvent(
        type=OutputType.RESPONSE,
        content=format_response(chunk),
        tools=extract_tools(buffer if buffer is not None else chunk),
    )


class OutputParser:
    """Stateful wrapper around classify().

    Accumulates every chunk so response events can report tools seen
    anywhere in the conversation so far. One parser per session.

    Example:
        >>> parser = OutputParser()
        >>> parser.parse("Tool: Read main.py").type
        <OutputType.TOOL: 'tool'>
        >>> parser.parse("Here is the file.").tools
        ('Read',)
    """

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def buffer(self) -> str:
        return self._buffer

    def parse(self, chunk: str) -> ClassifiedEvent:
        self._buffer += chunk
        event = classify(chunk, self._buffer)
        logger.debug(
            "classified: type=%s, chunk_len=%d, tools=%s",
            event.type.value,
            len(chunk),
            list(event.tools),
        )
        return event

    def reset(self) -> None:
        self._buffer = ""
