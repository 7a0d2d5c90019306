"""CLI output classification.

Pure parsing logic - takes strings, returns ClassifiedEvent.
No process knowledge, no session awareness.

Example:
    >>> from tether.core.parsers import classify
    >>> classify("Status: Ready").content
    'Ready'
"""

from tether.core.parsers.output import (
    OutputParser,
    classify,
    extract_tools,
    format_response,
    strip_ansi,
)

__all__ = ["OutputParser", "classify", "extract_tools", "format_response", "strip_ansi"]
