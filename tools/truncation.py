"""
Truncation Policy -- bounds any text blob that goes back to the caller.

Applied to stdout, to stderr, and again to the serialized response that
wraps them. Oversized text keeps its first ``max_size`` bytes plus a notice;
the full text is saved through the ``OverflowWriter``. A failed save never
fails the operation: the notice just says the output could not be saved.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from tools.errors import PersistenceFailure
from tools.overflow_writer import OverflowWriter

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_SIZE = 50 * 1024     # 50 KiB per stream / per response

SAVED_NOTICE = (
    "\n\n[Output truncated at {limit} bytes ({size} bytes total). "
    "Full output saved to: {path}]"
)
UNSAVED_NOTICE = (
    "\n\n[Output truncated at {limit} bytes ({size} bytes total). "
    "Full output could not be saved.]"
)
PREVIEW_NOTICE = "\n\n[Output truncated - exceeded size limit]"


def _encode(text: str) -> bytes:
    return text.encode("utf-8", errors="replace")


def _head(raw: bytes, limit: int) -> str:
    """First *limit* bytes of *raw*, without splitting a multi-byte character."""
    return raw[:limit].decode("utf-8", errors="ignore")


def cap_text(text: str, limit: int) -> str:
    """Bound *text* to *limit* bytes plus a short notice. Never writes a file."""
    raw = _encode(text)
    if len(raw) <= limit:
        return text
    return _head(raw, limit) + PREVIEW_NOTICE


@dataclass
class TruncationResult:
    """Bounded view of a text blob."""
    content: str
    original_size: int
    overflow: bool = False
    truncated_size: Optional[int] = None    # Only when truncated
    overflow_file: Optional[str] = None     # Only when the full text was saved

    def describe(self) -> Dict[str, Any]:
        """Overflow descriptor as reported in tool responses."""
        info: Dict[str, Any] = {
            "overflow": self.overflow,
            "originalSize": self.original_size,
        }
        if self.truncated_size is not None:
            info["truncatedSize"] = self.truncated_size
        if self.overflow_file:
            info["overflowFile"] = self.overflow_file
        return info


class TruncationPolicy:
    """Truncates text to a byte limit and saves what does not fit."""

    def __init__(self, writer: OverflowWriter, max_size: int = DEFAULT_MAX_OUTPUT_SIZE):
        self.writer = writer
        self.max_size = max_size

    def truncate(
        self,
        text: str,
        category: str = "output",
        max_size: Optional[int] = None,
    ) -> TruncationResult:
        """
        Bound *text* to *max_size* bytes (default: the configured limit).

        Args:
            text: Candidate text (command output or a serialized response)
            category: Label used in the overflow filename ("stdout", "response", ...)
            max_size: Per-call override of the byte limit

        Returns:
            TruncationResult; ``overflow`` is True iff the text exceeded the limit
        """
        limit = self.max_size if max_size is None else max_size
        raw = _encode(text)
        size = len(raw)
        if size <= limit:
            return TruncationResult(content=text, original_size=size)

        head = _head(raw, limit)
        truncated_size = len(_encode(head))
        filename = self.writer.make_filename(category)

        try:
            saved = self.writer.write(filename, raw)
        except PersistenceFailure as e:
            logger.warning("Could not save %s overflow: %s", category, e)
            return TruncationResult(
                content=head + UNSAVED_NOTICE.format(limit=limit, size=size),
                original_size=size,
                overflow=True,
                truncated_size=truncated_size,
            )

        logger.info("%s exceeded %d bytes (%d total); saved to %s", category, limit, size, saved)
        return TruncationResult(
            content=head + SAVED_NOTICE.format(limit=limit, size=size, path=saved),
            original_size=size,
            overflow=True,
            truncated_size=truncated_size,
            overflow_file=str(saved),
        )
