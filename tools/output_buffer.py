"""Bounded per-stream output accumulator for background processes."""

import threading
from collections import deque
from pathlib import Path
from typing import Callable, Deque, List, Optional

DEFAULT_MAX_CHUNKS = 100        # Retained chunks per stream (FIFO eviction)


class OutputAccumulator:
    """
    Collects byte chunks from one stream of a background process.

    Only the most recent ``max_chunks`` chunks are kept, regardless of their
    size. Separately, the running byte total decides overflow: the first time
    it exceeds ``max_output_size`` the overflow flag is set and the overflow
    path is computed. Neither is ever reset. No file I/O happens here; the
    process owner writes the retained chunks to ``overflow_path`` on exit.

    The lock may be shared with the owning process so a snapshot of both
    streams and the process state is taken in one step.
    """

    def __init__(
        self,
        stream: str,
        max_output_size: int,
        max_chunks: int = DEFAULT_MAX_CHUNKS,
        path_factory: Optional[Callable[[str], Path]] = None,
        lock: Optional[threading.RLock] = None,
    ):
        self.stream = stream
        self.max_output_size = max_output_size
        self.max_chunks = max_chunks
        self.total_bytes = 0
        self.overflowed = False
        self.overflow_path: Optional[Path] = None
        self._chunks: Deque[bytes] = deque(maxlen=max_chunks)
        self._path_factory = path_factory
        self._lock = lock or threading.RLock()

    def append(self, chunk: bytes) -> bool:
        """Record *chunk*. Returns True only for the chunk that crossed the overflow threshold."""
        with self._lock:
            self.total_bytes += len(chunk)
            self._chunks.append(chunk)
            if self.overflowed or self.total_bytes <= self.max_output_size:
                return False
            self.overflowed = True
            if self._path_factory is not None:
                self.overflow_path = self._path_factory(self.stream)
            return True

    def chunks(self) -> List[bytes]:
        with self._lock:
            return list(self._chunks)

    def retained(self) -> bytes:
        """All retained chunks, oldest first."""
        with self._lock:
            return b"".join(self._chunks)

    def recent_text(self, count: int) -> str:
        """Last *count* chunks decoded as text."""
        with self._lock:
            tail = list(self._chunks)[-count:] if count > 0 else []
        return b"".join(tail).decode("utf-8", errors="replace")
