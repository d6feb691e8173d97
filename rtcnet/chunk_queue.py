"""A bounded FIFO of chunks."""

from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Optional

from .chunk import Chunk


class ChunkQueue:
    """FIFO queue of chunks; a ``max_size`` of 0 or less means unlimited."""

    def __init__(self, max_size: int = 0) -> None:
        self.max_size = max_size
        self._chunks: Deque[Chunk] = deque()
        self._lock = threading.Lock()

    def push(self, chunk: Chunk) -> bool:
        """Append a chunk; return False if the queue is full and it was dropped."""
        with self._lock:
            if self.max_size > 0 and len(self._chunks) >= self.max_size:
                return False
            self._chunks.append(chunk)
            return True

    def pop(self) -> Optional[Chunk]:
        """Remove and return the oldest chunk, or None if empty."""
        with self._lock:
            return self._chunks.popleft() if self._chunks else None

    def peek(self) -> Optional[Chunk]:
        """Return a copy of the oldest chunk without removing it, or None."""
        with self._lock:
            return self._chunks[0].clone() if self._chunks else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._chunks)