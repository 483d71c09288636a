from typing import Any, List

from reconcile_errors import ConfigurationError


class ChunkBuffer:
    """FIFO queue: items are pushed one at a time and drained in chunks.

    The buffer always holds at least one (possibly empty) pending chunk.
    Chunk boundaries depend only on the count of items pushed.
    """

    def __init__(self, chunk_size: int, threshold: float = 0.9):
        if isinstance(chunk_size, bool) or not isinstance(chunk_size, int) or chunk_size <= 0:
            raise ConfigurationError(f"chunk_size must be a positive integer, got {chunk_size!r}")
        if not 0 < threshold <= 1:
            raise ConfigurationError(f"threshold must be in (0, 1], got {threshold!r}")
        self.chunk_size = chunk_size
        self.threshold = threshold
        self._chunks: List[List[Any]] = [[]]

    def push(self, item: Any):
        last = self._chunks[-1]
        if len(last) < self.chunk_size:
            last.append(item)
        else:
            self._chunks.append([item])

    def has_near_full_chunk(self) -> bool:
        """True once the oldest chunk reaches the dispatch threshold."""
        return len(self._chunks[0]) >= self.chunk_size * self.threshold

    def is_empty(self) -> bool:
        return len(self._chunks[0]) == 0

    def drain_one_chunk(self) -> List[Any]:
        """Remove and return the oldest chunk."""
        first = self._chunks.pop(0)
        if not self._chunks:
            self._chunks.append([])
        return first

    def __len__(self) -> int:
        return sum(len(chunk) for chunk in self._chunks)
