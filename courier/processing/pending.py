"""
Pending document queue shared by all sources within one tick.
"""

from collections import deque
from typing import Deque, Iterable, List, Tuple

from ..database.models import Document


class PendingDocuments:
    """FIFO of (source_id, document) pairs awaiting an index flush."""

    def __init__(self):
        self._queue: Deque[Tuple[str, Document]] = deque()

    def extend(self, source_id: str, documents: Iterable[Document]) -> None:
        for document in documents:
            self._queue.append((source_id, document))

    def pop_front(self, count: int) -> List[Tuple[str, Document]]:
        """Remove and return up to ``count`` pairs from the front."""
        batch = []
        while self._queue and len(batch) < count:
            batch.append(self._queue.popleft())
        return batch

    def clear(self) -> List[Document]:
        """Drop everything and return the dropped documents."""
        dropped = [document for _, document in self._queue]
        self._queue.clear()
        return dropped

    def __len__(self) -> int:
        return len(self._queue)

    def __bool__(self) -> bool:
        return bool(self._queue)
