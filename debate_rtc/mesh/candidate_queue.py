"""Buffer for remote candidates that arrive before the remote description."""

from collections import deque
from typing import Any, Deque, Dict, List, Optional


class CandidateQueue:
    """FIFO of pending remote candidates for one peer session.

    The queue is drained exactly once, when the remote description is
    applied. After that it is sealed: later candidates must be applied
    directly instead of being queued.

    Args:
        maxlen: Optional bound; when full the oldest candidate is dropped.
    """

    def __init__(self, maxlen: Optional[int] = None):
        self._items: Deque[Dict[str, Any]] = deque(maxlen=maxlen)
        self._sealed = False

    def __len__(self) -> int:
        return len(self._items)

    @property
    def sealed(self) -> bool:
        return self._sealed

    def push(self, candidate: Dict[str, Any]):
        if self._sealed:
            raise RuntimeError("candidate queue already drained")
        self._items.append(candidate)

    def extend(self, other: "CandidateQueue"):
        """Move every candidate of ``other`` to the end of this queue."""
        for candidate in other.drain():
            self.push(candidate)

    def drain(self) -> List[Dict[str, Any]]:
        """Return every pending candidate in arrival order and seal the queue."""
        items = list(self._items)
        self._items.clear()
        self._sealed = True
        return items

    def clear(self):
        self._items.clear()
