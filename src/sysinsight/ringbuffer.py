"""Ring buffer of recent snapshots.

Holds the collector's in-memory history (default 300 samples, 10 minutes
at 2s). Only the collector pushes; everyone else reads copies.
"""

from collections import deque

from sysinsight.models import Snapshot


class RingBuffer:
    """Bounded FIFO of snapshots, oldest evicted first."""

    def __init__(self, max_samples: int = 300) -> None:
        self._samples: deque[Snapshot] = deque(maxlen=max_samples)

    def __len__(self) -> int:
        """Return number of snapshots in buffer."""
        return len(self._samples)

    @property
    def is_empty(self) -> bool:
        """Return True if buffer has no snapshots."""
        return len(self._samples) == 0

    @property
    def capacity(self) -> int:
        """Return maximum number of snapshots the buffer can hold."""
        return self._samples.maxlen or 0

    @property
    def latest(self) -> Snapshot | None:
        """Most recently pushed snapshot."""
        return self._samples[-1] if self._samples else None

    def push(self, snapshot: Snapshot) -> None:
        """Add a snapshot to the buffer."""
        self._samples.append(snapshot)

    def recent(self, count: int | None = None) -> list[Snapshot]:
        """Return the last ``count`` snapshots (all if None), oldest first."""
        if count is None or count >= len(self._samples):
            return list(self._samples)
        if count <= 0:
            return []
        return list(self._samples)[-count:]

    def clear(self) -> None:
        """Empty the buffer."""
        self._samples.clear()
