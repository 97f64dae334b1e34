"""Fixed-capacity sample history for puls metric streams."""

from collections import deque
from collections.abc import Iterable

from puls.models import NA, MetricStream

DEFAULT_CAPACITY = 60


class HistoryBuffer:
    """
    Ring buffer of scalar samples.

    Pushing is O(1). Once full, each push evicts the oldest sample.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        """
        Initialize the HistoryBuffer.

        Args:
            capacity: Maximum number of samples kept. Must be positive.
        """
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._samples: deque[float] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        """Get the maximum number of samples."""
        return self._samples.maxlen or 0

    def push(self, value: float) -> None:
        """Append a sample, evicting the oldest one when full."""
        self._samples.append(value)

    def values(self) -> tuple[float, ...]:
        """Return the samples ordered oldest to newest."""
        return tuple(self._samples)

    def resize(self, capacity: int) -> None:
        """
        Change the capacity.

        Prior history is discarded; the buffer starts empty.
        """
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._samples = deque(maxlen=capacity)


class StreamSet:
    """
    Named HistoryBuffers sharing one capacity.

    Only the scheduler writes to a StreamSet; readers get frozen MetricStream
    views from `freeze()`.
    """

    def __init__(self, names: Iterable[str], capacity: int = DEFAULT_CAPACITY) -> None:
        self._capacity = capacity
        self._buffers: dict[str, HistoryBuffer] = {name: HistoryBuffer(capacity) for name in names}
        self._latest: dict[str, float] = {}

    @property
    def capacity(self) -> int:
        return self._capacity

    def append(self, name: str, value: float) -> None:
        """Append a sample to one stream, creating the stream if needed."""
        buffer = self._buffers.get(name)
        if buffer is None:
            buffer = self._buffers[name] = HistoryBuffer(self._capacity)
        buffer.push(value)
        self._latest[name] = value

    def mark_missing(self, name: str) -> None:
        """Record that a stream had no value this tick (history is kept)."""
        self._latest.pop(name, None)

    def resize(self, capacity: int) -> None:
        """Reinitialize every stream with a new capacity."""
        self._capacity = capacity
        for buffer in self._buffers.values():
            buffer.resize(capacity)
        self._latest.clear()

    def freeze(self) -> dict[str, MetricStream]:
        """Return an immutable view of every stream."""
        return {
            name: MetricStream(
                name=name,
                value=self._latest.get(name, NA),
                samples=buffer.values(),
            )
            for name, buffer in self._buffers.items()
        }
